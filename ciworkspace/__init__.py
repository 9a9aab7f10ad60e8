"""ciworkspace - CI workspace coordinator.

Keeps a build checkout in lock-step with its remote branch, swaps build
output into place atomically and provisions the interpreter sandbox.
"""

__version__ = "0.1.0"
