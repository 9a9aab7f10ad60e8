"""Interpreter sandbox provisioning."""

from ciworkspace.sandbox.provisioner import EnvironmentProvisioner, SandboxError

__all__ = ["EnvironmentProvisioner", "SandboxError"]
