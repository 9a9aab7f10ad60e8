"""Credential bundle decryption and operator alerts.

The credential bundle is a gpg-encrypted Python module. It is decrypted
once per process into the secrets directory, which is then put on
``sys.path`` so privileged code can ``import ci_secrets``. Finding that
directory already on ``sys.path`` is how a second request knows it is done.
"""

from __future__ import annotations

import importlib
import logging
import os
import re
import shutil
import subprocess
import sys
from typing import Any

import httpx

from ciworkspace.core.config import WorkspaceConfig
from ciworkspace.core.models import AlertSeverity, WorkspaceError

logger = logging.getLogger(__name__)

# A '<' directly followed by a non-space character looks like markup
_HTML_PATTERN = re.compile(r"<\S")

GPG_TIMEOUT = 60


class SecretsError(WorkspaceError):
    """The credential bundle is missing or unusable."""

    pass


class DecryptionError(SecretsError):
    """gpg could not decrypt the credential bundle."""

    pass


def looks_like_html(message: str) -> bool:
    return _HTML_PATTERN.search(message) is not None


class Notifier:
    """Delivers an alert to a chat room."""

    def send(
        self,
        severity: AlertSeverity,
        html: bool,
        room: str,
        sender: str,
        message: str,
        log: bool = True,
    ) -> None:
        raise NotImplementedError


class ChatNotifier(Notifier):
    """Post alerts to the chat webhook named in the credential bundle.

    The bundle module must define ``CHAT_WEBHOOK_URL`` and may define
    ``CHAT_TOKEN`` (sent as a bearer token).
    """

    TIMEOUT = 10.0

    def __init__(self, secrets_module: str = "ci_secrets", client: httpx.Client | None = None):
        self.secrets_module = secrets_module
        self._client = client

    def _credentials(self) -> tuple[str | None, str | None]:
        module = importlib.import_module(self.secrets_module)
        return getattr(module, "CHAT_WEBHOOK_URL", None), getattr(module, "CHAT_TOKEN", None)

    def send(
        self,
        severity: AlertSeverity,
        html: bool,
        room: str,
        sender: str,
        message: str,
        log: bool = True,
    ) -> None:
        if log:
            logger.log(severity.log_level, "[%s] %s", room, message)

        try:
            url, token = self._credentials()
        except Exception as e:
            # Covers a missing module as well as errors raised while importing it
            logger.warning("Cannot load alert credentials from %s: %s", self.secrets_module, e)
            return
        if not url:
            logger.warning("No CHAT_WEBHOOK_URL in %s; alert not delivered", self.secrets_module)
            return

        payload: dict[str, Any] = {
            "room": room,
            "from": sender,
            "message": message,
            "message_format": "html" if html else "text",
            "color": severity.color,
            "notify": severity in (AlertSeverity.ERROR, AlertSeverity.CRITICAL),
        }
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, headers=headers)
            else:
                response = httpx.post(url, json=payload, headers=headers, timeout=self.TIMEOUT)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Alert delivery to %s failed: %s", room, e)


class SecretsGateway:
    """Lazily materialize the credential bundle and send operator alerts."""

    def __init__(self, config: WorkspaceConfig, notifier: Notifier | None = None):
        self.config = config
        self.notifier = notifier or ChatNotifier(config.secrets_module)

    @property
    def secrets_loaded(self) -> bool:
        return str(self.config.secrets_dir) in sys.path

    def ensure_secrets(self) -> None:
        """Decrypt the credential bundle on first use.

        Raises:
            SecretsError: If the bundle or password file is missing.
            DecryptionError: If gpg fails. Not retried.
        """
        if self.secrets_loaded:
            return

        bundle = self.config.secrets_bundle
        secrets_dir = self.config.secrets_dir
        password = self.config.password_path
        plaintext = self.config.decrypted_secrets_path

        if bundle is None or not bundle.is_file():
            raise SecretsError(f"Credential bundle not found: {bundle}")
        if not password.is_file():
            raise SecretsError(f"Password file not found: {password}")

        secrets_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        encrypted = secrets_dir / bundle.name
        if encrypted.resolve() != bundle.resolve():
            shutil.copy2(bundle, encrypted)

        cmd = [
            "gpg", "--batch", "--yes", "--quiet",
            "--pinentry-mode", "loopback",
            "--passphrase-file", str(password),
            "--output", str(plaintext),
            "--decrypt", str(encrypted),
        ]
        # gpg creates the plaintext itself; keep it private from the first byte
        previous_umask = os.umask(0o077)
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=False, timeout=GPG_TIMEOUT
            )
        except FileNotFoundError as e:
            raise DecryptionError("gpg executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise DecryptionError(f"gpg timed out after {GPG_TIMEOUT}s") from e
        finally:
            os.umask(previous_umask)
        if result.returncode != 0:
            raise DecryptionError(f"Decrypting {encrypted} failed: {result.stderr.strip()}")

        os.chmod(plaintext, 0o600)
        sys.path.insert(0, str(secrets_dir))
        importlib.invalidate_caches()
        logger.info("Credential bundle decrypted into %s", secrets_dir)

    def alert(self, severity: AlertSeverity | str, message: str) -> None:
        """Send ``message`` to the alert room and mirror it to the log."""
        severity = AlertSeverity(severity)
        self.ensure_secrets()
        self.notifier.send(
            severity,
            looks_like_html(message),
            self.config.alert_room,
            self.config.alert_sender,
            message,
            log=True,
        )
