"""Platform credential store access."""

from __future__ import annotations

import getpass
import logging
import os
import shutil
import subprocess
import sys
from datetime import datetime, timezone
from typing import Protocol

import keyring
from keyring.errors import KeyringError

from ..errors import ClaudeTaskError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "Claude Code-credentials"


class CredentialExtractionFailed(ClaudeTaskError):
    """Raised when the agent's credentials cannot be read from the platform store."""


class CredentialAccess(Protocol):
    def extract_credentials(self) -> str:
        ...

    def get_modification_time(self) -> float | None:
        ...


def _default_account() -> str:
    account = os.environ.get("USER") or os.environ.get("USERNAME")
    if account:
        return account
    return getpass.getuser()


class KeyringCredentialAccess:
    """Reads the credentials through the ``keyring`` library backend."""

    def __init__(self, service: str = DEFAULT_SERVICE, account: str | None = None) -> None:
        self.service = service
        self.account = account or _default_account()

    def extract_credentials(self) -> str:
        try:
            secret = keyring.get_password(self.service, self.account)
        except KeyringError as exc:
            raise CredentialExtractionFailed(
                f"Failed to read '{self.service}' from the system keyring: {exc}"
            ) from exc
        if not secret:
            raise CredentialExtractionFailed(
                f"No credentials stored under service '{self.service}' for account '{self.account}'. "
                "Log in with the claude CLI first."
            )
        return secret

    def get_modification_time(self) -> float | None:
        return None


class MacOSKeychainAccess(KeyringCredentialAccess):
    """Uses the ``security`` tool, falling back to ``keyring`` when it fails."""

    def __init__(
        self,
        service: str = DEFAULT_SERVICE,
        account: str | None = None,
        *,
        security_path: str | None = None,
    ) -> None:
        super().__init__(service, account)
        self._security = security_path or shutil.which("security")

    def extract_credentials(self) -> str:
        if self._security:
            completed = subprocess.run(
                [self._security, "find-generic-password", "-s", self.service, "-a", self.account, "-w"],
                capture_output=True,
                text=True,
                check=False,
            )
            secret = completed.stdout.strip()
            if completed.returncode == 0 and secret:
                return secret
            logger.debug(
                "security find-generic-password failed; trying keyring",
                extra={"returncode": completed.returncode, "stderr": completed.stderr.strip()},
            )
        return super().extract_credentials()

    def get_modification_time(self) -> float | None:
        if not self._security:
            return None
        completed = subprocess.run(
            [self._security, "find-generic-password", "-s", self.service, "-a", self.account],
            capture_output=True,
            text=True,
            check=False,
        )
        for line in completed.stdout.splitlines():
            # "mdat"<timedate>=0x...  "20240102030405Z\000"
            if '"mdat"' in line and '"' in line.split("=", 1)[-1]:
                stamp = line.split("=", 1)[-1].split('"')[1][:14]
                try:
                    parsed = datetime.strptime(stamp, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
                except ValueError:
                    return None
                return parsed.timestamp()
        return None


def select_credential_access(
    service: str = DEFAULT_SERVICE,
    account: str | None = None,
    *,
    platform: str | None = None,
) -> CredentialAccess:
    """Pick the credential access implementation for the running platform."""

    platform = platform or sys.platform
    if platform == "darwin":
        return MacOSKeychainAccess(service, account)
    return KeyringCredentialAccess(service, account)


__all__ = [
    "CredentialAccess",
    "CredentialExtractionFailed",
    "KeyringCredentialAccess",
    "MacOSKeychainAccess",
    "select_credential_access",
]
