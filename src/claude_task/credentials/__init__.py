"""Access to the agent's credentials and the task home directory."""

from .access import (
    CredentialAccess,
    CredentialExtractionFailed,
    KeyringCredentialAccess,
    MacOSKeychainAccess,
    select_credential_access,
)
from .setup import CredentialSetupError, FilteredClaudeConfig, prepare_task_home

__all__ = [
    "CredentialAccess",
    "CredentialExtractionFailed",
    "CredentialSetupError",
    "FilteredClaudeConfig",
    "KeyringCredentialAccess",
    "MacOSKeychainAccess",
    "prepare_task_home",
    "select_credential_access",
]
