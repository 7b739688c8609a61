from __future__ import annotations

from typing import Any


class GenflowError(Exception):
    """Base error for genflow."""

    code = "GENFLOW_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(GenflowError):
    """Malformed or incomplete workflow configuration."""

    code = "VALIDATION_ERROR"


class InsufficientCredits(GenflowError):
    """Balance is lower than the amount requested."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, *, balance: int, required: int) -> None:
        super().__init__(
            f"Insufficient credits: balance {balance}, required {required}",
            details={"balance": balance, "required": required},
        )
        self.balance = balance
        self.required = required


class UserNotFound(GenflowError):
    """Ledger operation referenced an unknown user."""

    code = "USER_NOT_FOUND"


class MissingCredential(GenflowError):
    """No stored credential for the provider a step needs."""

    code = "CREDENTIAL_MISSING"

    def __init__(self, *, provider: str) -> None:
        super().__init__(f"No credential stored for provider '{provider}'", details={"provider": provider})
        self.provider = provider


class AuthenticationFailed(GenflowError):
    """Ciphertext failed authentication; tampered data or wrong key."""

    code = "CREDENTIAL_AUTH_FAILED"


class VaultConfigError(GenflowError):
    """Vault key material missing or invalid."""

    code = "VAULT_CONFIG_ERROR"


class ProviderFailure(GenflowError):
    """A generation provider call failed or timed out."""

    code = "PROVIDER_FAILURE"


class NotFound(GenflowError):
    code = "NOT_FOUND"


class Forbidden(GenflowError):
    code = "FORBIDDEN"


class InvalidTransition(GenflowError):
    """Requested state change is not allowed from the current status."""

    code = "INVALID_TRANSITION"


class PersistenceError(GenflowError):
    """Storage layer failure."""

    code = "PERSISTENCE_ERROR"
