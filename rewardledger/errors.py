"""
Ledger exceptions.

Business-rule refusals (insufficient funds, cooldowns, limits) are reported
through result objects, not raised. These exceptions cover malformed input,
missing rows, illegal state transitions and security failures.
"""


class LedgerError(Exception):
    """Base class for ledger errors."""


class ValidationFailed(LedgerError):
    """Raised when input is rejected before any state change."""


class NotFound(LedgerError):
    """Raised when a referenced row does not exist."""


class InvalidTransition(LedgerError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity} from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target


class SecurityError(LedgerError):
    """Raised when a security-critical operation fails."""
