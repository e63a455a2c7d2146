"""
Error taxonomy shared by the ledger, the accrual engine and settlement.

Each error carries a human-readable message; the HTTP layer maps the kind
to a status code.
"""


class StakingError(Exception):
    """Base class for all portfolio staking errors"""

    kind = "staking_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(StakingError):
    """Portfolio, transaction or wallet does not exist"""

    kind = "not_found"
    status_code = 404


class InvalidStateError(StakingError):
    """Operation not allowed in the entity's current state"""

    kind = "invalid_state"
    status_code = 409


class InsufficientFundsError(StakingError):
    """Debit exceeds the available principal or accumulated interest"""

    kind = "insufficient_funds"
    status_code = 400


class ValidationError(StakingError, ValueError):
    """Input rejected before any state was touched"""

    kind = "validation_error"
    status_code = 400


class PersistenceError(StakingError):
    """Storage backend failure"""

    kind = "persistence_failure"
    status_code = 500
