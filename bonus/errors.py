class LedgerServiceError(Exception):
    pass


class IdempotencyConflictError(LedgerServiceError):
    pass


class TransactionNotFoundError(LedgerServiceError):
    pass


class UserNotFoundError(LedgerServiceError):
    pass


class UserAlreadyExistsError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class InsufficientBalanceError(LedgerServiceError):
    pass


class SettingsNotInitializedError(LedgerServiceError):
    pass


class StaleTransactionError(LedgerServiceError):
    pass
