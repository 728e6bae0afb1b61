# errors.py
class LedgerError(Exception):
    """Base class for business errors raised by the store and services."""

    status_code = 500
    default_message = "internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(LedgerError):
    status_code = 404
    default_message = "not found"


class InvalidInputError(LedgerError):
    status_code = 400
    default_message = "invalid input"


class ConflictError(LedgerError):
    status_code = 409
    default_message = "conflict"


class BudgetExceededError(LedgerError):
    status_code = 400
    default_message = "budget exceeded"
