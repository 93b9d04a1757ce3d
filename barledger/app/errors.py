from typing import Any, Optional


class LedgerError(Exception):
    """
    Base for every domain failure raised by the ledger.

    `kind` is the stable, machine-readable category clients switch on; `code` narrows it
    (e.g. kind=conflict, code=already_voided). `data` carries an optional payload such as
    the existing record for idempotent rejections.
    """

    kind = "internal"
    code = "internal"
    status_code = 500

    def __init__(self, message: str, *, data: Optional[Any] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.data = data
        if code:
            self.code = code

    def to_dict(self) -> dict:
        out = {"detail": self.message, "kind": self.kind, "code": self.code}
        if self.data is not None:
            out["data"] = self.data
        return out


class ValidationError(LedgerError):
    kind = "validation_error"
    code = "validation_error"
    status_code = 400


class NoSellingPriceConfigured(ValidationError):
    code = "no_selling_price"


class NotFound(LedgerError):
    kind = "not_found"
    code = "not_found"
    status_code = 404


class InvalidState(LedgerError):
    kind = "invalid_state"
    code = "invalid_state"
    status_code = 409


class EmptyTab(InvalidState):
    code = "empty_tab"


class Conflict(LedgerError):
    kind = "conflict"
    code = "conflict"
    status_code = 409


class AlreadyVoided(Conflict):
    code = "already_voided"


class DayLocked(Conflict):
    code = "day_locked"


class MonthAlreadyClosed(Conflict):
    code = "month_already_closed"


class OutOfStock(LedgerError):
    kind = "out_of_stock"
    code = "out_of_stock"
    status_code = 409


class TabCloseFailed(LedgerError):
    """A tab close stopped part-way; lines before the failing one stay sold."""

    code = "tab_close_partial"
    status_code = 409

    def __init__(self, message: str, *, cause: LedgerError, data: Optional[Any] = None):
        super().__init__(message, data=data)
        self.cause = cause
        self.kind = cause.kind


class Dependent(LedgerError):
    kind = "dependent"
    code = "dependent"
    status_code = 409


class InternalError(LedgerError):
    pass
