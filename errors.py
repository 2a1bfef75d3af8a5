"""
Typed errors raised by the ledger and the loan engine.

Callers catch by type; the HTTP layer maps ``status_code`` and ``code``
onto the response.

    LedgerError
    +-- NotFoundError    (404) missing loan / line / item / employee
    +-- ValidationError  (400) closed or deleted loan, insufficient stock, bad quantity
    +-- ConflictError    (409) unique field collision, lost allocation race
"""


class LedgerError(Exception):
    status_code = 500
    code = "LEDGER_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(LedgerError):
    status_code = 404
    code = "NOT_FOUND"


class ValidationError(LedgerError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(LedgerError):
    status_code = 409
    code = "CONFLICT"
