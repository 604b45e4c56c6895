# Overview: Business error taxonomy shared by services and routes.

"""
Every business-rule violation is raised before any write reaches the
database, so the enclosing transaction can be rolled back cleanly.

Routes never build error bodies by hand: the handler registered in
create_app() turns any BackofficeError into {"success": false, "msg": ...}
with the status_code carried by the exception class.
"""


class BackofficeError(Exception):
    """Base class for expected, user-facing failures."""
    status_code = 400

    def __init__(self, msg: str):
        super().__init__(msg)
        self.msg = msg

    def to_dict(self) -> dict:
        return {"success": False, "msg": self.msg}


class InvalidInput(BackofficeError):
    """Malformed or missing fields, non-positive quantities."""
    status_code = 400


class InvalidReference(BackofficeError):
    """A referenced supplier or variant does not exist or cannot be used."""
    status_code = 400


class InsufficientStock(BackofficeError):
    """The change would drive a variant's stock below zero."""
    status_code = 400


class PaymentIncomplete(BackofficeError):
    """COMPLETED was requested while an amount is still due."""
    status_code = 400


class InconsistentStatus(BackofficeError):
    """Requested purchase status contradicts the payment figures."""
    status_code = 400


class AmountMismatch(BackofficeError):
    """Totals or payment do not add up (overpayment, negative total, ...)."""
    status_code = 400


class Forbidden(BackofficeError):
    """Operation not allowed on a record in a terminal state."""
    status_code = 403


class NotFound(BackofficeError):
    status_code = 404


class VariantNotFound(NotFound):
    pass


class ImmutableRecordError(BackofficeError):
    """Raised when code tries to modify or delete an append-only row."""
    status_code = 500
