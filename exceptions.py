"""Error types raised by the contact store and the reconciliation core."""


class ReconciliationError(Exception):
    """Base class for failures surfaced from an identify call."""

    kind = "ReconciliationError"


class InvalidRequest(ReconciliationError):
    """Neither email nor phoneNumber was supplied."""

    kind = "InvalidRequest"


class StoreError(ReconciliationError):
    """A read or write against the contact store failed."""

    kind = "StoreUnavailable"


class IntegrityFault(ReconciliationError):
    """A chain reference could not be resolved to an existing primary."""

    kind = "IntegrityFault"

    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}
