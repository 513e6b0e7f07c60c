from typing import Any, Optional


class LedgerError(ValueError):
    """Base class for every error the ledger core raises on purpose.

    Subclasses carry a stable ``code`` and the HTTP status the API layer maps
    them to, plus structured ``details`` so callers never see a bare "failed".
    """

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 400


class OverAssignmentError(LedgerError):
    code = "over_assignment"
    status_code = 409

    def __init__(
        self,
        shortfall_cents: int,
        *,
        ready_to_assign_cents: int,
        month: str,
        requested_cents: Optional[int] = None,
        category_id: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message
            or f"Assignment would exceed Ready to Assign by {shortfall_cents} cents",
            shortfall_cents=shortfall_cents,
            ready_to_assign_cents=ready_to_assign_cents,
            requested_cents=requested_cents,
            month=month,
            category_id=category_id,
        )
        self.shortfall_cents = shortfall_cents


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class CategoryNotFoundError(NotFoundError):
    def __init__(self, category_id: Any) -> None:
        super().__init__("Category", category_id)


class BillNotFoundError(NotFoundError):
    def __init__(self, bill_id: Any) -> None:
        super().__init__("Bill", bill_id)


class OccurrenceNotFoundError(NotFoundError):
    pass


class AlreadyProcessedError(LedgerError):
    code = "already_processed"
    status_code = 409


class AlreadyReceivedError(AlreadyProcessedError):
    code = "already_received"

    def __init__(self, occurrence_id: int, tx_id: Optional[int]) -> None:
        super().__init__(
            "Income already received", occurrence_id=occurrence_id, tx_id=tx_id
        )


class ConcurrencyConflictError(LedgerError):
    code = "concurrency_conflict"
    status_code = 409


class PersistenceError(LedgerError):
    code = "persistence_error"
    status_code = 503

    def __init__(self, message: str, *, retryable: bool = True, **details: Any):
        super().__init__(message, retryable=retryable, **details)
        self.retryable = retryable
