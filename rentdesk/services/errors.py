"""
Error taxonomy for the rental engine.

All failures are synchronous validation errors raised to the caller; the
HTTP layer maps them to responses (see rentdesk.main).
"""
from typing import Iterable, Optional


class RentalError(Exception):
    """Base class for every engine failure."""

    code = "rental_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = {k: str(v) if not isinstance(v, (list, dict, int)) else v for k, v in self.details.items()}
        return body


class InvalidDateRange(RentalError):
    code = "invalid_date_range"


class VehicleUnavailable(RentalError):
    code = "vehicle_unavailable"


class InvalidTransition(RentalError):
    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move {entity} from {current} to {target}",
            entity=entity,
            current=current,
            target=target,
        )


class ContractAlreadySigned(RentalError):
    code = "contract_already_signed"


class InvalidAmount(RentalError):
    code = "invalid_amount"


class MixedStatusBatch(RentalError):
    code = "mixed_status_batch"

    def __init__(self, expected: str, offending: Iterable[str]):
        offending = sorted(offending)
        super().__init__(
            f"Every commission in the batch must be {expected}",
            expected=expected,
            offending=offending,
        )


class NotFound(RentalError):
    code = "not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=str(entity_id))


class InvalidInput(RentalError):
    code = "invalid_input"


class PermissionDenied(RentalError):
    code = "permission_denied"
