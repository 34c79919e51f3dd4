"""
Ride Errors
Exception taxonomy for ride lifecycle and dispatch operations.
Each error carries the HTTP status and code the API reports for it.
"""

from typing import Any, Dict, List, Optional


class RideError(Exception):
    """Base class for every error surfaced to the initiating actor"""

    status_code = 400
    code = "ride_error"
    default_message = "Ride operation failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class PreconditionFailed(RideError):
    """The ride moved on before the write landed. Never retried."""

    status_code = 409
    code = "no_longer_available"
    default_message = "This ride is no longer available"


class InvalidTransition(PreconditionFailed):
    code = "invalid_transition"
    default_message = "Transition not allowed from the current ride status"


class TransientStoreError(RideError):
    """Network, quota or timeout failure of the document store"""

    status_code = 503
    code = "store_unavailable"
    default_message = "Temporary storage failure, please try again"


class ProfileIncompleteError(RideError):
    status_code = 422
    code = "profile_incomplete"
    default_message = "Please complete your vehicle details before accepting rides"

    def __init__(self, missing_fields: List[str], message: Optional[str] = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            message
            or f"Please complete the following vehicle fields: {', '.join(self.missing_fields)}",
            missing_fields=self.missing_fields,
        )


class RideNotFound(RideError):
    status_code = 404
    code = "ride_not_found"
    default_message = "Ride not found"


class PermissionDenied(RideError):
    status_code = 403
    code = "permission_denied"
    default_message = "You are not authorized to update this ride"


class DriverNotEligible(RideError):
    status_code = 403
    code = "driver_not_eligible"
    default_message = "Driver is not eligible for dispatch"


class CategoryNotFound(RideError):
    status_code = 404
    code = "category_not_found"
    default_message = "Vehicle category not found"


class InvalidRequest(RideError):
    status_code = 422
    code = "invalid_request"
    default_message = "Invalid request"
