"""Error taxonomy shared by the matching core.

Core operations raise one of these and nothing else; the HTTP layer and the
socket dispatcher translate them into responses and ``ride:error`` events.
"""


class DispatchError(Exception):
    code = "dispatch_error"
    status_code = 500
    default_message = "Dispatch failure"

    def __init__(self, message: str | None = None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        body.update(self.context)
        return body


class ValidationError(DispatchError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid request"


class InvalidInputError(ValidationError):
    code = "invalid_input"
    default_message = "Pickup and destination are required"


class RouteUnavailableError(DispatchError):
    code = "route_unavailable"
    status_code = 502
    default_message = "Unable to calculate route"


class FareUnavailableError(DispatchError):
    code = "fare_unavailable"
    status_code = 400
    default_message = "Could not calculate fare for vehicle type"


class RideNotFoundError(DispatchError):
    code = "ride_not_found"
    status_code = 404
    default_message = "Ride not found"


class RideUnavailableError(DispatchError):
    code = "ride_unavailable"
    status_code = 409
    default_message = "Ride is no longer available"


class InvalidTransitionError(DispatchError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Invalid status transition"


class InvalidPasscodeError(DispatchError):
    code = "invalid_passcode"
    status_code = 403
    default_message = "Invalid OTP"


class ForbiddenError(DispatchError):
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class PersistenceError(DispatchError):
    code = "persistence_error"
    status_code = 503
    default_message = "Storage unavailable, retry"
