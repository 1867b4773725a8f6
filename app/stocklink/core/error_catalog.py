from dataclasses import dataclass
from fastapi import status


@dataclass(frozen=True)
class ErrorDefinition:
    code: str
    message: str
    status_code: int


class ErrorCatalog:
    INVALID_INPUT = ErrorDefinition(
        "INVALID_INPUT",
        "Invalid transfer input",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    INVALID_STATE_TRANSITION = ErrorDefinition(
        "INVALID_STATE_TRANSITION",
        "Action not allowed in the current transfer status",
        status.HTTP_409_CONFLICT,
    )
    INSUFFICIENT_STOCK = ErrorDefinition(
        "INSUFFICIENT_STOCK",
        "Insufficient stock at source location",
        status.HTTP_409_CONFLICT,
    )
    OVER_RECEIPT = ErrorDefinition(
        "OVER_RECEIPT",
        "Received quantity exceeds outstanding shipped quantity",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    CONFLICT = ErrorDefinition(
        "CONFLICT",
        "Transfer was modified concurrently",
        status.HTTP_409_CONFLICT,
    )
    NOT_FOUND = ErrorDefinition(
        "NOT_FOUND",
        "Transfer not found",
        status.HTTP_404_NOT_FOUND,
    )
    WOULD_GO_NEGATIVE = ErrorDefinition(
        "WOULD_GO_NEGATIVE",
        "Stock movement would leave a negative quantity",
        status.HTTP_409_CONFLICT,
    )
    FORBIDDEN_PARTICIPANT = ErrorDefinition(
        "FORBIDDEN_PARTICIPANT",
        "Acting location is not allowed to perform this action",
        status.HTTP_403_FORBIDDEN,
    )
    ACTOR_CONTEXT_REQUIRED = ErrorDefinition(
        "ACTOR_CONTEXT_REQUIRED",
        "Actor context headers are required",
        status.HTTP_401_UNAUTHORIZED,
    )
    DB_UNAVAILABLE = ErrorDefinition(
        "DB_UNAVAILABLE",
        "Database unavailable",
        status.HTTP_503_SERVICE_UNAVAILABLE,
    )
    LOCK_TIMEOUT = ErrorDefinition(
        "LOCK_TIMEOUT",
        "Lock wait timeout",
        status.HTTP_409_CONFLICT,
    )
    VALIDATION_ERROR = ErrorDefinition(
        "VALIDATION_ERROR",
        "Validation error",
        status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
    INTERNAL_ERROR = ErrorDefinition(
        "INTERNAL_ERROR",
        "Internal server error",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    OPS_DISABLED = ErrorDefinition(
        "OPS_DISABLED",
        "Operation disabled by configuration",
        status.HTTP_403_FORBIDDEN,
    )
    IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD = ErrorDefinition(
        "IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD",
        "Idempotency key reused with different payload",
        status.HTTP_409_CONFLICT,
    )
    IDEMPOTENCY_REQUEST_IN_PROGRESS = ErrorDefinition(
        "IDEMPOTENCY_REQUEST_IN_PROGRESS",
        "Idempotency request already in progress",
        status.HTTP_409_CONFLICT,
    )
    IDEMPOTENCY_REPLAY = ErrorDefinition(
        "IDEMPOTENCY_REPLAY",
        "Idempotent replay",
        status.HTTP_200_OK,
    )


class AppError(Exception):
    def __init__(self, error: ErrorDefinition, details: object | None = None):
        self.error = error
        self.details = details
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code
