from pydantic import BaseModel


class ApiErrorResponse(BaseModel):
    code: str
    message: str
    details: dict | None = None
    trace_id: str | None = None


class ApiValidationErrorItem(BaseModel):
    field: str | None = None
    message: str
    type: str
    loc: list[str | int] | None = None


class ApiValidationErrorDetails(BaseModel):
    errors: list[ApiValidationErrorItem]


class ApiValidationErrorResponse(ApiErrorResponse):
    details: ApiValidationErrorDetails | dict | None = None


ERROR_RESPONSES = {
    403: {"model": ApiErrorResponse, "description": "Acting location is not a participant"},
    404: {"model": ApiErrorResponse, "description": "Transfer not found"},
    409: {"model": ApiErrorResponse, "description": "Conflict, invalid transition or insufficient stock"},
    422: {"model": ApiValidationErrorResponse, "description": "Invalid input"},
}
