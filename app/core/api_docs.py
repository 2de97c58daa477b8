from app.core.observability import ERROR_CODES
from app.schemas.common import ErrorOut

# Messages mirror what the fulfilment endpoints actually return.
_EXAMPLE_MESSAGES: dict[int, str] = {
    400: "Cannot transition order from 'PENDING' to 'PICKED_UP'",
    401: "Invalid credentials",
    403: "Insufficient role for this action",
    404: "Order not found",
    409: "An active refund request already exists for this item",
    422: "Validation failed",
    429: "Too many invalid codes for this order. Try again later.",
    500: "Internal server error",
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    """OpenAPI ``responses`` entries for the shared error envelope."""
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code = "internal_error" if status_code == 500 else ERROR_CODES.get(status_code, "http_error")
        message = _EXAMPLE_MESSAGES.get(status_code, "HTTP error")
        responses[status_code] = {
            "model": ErrorOut,
            "description": code.replace("_", " ").capitalize(),
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "0b6f6c3e-2f4a-4d1e-9a51-6f1f1d2c9e10",
                            "path": "/orders/{order_id}",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
