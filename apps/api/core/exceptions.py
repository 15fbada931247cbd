"""
API errors raised before a coach stream starts.

Once a streaming response has sent its headers, failures can no longer
change the status code; they are reported in-band as a terminal `error`
frame instead (see services.coach_modules.events.ErrorKind).
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any, List


class APIException(HTTPException):
    """HTTPException with a stable machine-readable `error_code`."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code

    def body(self) -> Dict[str, Any]:
        return {"detail": self.detail, "error_code": self.error_code}


class ValidationError(APIException):
    """Request is well-formed JSON but not an acceptable coach message."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR",
        )


class ConflictError(APIException):
    """A coach stream is already active for this request id."""

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail, error_code="CONFLICT")


class ServiceUnavailableError(APIException):
    """The coach cannot run: provider settings are missing."""

    def __init__(self, detail: str, missing: Optional[List[str]] = None):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE",
            headers={"Retry-After": "60"},
        )
        self.missing = missing or []

    def body(self) -> Dict[str, Any]:
        return {**super().body(), "missing": self.missing}
