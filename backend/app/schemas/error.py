from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Body of every non-2xx response; ``code`` is a stable machine-readable tag."""

    detail: Any
    code: str | None = None

    @classmethod
    def from_error(cls, exc: Exception) -> "ErrorResponse":
        return cls(detail=getattr(exc, "detail", str(exc)), code=getattr(exc, "code", None))
