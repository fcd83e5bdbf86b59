from __future__ import annotations

from fastapi import status


class LifecycleError(Exception):
    """Base class for errors raised by the asset and post lifecycle services."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "lifecycle_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidAsset(LifecycleError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_asset"


class InvalidRequest(LifecycleError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_request"


class NotFound(LifecycleError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class IllegalTransition(LifecycleError):
    status_code = status.HTTP_409_CONFLICT
    code = "illegal_transition"


class StorageFailure(LifecycleError):
    code = "storage_failure"


class PartialDerivativeFailure(StorageFailure):
    """One derivative profile failed; the whole asset is treated as failed."""

    code = "derivative_failure"

    def __init__(self, detail: str, *, profile: str, written: list[str] | None = None) -> None:
        super().__init__(detail)
        self.profile = profile
        self.written = list(written or [])


class SweepFailure(LifecycleError):
    code = "sweep_failure"
