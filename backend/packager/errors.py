"""
Error taxonomy of the packaging service.

Every error carries the HTTP status the API layer answers with. Build-time
errors (BuildToolError, BuildTimeoutError, CancellationError) never reach an
API caller directly: the scheduler records them into the PlatformResult of
the unit that raised them.
"""
from __future__ import annotations


class PackagingError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": self.message}


class ValidationError(PackagingError):
    status_code = 422

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)

    def to_dict(self) -> dict:
        return {"error": "ValidationError", "detail": self.message, "errors": self.errors}


class NotFoundError(PackagingError):
    status_code = 404


class UploadError(PackagingError):
    status_code = 400


class QuotaError(PackagingError):
    status_code = 413


class BuildToolError(PackagingError):
    def __init__(self, tool: str, exit_code: int, output: str = ""):
        super().__init__(f"{tool} failed with exit code {exit_code}")
        self.tool = tool
        self.exit_code = exit_code
        self.output = output


class BuildTimeoutError(PackagingError, TimeoutError):
    pass


class CancellationError(PackagingError):
    pass


class NotCancellableError(PackagingError):
    status_code = 409


class NotRemovableError(PackagingError):
    status_code = 409


class NotRetryableError(PackagingError):
    status_code = 409
