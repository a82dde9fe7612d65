from __future__ import annotations


class PipelineError(Exception):
    """Base for errors the upload/migration pipeline surfaces to callers."""

    status_code: int = 500
    error_code: str = "pipeline_error"

    def __init__(self, message: str = "", *, error_code: str | None = None):
        super().__init__(message)
        self.message = str(message or self.error_code)
        if error_code:
            self.error_code = error_code


class ValidationError(PipelineError):
    status_code = 400
    error_code = "validation_error"


class MissingField(ValidationError):
    error_code = "missing_field"


class InvalidFileType(ValidationError):
    error_code = "invalid_file_type"


class FileTooLarge(ValidationError):
    error_code = "file_too_large"


class FileTooSmall(ValidationError):
    error_code = "file_too_small"


class NotFoundError(PipelineError):
    status_code = 404
    error_code = "not_found"


class UpstreamFailure(PipelineError):
    """Binary or metadata store failed; the upstream message is passed through verbatim."""

    status_code = 502
    error_code = "upstream_failure"

    def __init__(self, message: str = "", *, upstream_status: int | None = None, error_code: str | None = None):
        super().__init__(message, error_code=error_code)
        self.upstream_status = upstream_status


class AssetUploadFailed(UpstreamFailure):
    error_code = "asset_upload_failed"


class StagingUnavailable(UpstreamFailure):
    error_code = "staging_unavailable"
