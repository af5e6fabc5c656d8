from __future__ import annotations


class PipelineError(Exception):
    """Base error for the editing pipeline. Carries a stable code and HTTP status."""

    code = "pipeline_error"
    http_status = 500

    def as_dict(self) -> dict:
        return {"error": self.code, "detail": str(self)}


class RetrievalError(PipelineError):
    """Raised when every retrieval strategy for a source has been exhausted."""

    code = "retrieval_failed"
    http_status = 502

    def __init__(self, message: str, attempts: list[tuple[str, str]] | None = None):
        super().__init__(message)
        self.attempts = attempts or []

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["attempts"] = [{"strategy": s, "reason": r} for s, r in self.attempts]
        return data


class ParseError(PipelineError):
    """Raised when a download confirmation page lacks its form or a required field."""

    code = "confirmation_page_malformed"
    http_status = 502


class TranscodeError(PipelineError):
    code = "transcode_failed"
    http_status = 500

    def __init__(self, message: str, exit_code: int | None = None, diagnostic: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.diagnostic = diagnostic

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["exit_code"] = self.exit_code
        data["diagnostic"] = self.diagnostic
        return data


class TranscodeTimeout(PipelineError, TimeoutError):
    """The ffmpeg process outlived its timeout and was killed."""

    code = "transcode_timeout"
    http_status = 504

    def __init__(self, message: str, timeout: float | None = None, diagnostic: str = ""):
        super().__init__(message)
        self.timeout = timeout
        self.diagnostic = diagnostic


class PreconditionError(PipelineError):
    """A stage was requested before the artifact it consumes exists."""

    code = "precondition_failed"
    http_status = 409


class ValidationError(PipelineError):
    code = "invalid_request"
    http_status = 400


class EnqueueError(PipelineError):
    """The stage call could not be handed to the task queue."""

    code = "queue_unavailable"
    http_status = 503
