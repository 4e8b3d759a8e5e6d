from __future__ import annotations

from typing import Any, Dict, Optional

from studio_jobs.domain.enums import ErrorCode


class StudioError(Exception):
    """Base for every error the orchestrator knows how to classify."""

    error_code: str = ErrorCode.generation_failed.value

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(StudioError):
    error_code = ErrorCode.validation.value


class ProviderUnavailable(StudioError):
    """All endpoints and attempts for a provider call were exhausted."""

    error_code = ErrorCode.provider_unavailable.value


class ProviderRejected(StudioError):
    """The provider answered, but refused the request (non-transient 4xx, code != 0, ...)."""

    error_code = ErrorCode.generation_failed.value

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class PollTimeout(StudioError):
    error_code = ErrorCode.timeout.value


class GenerationFailed(StudioError):
    error_code = ErrorCode.generation_failed.value


class IngestionFailed(StudioError):
    error_code = ErrorCode.ingestion_failed.value


class JobNotFound(StudioError):
    pass


class Forbidden(StudioError):
    pass


class InvalidTransition(StudioError):
    pass
