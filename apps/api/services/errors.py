"""HTTP-mapped error taxonomy shared by the pipeline, storage and auth layers."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class PipelineError(HTTPException):
    """Base class; each subclass fixes its HTTP status."""

    http_status = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Any = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            status_code=self.http_status,
            detail=detail if detail is not None else self.default_detail,
            headers=headers,
        )


class AuthenticationError(PipelineError):
    http_status = 401
    default_detail = "Missing or invalid bearer credential."

    def __init__(self, detail: Any = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(PipelineError):
    http_status = 403
    default_detail = "Not authorized for this operation."


class InvalidRequestError(PipelineError):
    http_status = 400
    default_detail = "Malformed request."


class UnsupportedMediaTypeError(InvalidRequestError):
    http_status = 415
    default_detail = "MIME type not allowed."


class NotFoundError(PipelineError):
    http_status = 404
    default_detail = "Resource not found."


class ConflictError(PipelineError):
    http_status = 409
    default_detail = "Request conflicts with the current resource state."


class WorkerMismatchError(ConflictError):
    """Presented worker id is not the job's claimant."""

    http_status = 403
    default_detail = "Job does not belong to this worker."


class IllegalTransitionError(ConflictError):
    http_status = 409

    def __init__(self, entity: str, entity_id: str, source: Optional[str], target: str):
        self.entity = entity
        self.entity_id = entity_id
        self.source = source
        self.target = target
        super().__init__(f"Illegal {entity} transition {source or 'unknown'} -> {target} for {entity_id}")


class UpstreamError(PipelineError):
    http_status = 500
    default_detail = "Upstream dependency failed."


class StorageUnavailableError(UpstreamError):
    default_detail = "Object storage is unavailable."


class DatabaseUnavailableError(UpstreamError):
    default_detail = "Database operation failed."
