"""
Typed errors with stable codes.

Every error carries a dotted lowercase `code` for clients, an HTTP
`status_code` and an optional `meta` payload that is safe to expose. The API
renders them with `to_public_dict()`.
"""

from __future__ import annotations

import re
from typing import Any

_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class EngimetricError(Exception):
    status_code: int = 500
    default_code: str = "internal.error"
    default_message: str = "Internal error"

    def __init__(
        self,
        *,
        message: str | None = None,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        code = code or self.default_code
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(f"Error codes are dot-separated lowercase tokens, got {code!r}")
        self.code = code
        self.message = message or self.default_message
        self.meta = dict(meta or {})
        if status_code is not None:
            self.status_code = int(status_code)
        super().__init__(self.message)

    def to_public_dict(self) -> dict[str, Any]:
        # `detail` matches FastAPI's HTTPException body.
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(EngimetricError):
    status_code = 404
    default_code = "resource.not_found"
    default_message = "Not found"


class UnauthorizedError(EngimetricError):
    status_code = 401
    default_code = "auth.unauthorized"
    default_message = "Not authenticated"


class ForbiddenError(EngimetricError):
    status_code = 403
    default_code = "auth.forbidden"
    default_message = "Forbidden"


class ConflictError(EngimetricError):
    status_code = 409
    default_code = "request.conflict"
    default_message = "Conflict"


class ValidationError(EngimetricError):
    status_code = 422
    default_code = "request.validation_error"
    default_message = "Validation error"


class UpstreamError(EngimetricError):
    status_code = 502
    default_code = "upstream.error"
    default_message = "Upstream service error"


# Sync domain errors


class TeamFrozenError(ForbiddenError):
    def __init__(self, *, team_id: int, reason: str | None = None):
        meta: dict[str, Any] = {"team_id": team_id}
        if reason:
            meta["reason"] = reason
        super().__init__(message="Team is frozen", code="team.frozen", meta=meta)


class SyncInProgressError(ConflictError):
    def __init__(self, *, team_id: int, integration: str):
        super().__init__(
            message=f"A {integration} sync is already running for this team",
            code="sync.in_progress",
            meta={"team_id": team_id, "integration": integration},
        )


class UnknownIntegrationError(NotFoundError):
    def __init__(self, *, integration: str):
        super().__init__(
            message=f"Unknown integration: {integration}",
            code="integration.unknown",
            meta={"integration": integration},
        )


class MissingCredentialsError(ValidationError):
    def __init__(self, *, message: str, integration: str, field: str | None = None):
        meta: dict[str, Any] = {"integration": integration}
        if field:
            meta["field"] = field
        super().__init__(message=message, code="integration.missing_credentials", meta=meta)


class ProviderFetchError(UpstreamError):
    def __init__(self, *, message: str, integration: str, status_code: int | None = None):
        meta: dict[str, Any] = {"integration": integration}
        if status_code is not None:
            meta["provider_status"] = status_code
        super().__init__(message=message, code="integration.fetch_failed", meta=meta)
