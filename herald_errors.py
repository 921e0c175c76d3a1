"""
herald_errors.py — Error taxonomy shared by the OAuth server and the MCP transports.

Expected rejections (bad grant, bad bearer, unknown session) are returned as
``Failure`` values rather than raised, so callers branch on them explicitly.
Only genuinely unexpected faults travel as exceptions (``InternalError``).

The ``description`` of a Failure is what the client sees; ``reason`` is the
precise server-side cause and only ever goes to logs and the audit trail.
"""

from dataclasses import dataclass
from enum import Enum

from starlette.responses import JSONResponse


class ErrorKind(Enum):
    INVALID_REQUEST = ("invalid_request", 400)
    INVALID_GRANT = ("invalid_grant", 400)
    UNSUPPORTED_GRANT_TYPE = ("unsupported_grant_type", 400)
    AUTHENTICATION = ("unauthorized", 401)
    AUTHORIZATION = ("forbidden", 403)
    INVALID_SESSION = ("invalid_session", 400)
    RATE_LIMITED = ("too_many_requests", 429)
    UNAVAILABLE = ("temporarily_unavailable", 503)
    INTERNAL = ("server_error", 500)

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def status(self) -> int:
        return self.value[1]


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    description: str
    reason: str = ""

    @property
    def code(self) -> str:
        return self.kind.code

    @property
    def status(self) -> int:
        return self.kind.status

    def to_dict(self) -> dict:
        return {"error": self.kind.code, "error_description": self.description}

    def to_response(self, www_authenticate: str | None = None,
                    headers: dict[str, str] | None = None) -> JSONResponse:
        extra = {"Cache-Control": "no-store"}
        if headers:
            extra.update(headers)
        if self.kind is ErrorKind.AUTHENTICATION:
            extra["WWW-Authenticate"] = www_authenticate or "Bearer"
        return JSONResponse(self.to_dict(), status_code=self.status, headers=extra)


def invalid_request(description: str, reason: str = "") -> Failure:
    return Failure(ErrorKind.INVALID_REQUEST, description, reason or description)


def invalid_grant(reason: str, description: str = "Invalid or expired grant") -> Failure:
    # The wire description stays generic; reason is for the audit trail only.
    return Failure(ErrorKind.INVALID_GRANT, description, reason)


def authentication_failed(reason: str) -> Failure:
    return Failure(ErrorKind.AUTHENTICATION, "Invalid authentication token", reason)


def invalid_session(reason: str = "unknown session") -> Failure:
    return Failure(ErrorKind.INVALID_SESSION, "invalid or missing session", reason)


class InternalError(Exception):
    """Unexpected failure. Rendered as ``server_error`` with a redacted message."""


class StoreError(InternalError):
    """A backing store (SQLite, document store) failed."""


def internal_error_response(exc: BaseException, development: bool) -> JSONResponse:
    description = str(exc) if development and str(exc) else "Internal server error"
    failure = Failure(ErrorKind.INTERNAL, description, repr(exc))
    return failure.to_response()
