"""
auth/errors.py -- Client-facing error taxonomy for authentication and RBAC.

Every AuthError carries a stable machine-readable code and the HTTP status the
API layer should answer with. Route handlers never build these responses by
hand: api/main.py registers a single exception handler that turns any AuthError
into the standard {"error": {...}} envelope.

Internal faults are deliberately NOT AuthError subclasses. A SQLAlchemy
OperationalError (database unreachable) maps to 503 "store_unavailable";
anything else falls through to the generic 500 handler. Neither is ever reported to a client as one of the kinds below.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for errors a client can recover from (4xx)."""

    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid username or password."


class DuplicateUsername(AuthError):
    code = "duplicate_username"
    status_code = 409
    message = "That username is already taken."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    status_code = 409
    message = "An account with that email already exists."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 422
    message = "Password does not meet the strength policy."


class InvalidToken(AuthError):
    code = "invalid_token"
    status_code = 401
    message = "Token is invalid."


class MalformedToken(InvalidToken):
    code = "malformed_token"
    message = "Token is malformed."


class ExpiredToken(AuthError):
    code = "expired_token"
    status_code = 401
    message = "Token has expired."


class RevokedToken(AuthError):
    code = "revoked_token"
    status_code = 401
    message = "Token has been revoked."


class AlreadyUsed(AuthError):
    code = "already_used"
    status_code = 410
    message = "Token has already been used."


class AccountInactive(AuthError):
    code = "account_inactive"
    status_code = 403
    message = "Account is inactive."


class EmailUnverified(AuthError):
    code = "email_unverified"
    status_code = 403
    message = "Email address has not been verified."


class TenantMismatch(AuthError):
    code = "tenant_mismatch"
    status_code = 400
    message = "Referenced records belong to different tenants."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Resource not found."


class DuplicateRole(AuthError):
    code = "duplicate_role"
    status_code = 409
    message = "A role with that name already exists in this tenant."


class DuplicatePermission(AuthError):
    code = "duplicate_permission"
    status_code = 409
    message = "A permission with that name already exists in this tenant."
