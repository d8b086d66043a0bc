"""
Storefront — core/errors.py
─────────────────────────────────────────────────────────────────
Typed errors raised by the services. main.py maps each one to an
HTTP status; nothing below the router layer raises HTTPException.

  ValidationError    → 400   malformed / out-of-range input
  ConflictError      → 409   email / account / phone already taken
  InvalidCredential  → 401   bad login or OTP (one message, no enumeration)
  Unauthorized       → 401   missing / invalid / expired token
  Forbidden          → 403   valid token, wrong role
  NotFound           → 404   entity absent
  DependencyError    → 502   store or mail transport unreachable
  DependencyTimeout  → 504   store or mail transport too slow
  InternalError      → 500   anything else
─────────────────────────────────────────────────────────────────
"""

import re


class StorefrontError(Exception):
    """Base storefront exception."""

    status_code: int = 500
    public_message: str = "Internal server error"
    # Internal / dependency failures never leak their message to clients
    expose_message: bool = True

    def __init__(self, message: str = None):
        self.message = message or self.public_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        """ConflictError → "conflict_error"."""
        return re.sub(r"(?<!^)(?=[A-Z])", "_", type(self).__name__).lower()

    @property
    def detail(self) -> str:
        return self.message if self.expose_message else self.public_message


class ValidationError(StorefrontError):
    """Malformed or out-of-range input."""
    status_code = 400
    public_message = "Invalid request"


class ConflictError(StorefrontError):
    """Uniqueness violation (email, account, phone)."""
    status_code = 409
    public_message = "Already exists"


class InvalidCredential(StorefrontError):
    """Bad login or OTP. Deliberately vague."""
    status_code = 401
    public_message = "Invalid email or password"


class Unauthorized(StorefrontError):
    """No usable access token."""
    status_code = 401
    public_message = "Not authenticated"


class InvalidToken(Unauthorized):
    """Token failed signature, expiry or type checks."""
    public_message = "Invalid token"


class Forbidden(StorefrontError):
    """Valid token, role not allowed on this route."""
    status_code = 403
    public_message = "Forbidden"


class NotFound(StorefrontError):
    status_code = 404
    public_message = "Not found"


class DependencyError(StorefrontError):
    """Document store or mail transport failed."""
    status_code = 502
    public_message = "Upstream service unavailable"
    expose_message = False


class DependencyTimeout(DependencyError):
    status_code = 504
    public_message = "Upstream service timed out"


class InternalError(StorefrontError):
    status_code = 500
    public_message = "Internal server error"
    expose_message = False
