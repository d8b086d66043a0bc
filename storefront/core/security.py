"""
Storefront — core/security.py
─────────────────────────────────────────────────────────────────
All credential and token helpers in one place.

  PasswordHasher  → bcrypt hash / verify
  TokenIssuer     → signed access (15m) + refresh (3d) JWTs
  authorize()     → role check against a route's allowed set
  require_roles() → FastAPI dependency: bearer → claims → role check

Usage in a route:
    @router.get("/me")
    async def me(claims: TokenClaims = Depends(require_roles(Role.MEMBER, Role.VIP))):
        return await accounts.find_one(claims.subject)
─────────────────────────────────────────────────────────────────
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import bcrypt
from fastapi import Depends, Request
from jose import ExpiredSignatureError, JWTError, jwt

from storefront.core.errors import Forbidden, InvalidToken, Unauthorized, ValidationError
from storefront.models.user import Role

logger = logging.getLogger("storefront.security")

ACCESS  = "access"
REFRESH = "refresh"

# bcrypt silently ignores (or rejects) anything past 72 bytes
MAX_PASSWORD_BYTES = 72


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Password hashing
# ─────────────────────────────────────────────
class PasswordHasher:
    """One-way bcrypt hash of user passwords."""

    def __init__(self, rounds: int = 10):
        self.rounds = rounds

    @classmethod
    def from_config(cls, config) -> "PasswordHasher":
        return cls(rounds=config.BCRYPT_ROUNDS)

    def hash(self, password: str) -> str:
        raw = password.encode("utf-8")
        if len(raw) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        return bcrypt.hashpw(raw, bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Malformed stored hash or over-long input
            return False


# ─────────────────────────────────────────────
# Tokens
# ─────────────────────────────────────────────
@dataclass
class TokenClaims:
    """
    Decoded, verified JWT payload.

    Attributes:
        subject: User id ("sub")
        username: Display name at issue time
        roles: The user's role at issue time
        token_type: "access" or "refresh"
        issued_at: "iat"
        expires_at: "exp"
    """
    subject:    str
    username:   str
    roles:      Role
    token_type: str
    issued_at:  datetime
    expires_at: datetime


class TokenIssuer:
    """
    Mints and verifies HS256 tokens.

    The secret and lifetimes are passed in, never read from globals,
    so each environment (and each test) can use its own.
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        access_minutes: int = 15,
        refresh_days: int = 3,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not secret:
            raise ValueError("Token secret must not be empty")
        self.secret = secret
        self.algorithm = algorithm
        self.access_lifetime = timedelta(minutes=access_minutes)
        self.refresh_lifetime = timedelta(days=refresh_days)
        self._clock = clock

    @classmethod
    def from_config(cls, config, clock: Callable[[], datetime] = _utcnow) -> "TokenIssuer":
        return cls(
            secret=config.JWT_SECRET,
            algorithm=config.ALGORITHM,
            access_minutes=config.ACCESS_TOKEN_MINUTES,
            refresh_days=config.REFRESH_TOKEN_DAYS,
            clock=clock,
        )

    def _sign(self, subject: str, username: str, roles: Role,
              token_type: str, lifetime: timedelta) -> str:
        # Whole seconds so exp - iat is exactly the lifetime
        issued = int(self._clock().timestamp())
        payload = {
            "sub":      subject,
            "username": username,
            "roles":    Role(roles).value,
            "type":     token_type,
            "iat":      issued,
            "exp":      issued + int(lifetime.total_seconds()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def issue_access(self, subject: str, username: str, roles: Role) -> str:
        return self._sign(subject, username, roles, ACCESS, self.access_lifetime)

    def issue_refresh(self, subject: str, username: str, roles: Role) -> str:
        return self._sign(subject, username, roles, REFRESH, self.refresh_lifetime)

    def verify(self, token: str, expected_type: str = ACCESS) -> TokenClaims:
        """
        Verify signature, expiry and token type.
        Raises InvalidToken on any failure. Never returns partial claims.
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.warning(f"Rejected expired {expected_type} token")
            raise InvalidToken("Token expired")
        except JWTError as e:
            logger.warning(f"Rejected {expected_type} token: {e}")
            raise InvalidToken()

        if payload.get("type") != expected_type:
            logger.warning(f"Rejected token: expected {expected_type}, got {payload.get('type')}")
            raise InvalidToken()

        try:
            return TokenClaims(
                subject=payload["sub"],
                username=payload.get("username", ""),
                roles=Role(payload["roles"]),
                token_type=payload["type"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Rejected token with malformed claims: {e}")
            raise InvalidToken()


# ─────────────────────────────────────────────
# Authorization guard
# ─────────────────────────────────────────────
def authorize(claims: TokenClaims, required_roles: Iterable[Role]) -> TokenClaims:
    """Allow if the caller's role is one of required_roles, else Forbidden."""
    allowed = frozenset(required_roles)
    if claims.roles not in allowed:
        logger.warning(
            f"Role {claims.roles.value} denied for user {claims.subject} "
            f"(needs one of: {', '.join(sorted(r.value for r in allowed))})"
        )
        raise Forbidden("Insufficient role")
    return claims


def bearer_token(request: Request) -> Optional[str]:
    """
    Extract the token from `Authorization: Bearer <token>`.
    Returns None if the header is missing or uses another scheme.
    """
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.tokens


async def current_claims(
    request: Request,
    tokens: TokenIssuer = Depends(get_token_issuer),
) -> TokenClaims:
    """
    FastAPI dependency: verified access-token claims.

    Raises Unauthorized if:
        - No bearer token
        - Token is invalid, expired, or not an access token
    """
    token = bearer_token(request)
    if not token:
        logger.warning("No token provided in request headers")
        raise Unauthorized("No token provided")
    return tokens.verify(token, ACCESS)


def require_roles(*roles: Role):
    """
    Build a dependency that passes only callers holding one of `roles`.
    Returns the claims so the handler can hand them to the service.
    """
    required = frozenset(roles)

    async def dependency(claims: TokenClaims = Depends(current_claims)) -> TokenClaims:
        return authorize(claims, required)

    return dependency
