"""
Storefront — users.py
─────────────────────────────────────────────────────────────────
Accounts: registration with OTP email, verification, login,
token refresh, federated sign-in, profile reads/updates and
soft deactivation.

  UserStore       → typed access to the users table
  AccountService  → the lifecycle rules (no HTTP in here)
  router          → /users/*

ENDPOINTS:
  POST   /users/register        → create unverified user, email OTP
  POST   /users/verify-otp      → verify OTP, mark verified
  POST   /users/login           → user + access_token + refresh_token
  POST   /users/refresh         → new access_token
  GET    /users/me              → caller's user          (Member, VIP)
  GET    /users?ids=a,b         → users by id / all      (Member, VIP)
  PUT    /users/update/{id}     → partial profile update (Member, VIP)
  DELETE /users?ids=a,b         → soft deactivation      (Admin_Master)

Known gaps kept on purpose (see tests):
  - refresh does not re-check the user's live status/permission
  - federated sign-ups are auto-verified and have no password
  - OTP verification has no attempt limit
─────────────────────────────────────────────────────────────────
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, Union

from email_validator import EmailNotValidError, validate_email
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, EmailStr, Field

from storefront.core.database import get_db
from storefront.core.errors import (
    ConflictError,
    DependencyError,
    InvalidCredential,
    NotFound,
    ValidationError,
)
from storefront.core.mailer import Mailer
from storefront.core.security import (
    REFRESH,
    PasswordHasher,
    TokenClaims,
    TokenIssuer,
    require_roles,
)
from storefront.models.user import (
    DEFAULT_ROLE,
    FEDERATED_ROLE,
    UPDATABLE_FIELDS,
    Role,
    User,
)
from storefront.otp import OtpManager

logger = logging.getLogger("storefront.users")

MIN_PASSWORD_LENGTH = 6
PROFILE_FIELDS = ("firstname", "lastname", "isd_code", "phone", "birthday", "remark")

INVALID_LOGIN = "Invalid email or password"
INVALID_OTP   = "Invalid OTP"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Lower-case + syntax check. Raises ValidationError."""
    email = (email or "").strip().lower()
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise ValidationError(f"Invalid email: {e}")
    return email


def _check_password(password: str):
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


# ─────────────────────────────────────────────
# Credential store
# ─────────────────────────────────────────────
_COLUMNS = (
    "id", "name", "firstname", "lastname", "role", "isd_code", "phone",
    "email", "account", "password", "status", "permission", "birthday",
    "verified", "remark", "otp", "otp_expiry", "created_at", "updated_at",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class UserStore:
    """
    All reads/writes of the users table.
    Every method opens its own connection.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    def _db(self):
        return get_db(self.db_path, self.timeout)

    async def _fetch_one(self, sql: str, params: tuple) -> Optional[User]:
        async with self._db() as db:
            async with db.execute(sql, params) as cur:
                row = await cur.fetchone()
        return User.from_row(row) if row else None

    async def _fetch_all(self, sql: str, params: tuple = ()) -> List[User]:
        async with self._db() as db:
            async with db.execute(sql, params) as cur:
                rows = await cur.fetchall()
        return [User.from_row(r) for r in rows]

    # ─── Read ─────────────────────────────────

    async def get_by_id(self, user_id: str) -> Optional[User]:
        return await self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    async def get_by_email(self, email: str) -> Optional[User]:
        return await self._fetch_one("SELECT * FROM users WHERE email = ?", (email,))

    async def get_login_candidate(self, email: str) -> Optional[User]:
        """Only users that are verified, permitted and active."""
        return await self._fetch_one(
            """SELECT * FROM users
               WHERE email = ? AND verified = 1 AND permission = 1 AND status = 1""",
            (email,),
        )

    async def find_by_ids(self, ids: List[str]) -> List[User]:
        if not ids:
            return []
        marks = ",".join("?" * len(ids))
        return await self._fetch_all(
            f"SELECT * FROM users WHERE id IN ({marks}) ORDER BY created_at", tuple(ids)
        )

    async def find_active(self) -> List[User]:
        return await self._fetch_all("SELECT * FROM users WHERE status = 1 ORDER BY created_at")

    # ─── Write ────────────────────────────────

    async def insert(self, user: User) -> None:
        """Raises ConflictError if email / account / phone is taken."""
        values = (
            user.id, user.name, user.firstname, user.lastname, user.role.value,
            user.isd_code, user.phone, user.email, user.account, user.password_hash,
            int(user.status), int(user.permission), user.birthday, int(user.verified),
            user.remark, user.otp, _iso(user.otp_expiry),
            _iso(user.created_at), _iso(user.updated_at),
        )
        async with self._db() as db:
            await db.execute(
                f"INSERT INTO users ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' * len(_COLUMNS))})",
                values,
            )
            await db.commit()

    async def delete(self, user_id: str) -> None:
        """Only used to back out a registration whose OTP email failed."""
        async with self._db() as db:
            await db.execute("DELETE FROM users WHERE id = ? AND verified = 0", (user_id,))
            await db.commit()

    async def mark_verified(self, user_id: str, at: datetime) -> Optional[User]:
        async with self._db() as db:
            await db.execute(
                """UPDATE users
                   SET verified = 1, otp = NULL, otp_expiry = NULL, updated_at = ?
                   WHERE id = ?""",
                (_iso(at), user_id),
            )
            await db.commit()
        return await self.get_by_id(user_id)

    async def update_fields(self, user_id: str, fields: dict, at: datetime) -> Optional[User]:
        """Column-restricted update. Returns None if no row matched."""
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Not updatable: {', '.join(sorted(unknown))}")

        assignments = [f"{col} = ?" for col in fields] + ["updated_at = ?"]
        params = list(fields.values()) + [_iso(at), user_id]
        async with self._db() as db:
            cur = await db.execute(
                f"UPDATE users SET {', '.join(assignments)} WHERE id = ?", tuple(params)
            )
            matched = cur.rowcount
            await db.commit()
        if not matched:
            return None
        return await self.get_by_id(user_id)

    async def deactivate(self, ids: List[str], at: datetime) -> Tuple[int, int]:
        """Soft delete. Returns (matched, modified)."""
        marks = ",".join("?" * len(ids))
        async with self._db() as db:
            async with db.execute(
                f"SELECT COUNT(*) AS c FROM users WHERE id IN ({marks})", tuple(ids)
            ) as cur:
                matched = (await cur.fetchone())["c"]
            cur = await db.execute(
                f"UPDATE users SET status = 0, updated_at = ? WHERE id IN ({marks}) AND status = 1",
                (_iso(at), *ids),
            )
            modified = cur.rowcount
            await db.commit()
        return matched, modified


# ─────────────────────────────────────────────
# Account lifecycle
# ─────────────────────────────────────────────
@dataclass
class FederatedProfile:
    """Identity handed over by an external provider (Google)."""
    email:     str
    name:      str
    subject:   str                 # provider's stable user id
    firstname: Optional[str] = None
    lastname:  Optional[str] = None


class AccountService:

    def __init__(
        self,
        store: UserStore,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        otp: OtpManager,
        mailer: Mailer,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.otp = otp
        self.mailer = mailer
        self._clock = clock

    # ─── Registration ─────────────────────────

    async def register(
        self,
        name: str,
        email: str,
        password: Optional[str] = None,
        account: Optional[str] = None,
        **profile,
    ) -> User:
        """
        Create an unverified user and email them an OTP.

        If the email cannot be sent the new row is removed again and the
        DependencyError propagates, so the caller can simply retry.

        Raises:
            ValidationError: bad name / email / password / profile field
            ConflictError: email, account or phone already registered
            DependencyError: store or mail transport failed
        """
        user = self._new_user(name, email, account, profile)

        if password is not None:
            _check_password(password)
            user.password_hash = self.hasher.hash(password)

        challenge = self.otp.issue(user.created_at)
        user.otp = challenge.code
        user.otp_expiry = challenge.expires_at

        await self.store.insert(user)

        subject, body = self.otp.email(challenge)
        try:
            await self.mailer.send(user.email, subject, body)
        except DependencyError:
            logger.error(f"OTP email to {user.email} failed, backing out registration")
            await self.store.delete(user.id)
            raise

        logger.info(f"User registered: {user.email} ({user.id})")
        return replace(user, password_hash=None)

    def _new_user(self, name, email, account, profile) -> User:
        unknown = set(profile) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required")
        email = normalize_email(email)
        now = self._clock()
        return User(
            id=str(uuid.uuid4()),
            name=name,
            email=email,
            account=(account or "").strip() or email,
            role=DEFAULT_ROLE,
            password_hash=None,
            status=True,
            permission=True,
            verified=False,
            otp=None,
            otp_expiry=None,
            created_at=now,
            updated_at=now,
            **profile,
        )

    async def verify_otp(self, email: str, submitted_otp: Union[int, str]) -> User:
        """
        Unknown email, wrong code and expired code all raise the same
        InvalidCredential. No attempt counter exists.
        """
        email = (email or "").strip().lower()
        user = await self.store.get_by_email(email)
        if not user or not self.otp.check(user.otp, user.otp_expiry, submitted_otp):
            logger.warning(f"OTP verification failed for {email}")
            raise InvalidCredential(INVALID_OTP)

        verified = await self.store.mark_verified(user.id, self._clock())
        logger.info(f"User verified: {email}")
        return verified

    # ─── Sessions ─────────────────────────────

    def _session(self, user: User) -> dict:
        return {
            "user":          user.public(),
            "access_token":  self.tokens.issue_access(user.id, user.name, user.role),
            "refresh_token": self.tokens.issue_refresh(user.id, user.name, user.role),
        }

    async def login(self, email: str, password: Optional[str] = None) -> dict:
        """
        Verified + permitted + active users only.

        Accounts without a stored password (federated sign-ups) are
        let in on email alone.
        """
        email = (email or "").strip().lower()
        user = await self.store.get_login_candidate(email)
        if not user:
            logger.warning(f"Login failed: no eligible user for {email}")
            raise InvalidCredential(INVALID_LOGIN)

        if user.password_hash:
            if not password or not self.hasher.verify(password, user.password_hash):
                logger.warning(f"Login failed: bad password for {email}")
                raise InvalidCredential(INVALID_LOGIN)

        logger.info(f"User logged in: {email}")
        return self._session(user)

    async def refresh(self, refresh_token: str) -> dict:
        """
        New access token from the refresh token's own claims.
        Does not look the user up again.
        """
        claims = self.tokens.verify(refresh_token, REFRESH)
        access_token = self.tokens.issue_access(claims.subject, claims.username, claims.roles)
        logger.info(f"Access token refreshed for user {claims.subject}")
        return {"access_token": access_token}

    # ─── Federated identity ───────────────────

    async def federated_validate(self, profile: FederatedProfile) -> User:
        """
        Existing user by email, or a new one that is already verified,
        has the low-privilege role and no password.
        """
        email = normalize_email(profile.email)
        existing = await self.store.get_by_email(email)
        if existing:
            logger.info(f"Federated user found: {email}")
            return existing

        user = self._new_user(
            profile.name or email, email, profile.subject,
            {"firstname": profile.firstname, "lastname": profile.lastname},
        )
        user.verified = True
        user.role = FEDERATED_ROLE
        try:
            await self.store.insert(user)
        except ConflictError:
            # Lost a race with a parallel callback for the same email
            existing = await self.store.get_by_email(email)
            if existing is None:
                raise
            return existing
        logger.info(f"Federated user registered: {email} ({user.id})")
        return user

    async def federated_login(self, profile: FederatedProfile) -> dict:
        """Provider already authenticated the caller; skip the password."""
        user = await self.federated_validate(profile)
        if not user.can_login:
            logger.warning(f"Federated login refused for {user.email}: not eligible")
            raise InvalidCredential(INVALID_LOGIN)
        logger.info(f"Federated login: {user.email}")
        return self._session(user)

    # ─── Reads ────────────────────────────────

    async def find_one(self, user_id: str) -> User:
        user = await self.store.get_by_id(user_id)
        if not user or not user.status:
            raise NotFound("User not found or inactive")
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self.store.get_by_email((email or "").strip().lower())

    async def find_by_ids(self, ids: Iterable[str]) -> List[User]:
        return await self.store.find_by_ids(_clean_ids(ids))

    async def find_all(self) -> List[User]:
        return await self.store.find_active()

    # ─── Updates ──────────────────────────────

    async def update(self, user_id: str, changes: dict) -> User:
        """
        Partial profile update. Identity, role and status flags are
        dropped here whatever the caller sent.
        """
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        dropped = set(changes) - set(fields)
        if dropped:
            logger.info(f"Update of {user_id}: stripped restricted fields {sorted(dropped)}")

        if "name" in fields and not (fields["name"] or "").strip():
            raise ValidationError("Name must not be empty")
        if "account" in fields and not (fields["account"] or "").strip():
            raise ValidationError("Account must not be empty")
        if fields.get("password") is not None:
            _check_password(fields["password"])
            fields["password"] = self.hasher.hash(fields["password"])
        elif "password" in fields:
            del fields["password"]

        updated = await self.store.update_fields(user_id, fields, self._clock())
        if not updated:
            raise NotFound("User not found")
        logger.info(f"User updated: {user_id}")
        return updated

    async def deactivate(self, ids: Iterable[str]) -> dict:
        ids = _clean_ids(ids)
        if not ids:
            raise ValidationError("No user ids given")
        matched, modified = await self.store.deactivate(ids, self._clock())
        if modified == 0:
            raise NotFound("No users found to deactivate")
        logger.info(f"Users deactivated: {modified}/{len(ids)}")
        return {"matched": matched, "modified": modified}


def _clean_ids(ids: Iterable[str]) -> List[str]:
    seen = []
    for raw in ids or ():
        value = (raw or "").strip()
        if value and value not in seen:
            seen.append(value)
    return seen


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────
router = APIRouter(prefix="/users", tags=["users"])

member_or_vip = require_roles(Role.MEMBER, Role.VIP)
admin_master  = require_roles(Role.ADMIN_MASTER)


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


class RegisterRequest(BaseModel):
    name:      str = Field(min_length=1)
    email:     EmailStr
    password:  str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=72)
    account:   Optional[str] = None
    firstname: Optional[str] = None
    lastname:  Optional[str] = None
    isd_code:  Optional[int] = None
    phone:     Optional[int] = None
    birthday:  Optional[str] = None
    remark:    Optional[str] = None


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp:   Union[int, str]


class SignInRequest(BaseModel):
    email:    EmailStr
    password: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class UpdateUserRequest(BaseModel):
    # Restricted fields are not declared, so pydantic drops them
    name:      Optional[str] = None
    firstname: Optional[str] = None
    lastname:  Optional[str] = None
    isd_code:  Optional[int] = None
    phone:     Optional[int] = None
    account:   Optional[str] = None
    password:  Optional[str] = Field(default=None, min_length=MIN_PASSWORD_LENGTH, max_length=72)
    birthday:  Optional[str] = None
    remark:    Optional[str] = None


def _split_ids(ids: Optional[str]) -> List[str]:
    return [i for i in (ids or "").split(",") if i.strip()]


@router.post("/register")
async def register(payload: RegisterRequest, accounts: AccountService = Depends(get_accounts)):
    data = payload.model_dump()
    await accounts.register(
        name=data.pop("name"),
        email=data.pop("email"),
        password=data.pop("password"),
        account=data.pop("account"),
        **data,
    )
    return {"result": "success"}


@router.post("/verify-otp")
async def verify_otp(payload: VerifyOtpRequest, accounts: AccountService = Depends(get_accounts)):
    user = await accounts.verify_otp(payload.email, payload.otp)
    return user.public()


@router.post("/login")
async def login(payload: SignInRequest, accounts: AccountService = Depends(get_accounts)):
    return await accounts.login(payload.email, payload.password)


@router.post("/refresh")
async def refresh(payload: RefreshRequest, accounts: AccountService = Depends(get_accounts)):
    return await accounts.refresh(payload.refresh_token)


@router.get("/me")
async def me(
    claims: TokenClaims = Depends(member_or_vip),
    accounts: AccountService = Depends(get_accounts),
):
    user = await accounts.find_one(claims.subject)
    return user.public()


@router.get("")
async def list_users(
    ids: Optional[str] = None,
    claims: TokenClaims = Depends(member_or_vip),
    accounts: AccountService = Depends(get_accounts),
):
    if ids:
        users = await accounts.find_by_ids(_split_ids(ids))
    else:
        users = await accounts.find_all()
    return [u.public() for u in users]


@router.put("/update/{user_id}")
async def update_user(
    user_id: str,
    payload: UpdateUserRequest,
    claims: TokenClaims = Depends(member_or_vip),
    accounts: AccountService = Depends(get_accounts),
):
    user = await accounts.update(user_id, payload.model_dump(exclude_unset=True))
    return user.public()


@router.delete("")
async def deactivate_users(
    ids: Optional[str] = None,
    claims: TokenClaims = Depends(admin_master),
    accounts: AccountService = Depends(get_accounts),
):
    return await accounts.deactivate(_split_ids(ids))
