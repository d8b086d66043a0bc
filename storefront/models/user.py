"""
Storefront — models/user.py
─────────────────────────────────────────────────────────────────
User dataclass + role enum.
No logic here beyond row mapping and the public view.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Role(str, Enum):
    """
    Closed set of roles. Shared by the user record and token claims,
    so the guard only ever compares enum members.
    """
    PUBLIC       = "Public"         # federated sign-ups start here
    MEMBER       = "Member"         # default for registered users
    VIP          = "VIP"
    ADMIN_MASTER = "Admin_Master"


DEFAULT_ROLE   = Role.MEMBER
FEDERATED_ROLE = Role.PUBLIC


# Columns a profile update may touch. Everything else
# (id, email, role, status, permission, verified, otp…) is stripped.
UPDATABLE_FIELDS = (
    "name", "firstname", "lastname", "isd_code", "phone",
    "account", "password", "birthday", "remark",
)


@dataclass
class User:
    id:            str
    name:          str
    email:         str
    account:       str
    role:          Role
    password_hash: Optional[str]
    status:        bool               # False = soft-deleted
    permission:    bool               # login eligibility
    verified:      bool               # OTP completed
    otp:           Optional[int]
    otp_expiry:    Optional[datetime]
    created_at:    datetime
    updated_at:    datetime
    firstname:     Optional[str] = None
    lastname:      Optional[str] = None
    isd_code:      Optional[int] = None
    phone:         Optional[int] = None
    birthday:      Optional[str] = None
    remark:        Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "User":
        return cls(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            account=row["account"],
            role=Role(row["role"]),
            password_hash=row["password"],
            status=bool(row["status"]),
            permission=bool(row["permission"]),
            verified=bool(row["verified"]),
            otp=row["otp"],
            otp_expiry=datetime.fromisoformat(row["otp_expiry"]) if row["otp_expiry"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            firstname=row["firstname"],
            lastname=row["lastname"],
            isd_code=row["isd_code"],
            phone=row["phone"],
            birthday=row["birthday"],
            remark=row["remark"],
        )

    @property
    def can_login(self) -> bool:
        return self.verified and self.permission and self.status

    def public(self) -> dict:
        """JSON view. Never carries the password hash or OTP fields."""
        return {
            "id":         self.id,
            "name":       self.name,
            "firstname":  self.firstname,
            "lastname":   self.lastname,
            "role":       self.role.value,
            "isd_code":   self.isd_code,
            "phone":      self.phone,
            "email":      self.email,
            "account":    self.account,
            "status":     self.status,
            "permission": self.permission,
            "birthday":   self.birthday,
            "verified":   self.verified,
            "remark":     self.remark,
            "createdAt":  self.created_at.isoformat(),
            "updatedAt":  self.updated_at.isoformat(),
        }
