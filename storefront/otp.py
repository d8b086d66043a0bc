"""
Storefront — otp.py
─────────────────────────────────────────────────────────────────
One-time password challenge for email verification.

  issue()   → 6-digit code in [100000, 999999], expiry = now + 15m
  check()   → exact numeric match AND not past expiry

There is no attempt counter: a caller may retry until the code
expires.
─────────────────────────────────────────────────────────────────
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

OTP_MIN = 100000
OTP_MAX = 999999


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _random_code() -> int:
    return OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1)


@dataclass
class OtpChallenge:
    code:       int
    expires_at: datetime


class OtpManager:

    def __init__(
        self,
        ttl_minutes: int = 15,
        clock: Callable[[], datetime] = _utcnow,
        generator: Callable[[], int] = _random_code,
    ):
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock
        self._generator = generator

    @classmethod
    def from_config(cls, config, **kwargs) -> "OtpManager":
        return cls(ttl_minutes=config.OTP_MINUTES, **kwargs)

    def now(self) -> datetime:
        return self._clock()

    def issue(self, issued_at: Optional[datetime] = None) -> OtpChallenge:
        issued_at = issued_at or self._clock()
        code = self._generator()
        if not OTP_MIN <= code <= OTP_MAX:
            raise ValueError(f"OTP generator produced out-of-range code {code}")
        return OtpChallenge(code=code, expires_at=issued_at + self.ttl)

    def check(self, stored_code: Optional[int], expires_at: Optional[datetime],
              submitted: Union[int, str]) -> bool:
        if stored_code is None or expires_at is None:
            return False
        if self._parse(submitted) != int(stored_code):
            return False
        return self._clock() <= expires_at

    @staticmethod
    def _parse(submitted: Union[int, str]) -> Optional[int]:
        """Submitted code as an int, or None if it cannot be one."""
        if isinstance(submitted, bool):
            return None
        if isinstance(submitted, int):
            return submitted
        text = str(submitted).strip()
        if not (text.isascii() and text.isdigit()):
            return None
        text = text.lstrip("0") or "0"
        # int() refuses very long digit strings, so bound the length first
        if len(text) > len(str(OTP_MAX)):
            return None
        return int(text)

    def email(self, challenge: OtpChallenge):
        """(subject, body) for the verification email."""
        minutes = int(self.ttl.total_seconds() // 60)
        return (
            "Your OTP Code",
            f"Your OTP code is {challenge.code}. It is valid for {minutes} minutes.",
        )
