"""
Storefront — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Services never read this at call time. They take what they need
at construction (see the from_config() helpers), so tests can
build them with a fixed secret, a temp database and a fake clock.

Usage:
    from storefront.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.ACCESS_TOKEN_MINUTES)
─────────────────────────────────────────────────────────────────
"""

import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    # ── App ───────────────────────────────────
    ENV:          str   = os.getenv("ENV", "development")   # "production" in prod
    APP_NAME:     str   = "Storefront"
    DB_PATH:      str   = os.getenv("DB_PATH", "storefront.db")
    DB_TIMEOUT:   float = float(os.getenv("DB_TIMEOUT", "5.0"))
    BASE_URL:     str   = os.getenv("BASE_URL", "http://localhost:8000")
    FRONTEND_URL: str   = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # ── Tokens ────────────────────────────────
    JWT_SECRET:           str = os.getenv("JWT_SECRET", "dev-secret-change-in-prod!")
    ALGORITHM:            str = "HS256"
    ACCESS_TOKEN_MINUTES: int = int(os.getenv("ACCESS_TOKEN_MINUTES", "15"))
    REFRESH_TOKEN_DAYS:   int = int(os.getenv("REFRESH_TOKEN_DAYS", "3"))

    # ── Accounts ──────────────────────────────
    OTP_MINUTES:   int = 15
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "10"))

    # ── Mail ──────────────────────────────────
    RESEND_API_KEY: str   = os.getenv("RESEND_API_KEY", "")
    EMAIL_FROM:     str   = os.getenv("EMAIL_FROM", "noreply@storefront.local")
    MAIL_API_URL:   str   = os.getenv("MAIL_API_URL", "https://api.resend.com/emails")
    MAIL_TIMEOUT:   float = float(os.getenv("MAIL_TIMEOUT", "10.0"))

    # ── Google OAuth ──────────────────────────
    GOOGLE_CLIENT_ID:     str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def mail_ready(self) -> bool:
        return bool(self.RESEND_API_KEY)

    @property
    def google_ready(self) -> bool:
        return bool(self.GOOGLE_CLIENT_ID and self.GOOGLE_CLIENT_SECRET)

    @property
    def google_redirect_uri(self) -> str:
        return f"{self.BASE_URL}/auth/google/callback"

    def __repr__(self):
        return (
            f"<Config env={self.ENV} db={self.DB_PATH} "
            f"mail={'✓' if self.mail_ready else '✗'} "
            f"google={'✓' if self.google_ready else '✗'}>"
        )


# Single global instance: import this everywhere
cfg = Config()
