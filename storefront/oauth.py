"""
Storefront — oauth.py
─────────────────────────────────────────────────────────────────
Google sign-in.

  GET /auth/google           → redirect to Google consent screen
  GET /auth/google/callback  → code → Google profile → federated
                               login → user + access/refresh tokens

New Google users are created verified, with the Public role and
no password (AccountService.federated_validate).
─────────────────────────────────────────────────────────────────
"""

import hmac
import logging
import secrets
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from storefront.core.errors import (
    DependencyError,
    DependencyTimeout,
    InvalidCredential,
    ValidationError,
)
from storefront.users import AccountService, FederatedProfile, get_accounts

logger = logging.getLogger("storefront.oauth")

STATE_COOKIE = "storefront_oauth_state"


class GoogleOAuth:
    AUTH_URL     = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL    = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str,
                 timeout: float = 10.0, transport: httpx.AsyncBaseTransport = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> "GoogleOAuth":
        return cls(
            client_id=config.GOOGLE_CLIENT_ID,
            client_secret=config.GOOGLE_CLIENT_SECRET,
            redirect_uri=config.google_redirect_uri,
            timeout=config.MAIL_TIMEOUT,
        )

    @property
    def ready(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorize_url(self, state: str) -> str:
        query = urlencode({
            "client_id":     self.client_id,
            "redirect_uri":  self.redirect_uri,
            "response_type": "code",
            "scope":         "openid email profile",
            "state":         state,
            "access_type":   "offline",
            "prompt":        "select_account",
        })
        return f"{self.AUTH_URL}?{query}"

    async def fetch_profile(self, code: str) -> FederatedProfile:
        """Exchange the auth code and read the user's Google profile."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                token_res = await client.post(
                    self.TOKEN_URL,
                    data={
                        "code":          code,
                        "client_id":     self.client_id,
                        "client_secret": self.client_secret,
                        "redirect_uri":  self.redirect_uri,
                        "grant_type":    "authorization_code",
                    },
                )
                token_data = token_res.json()

                if "error" in token_data:
                    logger.warning(f"Google token exchange refused: {token_data.get('error')}")
                    raise InvalidCredential(
                        f"Google error: {token_data.get('error_description', 'OAuth failed')}"
                    )

                userinfo_res = await client.get(
                    self.USERINFO_URL,
                    headers={"Authorization": f"Bearer {token_data['access_token']}"},
                )
                userinfo = userinfo_res.json()
        except httpx.TimeoutException as e:
            logger.error(f"Google OAuth timed out: {e}")
            raise DependencyTimeout("Google OAuth timed out")
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error(f"Google OAuth failed: {e}")
            raise DependencyError("Google OAuth unavailable")

        email = (userinfo.get("email") or "").lower()
        if not email:
            raise ValidationError("Could not retrieve email from Google")

        return FederatedProfile(
            email=email,
            name=userinfo.get("name") or email,
            subject=str(userinfo.get("id") or ""),
            firstname=userinfo.get("given_name"),
            lastname=userinfo.get("family_name"),
        )


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────
router = APIRouter(prefix="/auth", tags=["auth"])


def get_google(request: Request) -> GoogleOAuth:
    return request.app.state.google


@router.get("/google")
async def google_auth_init(request: Request, google: GoogleOAuth = Depends(get_google)):
    if not google.ready:
        frontend = request.app.state.config.FRONTEND_URL
        return RedirectResponse(url=f"{frontend}?auth_error=google_not_configured")

    state = secrets.token_urlsafe(16)
    resp = RedirectResponse(url=google.authorize_url(state))
    resp.set_cookie(
        key      = STATE_COOKIE,
        value    = state,
        httponly = True,
        secure   = request.app.state.config.is_production,
        samesite = "lax",
        max_age  = 600,
    )
    return resp


@router.get("/google/callback")
async def google_auth_callback(
    code: str,
    state: str,
    request: Request,
    google: GoogleOAuth = Depends(get_google),
    accounts: AccountService = Depends(get_accounts),
):
    if not google.ready:
        raise DependencyError("Google OAuth not configured")

    expected = request.cookies.get(STATE_COOKIE, "")
    if not expected or not hmac.compare_digest(expected, state):
        logger.warning("Google callback with mismatched state")
        raise InvalidCredential("OAuth state mismatch")

    profile = await google.fetch_profile(code)
    return await accounts.federated_login(profile)
