"""
Storefront — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn storefront.main:app --reload --port 8000

File map:
    users.py  → /users/*          (register, OTP, login, refresh, profile)
    oauth.py  → /auth/google/*    (federated sign-in)
    cart.py   → /shopping_cart/*  (cart consolidation)
    catalog.py → service only     (product lookup for the cart)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront import cart, oauth, users
from storefront.catalog import ProductCatalog
from storefront.core.config import Config, cfg
from storefront.core.database import init_all_tables
from storefront.core.errors import InternalError, StorefrontError, Unauthorized, ValidationError
from storefront.core.mailer import Mailer
from storefront.core.security import PasswordHasher, TokenIssuer
from storefront.otp import OtpManager

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.main")


def _error_response(exc: StorefrontError) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
    return JSONResponse(
        {"error": exc.code, "detail": exc.detail},
        status_code=exc.status_code,
        headers=headers,
    )


def create_app(
    config: Config = cfg,
    mailer: Mailer = None,
    otp: OtpManager = None,
    google: oauth.GoogleOAuth = None,
) -> FastAPI:
    """
    Build the app with its services on app.state.
    Tests pass their own config (temp DB, fixed secret), a fake mailer
    and a deterministic OTP manager.
    """

    # ─────────────────────────────────────────
    # Startup / Shutdown
    # ─────────────────────────────────────────
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"🚀 {config.APP_NAME} starting [{config.ENV}] {config!r}")
        await init_all_tables(config.DB_PATH, config.DB_TIMEOUT)
        logger.info(f"✅ All tables initialized. {config.APP_NAME} is live.")
        yield
        logger.info(f"{config.APP_NAME} shutting down.")

    app = FastAPI(
        title     = f"{config.APP_NAME} API",
        description = "Accounts, OTP verification, JWT sessions and shopping carts",
        version   = "1.0.0",
        docs_url  = "/docs"  if not config.is_production else None,  # hide in prod
        redoc_url = "/redoc" if not config.is_production else None,
        lifespan  = lifespan,
    )

    # ── Services ──────────────────────────────
    tokens = TokenIssuer.from_config(config)
    catalog = ProductCatalog(config.DB_PATH, config.DB_TIMEOUT)

    app.state.config = config
    app.state.tokens = tokens
    app.state.accounts = users.AccountService(
        store=users.UserStore(config.DB_PATH, config.DB_TIMEOUT),
        hasher=PasswordHasher.from_config(config),
        tokens=tokens,
        otp=otp or OtpManager.from_config(config),
        mailer=mailer or Mailer.from_config(config),
    )
    app.state.carts = cart.CartService(config.DB_PATH, catalog, config.DB_TIMEOUT)
    app.state.catalog = catalog
    app.state.google = google or oauth.GoogleOAuth.from_config(config)

    # ── CORS ──────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = [config.FRONTEND_URL, config.BASE_URL],
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    # ── Routers ───────────────────────────────
    app.include_router(users.router)
    app.include_router(oauth.router)
    app.include_router(cart.router)

    # ── Errors → HTTP ─────────────────────────
    @app.exception_handler(StorefrontError)
    async def storefront_error(request: Request, exc: StorefrontError):
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        return _error_response(ValidationError(f"{where}: {first.get('msg', 'invalid')}"))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return _error_response(InternalError(str(exc)))

    # ── Health ────────────────────────────────
    @app.get("/health", tags=["system"])
    async def health():
        """Quick ping for the load balancer and uptime monitor."""
        return {
            "status": "ok",
            "app":    config.APP_NAME,
            "env":    config.ENV,
            "mail":   config.mail_ready,
            "google": config.google_ready,
        }

    return app


app = create_app()


# ─────────────────────────────────────────────
# Run directly
# ─────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000, reload=True)
