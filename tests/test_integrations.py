"""
Mail transport and Google OAuth against httpx.MockTransport.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import TEST_OTP, run
from storefront.core.errors import DependencyError, DependencyTimeout, InvalidCredential, ValidationError
from storefront.core.mailer import Mailer
from storefront.main import create_app
from storefront.oauth import STATE_COOKIE, GoogleOAuth
from storefront.otp import OtpManager

MAIL_URL = "https://mail.example.com/emails"


def _mailer(handler, api_key="re_test"):
    return Mailer(api_key, "noreply@example.com", MAIL_URL, transport=httpx.MockTransport(handler))


class TestMailer:

    def test_posts_message(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"id": "msg_1"})

        run(_mailer(handler).send("alice@example.com", "Your OTP Code", "Your OTP code is 1."))

        request = captured[0]
        assert str(request.url) == MAIL_URL
        assert request.headers["Authorization"] == "Bearer re_test"
        assert json.loads(request.content) == {
            "from":    "noreply@example.com",
            "to":      ["alice@example.com"],
            "subject": "Your OTP Code",
            "text":    "Your OTP code is 1.",
        }

    def test_rejected_message(self):
        mailer = _mailer(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(DependencyError) as exc:
            run(mailer.send("alice@example.com", "s", "b"))
        assert not isinstance(exc.value, DependencyTimeout)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(DependencyTimeout):
            run(_mailer(handler).send("alice@example.com", "s", "b"))

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DependencyError):
            run(_mailer(handler).send("alice@example.com", "s", "b"))

    def test_without_api_key_nothing_is_sent(self):
        captured = []
        mailer = _mailer(lambda request: captured.append(request), api_key="")
        run(mailer.send("alice@example.com", "s", "b"))
        assert captured == []


def _google_handler(token_body=None, profile=None):
    def handler(request):
        if str(request.url).startswith(GoogleOAuth.TOKEN_URL):
            return httpx.Response(200, json=token_body or {"access_token": "ya29.test"})
        if str(request.url).startswith(GoogleOAuth.USERINFO_URL):
            assert request.headers["Authorization"] == "Bearer ya29.test"
            return httpx.Response(200, json=profile or {
                "id": "1077", "email": "Gina@Example.com", "name": "Gina G",
                "given_name": "Gina", "family_name": "G",
            })
        return httpx.Response(404)

    return handler


def _google(handler):
    return GoogleOAuth("client-id", "client-secret", "http://testserver/auth/google/callback",
                       transport=httpx.MockTransport(handler))


class TestGoogleOAuth:

    def test_authorize_url(self):
        url = _google(_google_handler()).authorize_url("abc")
        assert url.startswith(GoogleOAuth.AUTH_URL)
        assert "state=abc" in url
        assert "client_id=client-id" in url

    def test_fetch_profile(self):
        profile = run(_google(_google_handler()).fetch_profile("code-1"))

        assert profile.email == "gina@example.com"
        assert profile.name == "Gina G"
        assert profile.subject == "1077"
        assert (profile.firstname, profile.lastname) == ("Gina", "G")

    def test_refused_code(self):
        handler = _google_handler(token_body={"error": "invalid_grant", "error_description": "Bad code"})
        with pytest.raises(InvalidCredential):
            run(_google(handler).fetch_profile("bad"))

    def test_profile_without_email(self):
        handler = _google_handler(profile={"id": "1077", "name": "No Mail"})
        with pytest.raises(ValidationError):
            run(_google(handler).fetch_profile("code-1"))

    def test_google_down(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DependencyError):
            run(_google(handler).fetch_profile("code-1"))


class TestGoogleRoutes:

    @pytest.fixture
    def client(self, config, mailer):
        app = create_app(config, mailer=mailer, otp=OtpManager(generator=lambda: TEST_OTP),
                         google=_google(_google_handler()))
        with TestClient(app) as client:
            yield client

    def test_init_redirects_with_state_cookie(self, client):
        res = client.get("/auth/google", follow_redirects=False)

        assert res.status_code == 307
        assert res.headers["location"].startswith(GoogleOAuth.AUTH_URL)
        assert client.cookies.get(STATE_COOKIE)

    def test_callback_signs_in_public_user(self, client):
        client.get("/auth/google", follow_redirects=False)
        state = client.cookies.get(STATE_COOKIE)

        res = client.get("/auth/google/callback", params={"code": "code-1", "state": state})

        assert res.status_code == 200
        assert res.json()["user"]["email"] == "gina@example.com"
        assert res.json()["user"]["role"] == "Public"
        assert res.json()["access_token"]

    def test_callback_state_mismatch(self, client):
        client.get("/auth/google", follow_redirects=False)
        res = client.get("/auth/google/callback", params={"code": "code-1", "state": "forged"})
        assert res.status_code == 401

    def test_not_configured(self, config, mailer):
        app = create_app(config, mailer=mailer)
        with TestClient(app) as client:
            res = client.get("/auth/google", follow_redirects=False)
        assert res.status_code == 307
        assert "auth_error=google_not_configured" in res.headers["location"]
