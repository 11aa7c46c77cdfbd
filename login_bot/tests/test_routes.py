"""
End-to-end tests over HTTP: /authorize, /requestQr, /requestQrSvg, /checkStatus, /token, /webhook.
"""
import logging
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from login_bot.config import SESSION_COOKIE_NAME
from login_bot.main import create_app

from conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI

AUTH = (CLIENT_ID, CLIENT_SECRET)


def _authorize(client, **overrides):
    params = {"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "state": "xyz"}
    params.update(overrides)
    return client.get("/authorize", params=params, follow_redirects=False)


def _verified_code(client, platform, contact_id=42):
    """Run the browser side of the flow and return the code from the redirect."""
    platform.add_contact(contact_id, "Alice", "alice@example.org")
    assert _authorize(client).status_code == 200
    client.get("/requestQr")
    platform.join(platform.only_channel(), contact_id)
    assert client.get("/checkStatus").json() == {"success": True}
    response = _authorize(client)
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["code"][0]


# --- /authorize ---


@pytest.mark.parametrize("missing", ["client_id", "redirect_uri", "state"])
def test_authorize_missing_params(client, missing):
    params = {"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "state": "xyz"}
    del params[missing]
    response = client.get("/authorize", params=params)
    assert response.status_code == 400


def test_authorize_unknown_client(client):
    assert _authorize(client, client_id="evil").status_code == 400


def test_authorize_redirect_uri_mismatch(client):
    assert _authorize(client, redirect_uri="http://evil.example/callback").status_code == 400


def test_authorize_serves_login_page_and_sets_session_cookie(client, services):
    response = _authorize(client)
    assert response.status_code == 200
    assert "Log in with Delta Chat" in response.text
    assert "/checkStatus" in response.text
    handle = response.cookies.get(SESSION_COOKIE_NAME)
    assert handle
    cookie_header = response.headers["set-cookie"].lower()
    assert "httponly" in cookie_header
    assert services.sessions.get(handle) is not None


def test_authorize_reuses_existing_session(client):
    first = _authorize(client).cookies.get(SESSION_COOKIE_NAME)
    second = _authorize(client)
    assert second.status_code == 200
    assert SESSION_COOKIE_NAME not in second.cookies or second.cookies.get(SESSION_COOKIE_NAME) == first


# --- /requestQr and /requestQrSvg ---


def test_request_qr_returns_link_and_creates_one_channel(client, platform):
    first = client.get("/requestQr")
    assert first.status_code == 200
    assert "link" in first.json()
    second = client.get("/requestQr")
    assert second.json() == first.json()
    assert len(platform.channels) == 1


def test_request_verification_alias(client, platform):
    response = client.get("/requestVerification")
    assert response.status_code == 200
    assert response.json()["link"]
    assert len(platform.channels) == 1


def test_request_qr_svg_before_channel(client):
    assert client.head("/requestQrSvg").status_code == 400
    assert client.get("/requestQrSvg").status_code == 400
    _authorize(client)
    assert client.head("/requestQrSvg").status_code == 400
    assert client.get("/requestQrSvg").status_code == 400


def test_request_qr_svg_after_channel(client):
    client.get("/requestQr")
    assert client.head("/requestQrSvg").status_code == 200
    response = client.get("/requestQrSvg")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("image/svg+xml")
    assert response.text.startswith("<svg")


# --- /checkStatus ---


def test_check_status_without_session(client):
    response = client.get("/checkStatus")
    assert response.status_code == 400
    assert response.json()["error"] == "not_ready"


def test_check_status_before_request_qr(client):
    _authorize(client)
    assert client.get("/checkStatus").status_code == 400


def test_check_status_expired_session(client, services):
    client.get("/requestQr")
    handle = client.cookies.get(SESSION_COOKIE_NAME)
    services.sessions._records[handle].session.created_at -= services.settings.session_ttl_seconds + 1
    response = client.get("/checkStatus")
    assert response.status_code == 401
    assert response.json()["error"] == "session_expired"


def test_scenario_a_waiting(client):
    """Fresh session, channel created, only the bot is a member."""
    _authorize(client)
    client.get("/requestQr")
    response = client.get("/checkStatus")
    assert response.status_code == 200
    assert response.json() == {"waiting": True}


def test_scenario_b_success_then_authorize_redirects_with_code(client, platform):
    _authorize(client)
    client.get("/requestQr")
    assert client.get("/checkStatus").json() == {"waiting": True}
    platform.join(platform.only_channel(), 42)
    assert client.get("/checkStatus").json() == {"success": True}
    assert client.get("/checkStatus").json() == {"success": True}

    response = _authorize(client, state="my-state")
    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == REDIRECT_URI
    query = parse_qs(location.query)
    assert query["state"] == ["my-state"]
    assert len(query["code"][0]) == 32


def test_authorize_retry_returns_same_code(client, platform):
    code = _verified_code(client, platform)
    again = _authorize(client)
    assert parse_qs(urlparse(again.headers["location"]).query)["code"] == [code]


def test_scenario_c_and_d_token_exchange_once(client, platform):
    code = _verified_code(client, platform)
    response = client.post("/token", data={"code": code}, auth=AUTH)
    assert response.status_code == 200
    data = response.json()
    assert data["access_token"]
    assert data["token_type"] == "bearer"
    assert "expires_in" in data
    assert data["info"] == {"username": "Alice", "email": "alice@example.org"}

    replay = client.post("/token", data={"code": code}, auth=AUTH)
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_grant"


def test_token_code_in_query_string(client, platform):
    code = _verified_code(client, platform)
    response = client.post("/token", params={"code": code}, auth=AUTH)
    assert response.status_code == 200
    assert response.json()["info"]["email"] == "alice@example.org"


def test_authorize_after_redemption_starts_new_login(client, platform):
    code = _verified_code(client, platform)
    old_handle = client.cookies.get(SESSION_COOKIE_NAME)
    assert client.post("/token", data={"code": code}, auth=AUTH).status_code == 200
    response = _authorize(client)
    assert response.status_code == 200
    assert "Log in with Delta Chat" in response.text
    assert response.cookies.get(SESSION_COOKIE_NAME) not in (None, old_handle)


def test_scenario_e_three_members_is_server_error(client, platform, services, caplog):
    _authorize(client)
    client.get("/requestQr")
    channel = platform.only_channel()
    platform.join(channel, 42)
    platform.join(channel, 43)
    caplog.set_level(logging.ERROR)
    response = client.get("/checkStatus")
    assert response.status_code == 500
    assert response.json()["error"] == "server_error"
    assert str(channel) not in response.text
    assert any(r.levelno == logging.ERROR and str(channel) in r.getMessage() for r in caplog.records)
    handle = client.cookies.get(SESSION_COOKIE_NAME)
    assert services.sessions.get(handle).is_verified is False
    assert _authorize(client).status_code == 200


# --- /token failures ---


def test_token_without_auth_header(client, platform):
    code = _verified_code(client, platform)
    response = client.post("/token", data={"code": code})
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_client"
    assert response.headers["www-authenticate"].startswith("Basic")


def test_token_wrong_secret_does_not_consume_code(client, platform):
    code = _verified_code(client, platform)
    bad = client.post("/token", data={"code": code}, auth=(CLIENT_ID, "wrong"))
    assert bad.status_code == 401
    good = client.post("/token", data={"code": code}, auth=AUTH)
    assert good.status_code == 200


def test_token_missing_code(client):
    response = client.post("/token", auth=AUTH)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_grant"


def test_token_unknown_code(client):
    response = client.post("/token", data={"code": "0" * 32}, auth=AUTH)
    assert response.status_code == 400


def test_token_rate_limited(settings, platform, engine, signing_key):
    from dataclasses import replace

    app = create_app(
        replace(settings, rate_limit_token_per_minute=2),
        platform=platform,
        engine=engine,
        signing_key=signing_key,
    )
    client = TestClient(app)
    assert client.post("/token", data={"code": "x"}, auth=AUTH).status_code == 400
    assert client.post("/token", data={"code": "x"}, auth=AUTH).status_code == 400
    limited = client.post("/token", data={"code": "x"}, auth=AUTH)
    assert limited.status_code == 429
    assert int(limited.headers["retry-after"]) >= 1


# --- misc ---


def test_webhook(client):
    response = client.post("/webhook")
    assert response.status_code == 200
    assert response.content == b""


def test_health(client):
    assert client.get("/health").json() == {"status": "ok", "service": "login_bot"}


def test_jwks(client, signing_key):
    keys = client.get("/.well-known/jwks.json").json()["keys"]
    assert len(keys) == 1
    assert keys[0]["kid"] == signing_key.kid
    assert keys[0]["kty"] == "RSA"


def test_static_login_page_served(client):
    response = client.get("/login.html")
    assert response.status_code == 200
    assert "requestQr" in response.text


def test_request_logging_middleware(settings, platform, engine, signing_key, caplog):
    from dataclasses import replace

    app = create_app(
        replace(settings, enable_request_logging=True),
        platform=platform,
        engine=engine,
        signing_key=signing_key,
    )
    caplog.set_level(logging.INFO, logger="login_bot.requests")
    TestClient(app).get("/health")
    assert any("GET /health -> 200" in r.getMessage() for r in caplog.records)
