"""
HTTP surface of the login bot.
GET /authorize serves the login page or redirects with a code; the login page drives
/requestQr, /requestQrSvg and /checkStatus; the relying party calls POST /token.
The browser session is an opaque handle in a cookie; everything behind it is server-side.
"""
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse

from login_bot.audit import EVENT_AUTHORIZE_REJECTED, OUTCOME_FAIL, get_client_ip, log_audit
from login_bot.client_auth import authorize_request_allowed, parse_basic
from login_bot.code_issuer import CodeIssuer
from login_bot.config import SESSION_COOKIE_NAME, Settings
from login_bot.errors import NotReady, RateLimited, SessionExpired
from login_bot.keys import SigningKey
from login_bot.orchestrator import PollResult, VerificationOrchestrator
from login_bot.rate_limit import RateLimiter
from login_bot.sessions import Session, SessionStore, handle_prefix
from login_bot.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)
router = APIRouter()


@dataclass
class Services:
    settings: Settings
    sessions: SessionStore
    orchestrator: VerificationOrchestrator
    issuer: CodeIssuer
    exchanger: TokenExchanger
    signing_key: SigningKey
    token_rate_limiter: RateLimiter
    login_html: str


def get_services(request: Request) -> Services:
    """Dependency: services built by create_app."""
    return request.app.state.services


def _current_session(services: Services, handle: str | None) -> Session | None:
    """Session for the cookie handle; None when absent, unknown or expired."""
    if not handle:
        return None
    try:
        return services.sessions.get(handle)
    except SessionExpired:
        return None


def _set_session_cookie(response: Response, handle: str, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE_NAME,
        handle,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )


def _ensure_session(request: Request, response: Response, services: Services) -> str:
    handle = request.cookies.get(SESSION_COOKIE_NAME)
    if _current_session(services, handle) is None:
        handle = services.sessions.create()
        _set_session_cookie(response, handle, services.settings)
    return handle


def _invalid_request(message: str) -> HTMLResponse:
    return HTMLResponse(f"<h1>Invalid request</h1><p>{message}</p>", status_code=400)


@router.get("/authorize", response_class=HTMLResponse)
def authorize(
    request: Request,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    state: str | None = None,
    services: Services = Depends(get_services),
):
    """
    OAuth2 authorization endpoint.
    Verified session: redirect to redirect_uri?state=...&code=...; otherwise show the login page.
    """
    if not client_id or not redirect_uri or state is None:
        return _invalid_request("client_id, redirect_uri, and state are required.")
    if not authorize_request_allowed(services.settings, client_id, redirect_uri):
        log_audit(
            EVENT_AUTHORIZE_REJECTED,
            client_id=client_id,
            ip=get_client_ip(request),
            outcome=OUTCOME_FAIL,
        )
        return _invalid_request("Unknown client_id or redirect_uri not allowed.")

    handle = request.cookies.get(SESSION_COOKIE_NAME)
    session = _current_session(services, handle)
    if session is not None and session.is_verified:
        try:
            code = services.issuer.issue_code(handle, client_id=client_id)
        except SessionExpired:
            session = None
        else:
            separator = "&" if "?" in redirect_uri else "?"
            params = {"state": state, "code": code}
            logger.info("/authorize session %s redirected", handle_prefix(handle))
            return RedirectResponse(url=f"{redirect_uri}{separator}{urlencode(params)}", status_code=302)

    response = HTMLResponse(services.login_html)
    if session is None:
        handle = services.sessions.create()
        _set_session_cookie(response, handle, services.settings)
    logger.info("/authorize showing login screen")
    return response


@router.get("/requestQr")
@router.get("/requestVerification")
def request_qr(request: Request, response: Response, services: Services = Depends(get_services)):
    """Create (or reuse) the session's verification group and return its invite link."""
    handle = _ensure_session(request, response, services)
    artifact = services.orchestrator.start_verification(handle)
    return {"link": artifact.link}


@router.head("/requestQrSvg")
def request_qr_svg_check(request: Request, services: Services = Depends(get_services)):
    """Cheap readiness check: 200 once the session has a group."""
    handle = request.cookies.get(SESSION_COOKIE_NAME)
    try:
        ready = bool(handle) and services.orchestrator.has_channel(handle)
    except SessionExpired:
        ready = False
    return Response(status_code=200 if ready else 400)


@router.get("/requestQrSvg")
def request_qr_svg(request: Request, services: Services = Depends(get_services)):
    """QR code (SVG) for joining the session's group. Call /requestQr first."""
    handle = request.cookies.get(SESSION_COOKIE_NAME)
    if not handle:
        raise NotReady("no session cookie")
    artifact = services.orchestrator.get_invite_artifact(handle)
    return Response(content=artifact.svg, media_type="image/svg+xml")


@router.get("/checkStatus")
def check_status(request: Request, services: Services = Depends(get_services)):
    """Polled by the login page until the user has joined the group."""
    handle = request.cookies.get(SESSION_COOKIE_NAME)
    if not handle:
        raise NotReady("no session cookie")
    result = services.orchestrator.poll_membership(handle)
    if result is PollResult.SUCCESS:
        return {"success": True}
    return {"waiting": True}


@router.post("/token")
def token(
    request: Request,
    code: str | None = Form(None),
    services: Services = Depends(get_services),
):
    """
    Exchange an authorization code for an identity assertion.
    Client authenticates with HTTP Basic; code comes from the query string or the form body.
    """
    ip = get_client_ip(request)
    allowed, retry_after = services.token_rate_limiter.check_and_consume(f"token:{ip}")
    if not allowed:
        logger.warning("/token rate limited for ip=%s", ip)
        raise RateLimited(retry_after)

    credentials = parse_basic(request.headers.get("Authorization"))
    client_id, client_secret = credentials if credentials else (None, None)
    code = request.query_params.get("code") or code
    assertion = services.exchanger.exchange(client_id, client_secret, code, ip=ip)
    return assertion.to_response()


@router.post("/webhook")
def webhook():
    """Liveness stub for platform callbacks."""
    return Response(status_code=200)


@router.get("/.well-known/jwks.json")
def jwks_json(services: Services = Depends(get_services)):
    """JSON Web Key Set for verifying the access_token signature."""
    return services.signing_key.jwks()
