"""
Login bot: OAuth2 authorization server backed by Delta Chat securejoin.
A relying party (e.g. Discourse) sends users to /authorize; they scan a QR code to join a
protected group, and the relying party exchanges the resulting code at /token for name and e-mail.
"""
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine

from login_bot.code_issuer import CodeIssuer
from login_bot.code_store import CodeStore
from login_bot.config import Settings, load_settings
from login_bot.database import init_db, make_engine, make_session_factory
from login_bot.errors import ClientMismatch, LoginBotError, RateLimited
from login_bot.keys import SigningKey
from login_bot.orchestrator import VerificationOrchestrator
from login_bot.platform import VerificationPlatform
from login_bot.rate_limit import RateLimiter
from login_bot.routes import Services, router
from login_bot.sessions import SessionStore
from login_bot.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)


def _load_login_html(static_dir: str) -> str:
    return (Path(static_dir) / "login.html").read_text(encoding="utf-8")


def build_services(
    settings: Settings,
    platform: VerificationPlatform,
    engine: Engine,
    signing_key: SigningKey,
) -> Services:
    sessions = SessionStore(settings.session_ttl_seconds)
    code_store = CodeStore(make_session_factory(engine), settings.code_ttl_seconds)
    return Services(
        settings=settings,
        sessions=sessions,
        orchestrator=VerificationOrchestrator(
            sessions,
            platform,
            send_disposal_notice=settings.send_disposal_notice,
            disposal_notice=settings.disposal_notice,
        ),
        issuer=CodeIssuer(sessions, code_store),
        exchanger=TokenExchanger(settings, code_store, platform, signing_key),
        signing_key=signing_key,
        token_rate_limiter=RateLimiter(settings.rate_limit_token_per_minute),
        login_html=_load_login_html(settings.static_dir),
    )


async def login_bot_error_handler(request: Request, exc: LoginBotError) -> JSONResponse:
    """Generic error body for callers; details were logged where the error was raised."""
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, ClientMismatch):
        headers["WWW-Authenticate"] = 'Basic realm="login_bot"'
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, type(exc).__name__)
    return JSONResponse(
        {"error": exc.error, "error_description": exc.description},
        status_code=exc.status_code,
        headers=headers,
    )


def create_app(
    settings: Settings | None = None,
    platform: VerificationPlatform | None = None,
    engine: Engine | None = None,
    signing_key: SigningKey | None = None,
) -> FastAPI:
    """
    Build the application. Anything not passed in is created from settings; a Delta Chat
    platform created here is started and stopped with the app lifespan.
    """
    settings = settings or load_settings()
    owned_platform = None
    if platform is None:
        from login_bot.deltachat_platform import DeltaChatPlatform

        platform = owned_platform = DeltaChatPlatform(settings)
    engine = engine or make_engine(settings.database_url)
    signing_key = signing_key or SigningKey.from_path(settings.signing_key_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create code store tables and connect the bot account on startup."""
        init_db(engine)
        if owned_platform is not None:
            owned_platform.start()
        try:
            yield
        finally:
            if owned_platform is not None:
                owned_platform.close()

    app = FastAPI(title="Login Bot", version="0.2.0", lifespan=lifespan)
    app.state.services = build_services(settings, platform, engine, signing_key)
    app.add_exception_handler(LoginBotError, login_bot_error_handler)

    if settings.enable_request_logging:
        request_logger = logging.getLogger("login_bot.requests")

        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.monotonic()
            response = await call_next(request)
            request_logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                (time.monotonic() - started) * 1000,
            )
            return response

    app.include_router(router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "login_bot"}

    # Static files last: the mount at / would otherwise shadow the API routes
    app.mount("/", StaticFiles(directory=settings.static_dir), name="static")
    return app


def run() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    import uvicorn

    logger.info("Serving static files from %s", settings.static_dir)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        access_log=settings.enable_request_logging,
    )


if __name__ == "__main__":
    run()
