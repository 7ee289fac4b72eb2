"""HTTP endpoints for the identity bridge.

Routes:
- POST /functions/v1/{provider}-auth   code exchange (LINE, Google, Apple)
- GET  /functions/v1/{provider}-auth   secret presence diagnostic
- POST /auth/apple/callback            Apple form_post relay to the front end
- GET  /health

Run with ``python -m bizcard_auth`` or ``uvicorn bizcard_auth.server:app``.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError

from bizcard_auth.config import Settings, load_settings
from bizcard_auth.exchange import (
    ConfigurationError,
    ExchangeError,
    ExchangeService,
    RequestError,
)
from bizcard_auth.identity_store import close_db, init_db
from bizcard_auth.models import ErrorBody, ExchangeRequest, ExchangeResponse
from bizcard_auth.providers import (
    ProviderDescriptor,
    UnknownProviderError,
    get_provider,
)

logger = logging.getLogger(__name__)

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


class ApiKeyError(ExchangeError):
    status_code = 401


# -----------------------------
# Dependencies
# -----------------------------

def get_settings(request: Request) -> Settings:
    """App-pinned settings if given to create_app, else fresh from the env."""
    pinned = request.app.state.settings
    return pinned if pinned is not None else load_settings()


def require_api_key(
    settings: Settings = Depends(get_settings),
    apikey: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    """Gateway check: the public key in ``apikey`` or as the Bearer value.

    Skipped when no public key is configured.
    """
    expected = settings.public_api_key
    if not expected:
        return

    candidates = [apikey or ""]
    if authorization and authorization.lower().startswith("bearer "):
        candidates.append(authorization[7:].strip())

    for candidate in candidates:
        if candidate and hmac.compare_digest(candidate.encode(), expected.encode()):
            return
    raise ApiKeyError("INVALID_API_KEY")


def get_exchange_service(settings: Settings = Depends(get_settings)) -> ExchangeService:
    return ExchangeService(settings)


def resolve_provider(provider: str) -> ProviderDescriptor:
    try:
        return get_provider(provider)
    except UnknownProviderError:
        raise ExchangeError("UNKNOWN_PROVIDER", provider, status_code=404) from None


def diagnostic_body(settings: Settings, provider: ProviderDescriptor) -> dict[str, Any]:
    return {"ok": True, "build": settings.build_id, **settings.presence(provider.name)}


# -----------------------------
# App
# -----------------------------

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app.

    Args:
        settings: Pin settings for the app's lifetime. When omitted, every
            request reads the environment again.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        startup = settings if settings is not None else load_settings()
        await init_db(startup.database_url, startup.identity_table)
        yield
        await close_db()

    app = FastAPI(title="bizcard-auth", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
    )

    def build_id() -> str:
        pinned = app.state.settings
        return (pinned if pinned is not None else load_settings()).build_id

    @app.middleware("http")
    async def add_build_header(request: Request, call_next):
        response = await call_next(request)
        response.headers["x-build"] = build_id()
        return response

    @app.exception_handler(ExchangeError)
    async def exchange_error_handler(request: Request, exc: ExchangeError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.error)
        else:
            logger.info("%s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.error)
        body = ErrorBody(error=exc.error, detail=exc.detail, status=exc.status_code, build=build_id())
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))

    @app.get("/health")
    async def health():
        return {"status": "ok", "build": build_id()}

    @app.get("/functions/v1/{provider}-auth", dependencies=[Depends(require_api_key)])
    async def exchange_diagnostic(
        provider: str,
        settings: Settings = Depends(get_settings),
    ):
        return diagnostic_body(settings, resolve_provider(provider))

    @app.post(
        "/functions/v1/{provider}-auth",
        response_model=ExchangeResponse,
        response_model_exclude_none=True,
        dependencies=[Depends(require_api_key)],
    )
    async def exchange_code(
        provider: str,
        request: Request,
        background_tasks: BackgroundTasks,
        settings: Settings = Depends(get_settings),
        service: ExchangeService = Depends(get_exchange_service),
    ):
        descriptor = resolve_provider(provider)
        service.check_configuration(descriptor)

        try:
            body = await request.json()
        except (ValueError, UnicodeDecodeError):
            raise RequestError("INVALID_JSON") from None
        if not isinstance(body, dict):
            raise RequestError("INVALID_JSON")

        if body.get("action") == "diag":
            return JSONResponse(diagnostic_body(settings, descriptor))

        try:
            exchange_request = ExchangeRequest.model_validate(body)
        except ValidationError as e:
            raise RequestError("INVALID_JSON", e.errors(include_url=False, include_context=False)) from None

        return await service.exchange(descriptor, exchange_request, schedule=background_tasks.add_task)

    @app.post("/auth/apple/callback")
    async def apple_form_post(
        request: Request,
        settings: Settings = Depends(get_settings),
    ):
        """Relay Apple's form_post to the front-end callback page.

        Apple posts ``code``, ``state``, ``id_token`` and (first time only)
        ``user`` as a form. The browser page can't read a POST body, so the
        values move into the query string of a 303.
        """
        target = settings.apple_frontend_callback_url
        if not target:
            raise ConfigurationError("MISSING_APPLE_CALLBACK_URL")

        form = await request.form()
        params = {}
        for key in ("code", "state", "id_token", "user", "error"):
            value = form.get(key)
            if isinstance(value, str) and value:
                params[key] = value

        if "user" in params:
            try:
                json.loads(params["user"])
            except ValueError:
                logger.warning("Dropping unparseable Apple user payload")
                del params["user"]

        separator = "&" if "?" in target else "?"
        return RedirectResponse(f"{target}{separator}{urlencode(params)}", status_code=303)

    return app


app = create_app()
