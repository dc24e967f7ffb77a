from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx
from fastapi import BackgroundTasks, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from dashboard.models import (
    SaveProjectsRequest,
    ScanAllResponse,
    ScanRequest,
    ScanTriggerResult,
    UserRequest,
)
from dashboard.monitoring import router as monitoring_router
from rlsguard.aggregator import insights_text
from rlsguard.classifier import RiskClassifier
from rlsguard.config import AppSettings
from rlsguard.engine import scan_stored_project
from rlsguard.errors import (
    AuthorizationError,
    ConfigurationError,
    IntegrationNotFoundError,
    InvalidInputError,
    ManagementApiError,
    ReauthorizationRequired,
    RlsGuardError,
    TokenExchangeError,
    TokenRefreshError,
)
from rlsguard.main import Components, build_components, run_projects_concurrently
from rlsguard.oauth import (
    SESSION_CREATED_KEY,
    SESSION_STATE_KEY,
    SESSION_TTL_SECONDS,
    SESSION_VERIFIER_KEY,
    begin_authorization,
    complete_authorization,
)
from rlsguard.storage import get_project, init_db, list_pending_projects, list_projects, save_projects

logger = logging.getLogger(__name__)

APP_TITLE = "Supabase RLS Scanner"
CALLBACK_PATH = "/api/auth/supabase/callback"
SESSION_COOKIE = "rlsguard_oauth"


def _status_for(exc: RlsGuardError) -> int:
    if isinstance(exc, (IntegrationNotFoundError, ReauthorizationRequired)):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, (TokenRefreshError, TokenExchangeError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ManagementApiError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, InvalidInputError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(
    settings: AppSettings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    classifier: RiskClassifier | None = None,
) -> FastAPI:
    settings = settings or AppSettings.load()
    if not settings.session_secret:
        raise ConfigurationError("RLSGUARD_SESSION_SECRET is required to sign OAuth session cookies")
    components = build_components(settings, transport=transport, classifier=classifier)
    components.vault.self_test()
    init_db(settings.db_path)

    app = FastAPI(title=APP_TITLE)
    app.state.components = components
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=SESSION_COOKIE,
        max_age=SESSION_TTL_SECONDS,
        same_site="lax",
        https_only=settings.cookie_secure,
    )
    app.include_router(monitoring_router, prefix="/api")

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.exception_handler(RlsGuardError)
    async def rlsguard_error_handler(request: Request, exc: RlsGuardError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
        return _error(status_code, str(exc))

    @app.exception_handler(httpx.HTTPError)
    async def upstream_error_handler(request: Request, exc: httpx.HTTPError) -> JSONResponse:
        logger.error("%s %s upstream request failed: %s", request.method, request.url.path, exc)
        return _error(status.HTTP_502_BAD_GATEWAY, f"Upstream request failed: {str(exc) or type(exc).__name__}")

    def _components(request: Request) -> Components:
        return request.app.state.components

    def _public_base(request: Request) -> str:
        return (settings.public_url or str(request.base_url)).rstrip("/")

    def _home(request: Request, **params: str) -> RedirectResponse:
        return RedirectResponse(
            f"{_public_base(request)}/?{urlencode(params)}",
            status_code=status.HTTP_303_SEE_OTHER,
        )

    @app.get("/api/auth/supabase/authorize")
    async def authorize(request: Request, user_id: str | None = Query(default=None)):
        if not user_id:
            return _home(request, error="not_authenticated", message="Please sign in first")
        try:
            auth_request = begin_authorization(
                settings.oauth,
                user_id,
                redirect_uri=f"{_public_base(request)}{CALLBACK_PATH}",
            )
        except InvalidInputError as exc:
            logger.error("Cannot start OAuth flow: %s", exc)
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
        request.session.update(auth_request.to_session())
        return RedirectResponse(auth_request.url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    @app.get(CALLBACK_PATH)
    async def callback(
        request: Request,
        code: str | None = Query(default=None),
        state: str | None = Query(default=None),
        error: str | None = Query(default=None),
    ):
        # one-shot: the session is cleared whatever the outcome
        session_data = {
            key: request.session.pop(key, None)
            for key in (SESSION_STATE_KEY, SESSION_VERIFIER_KEY, SESSION_CREATED_KEY)
        }
        if error:
            return _home(request, error=error)
        if not code or not state:
            return _home(request, error="missing_code_or_state")

        try:
            user_id, verifier = complete_authorization(session_data, state)
        except AuthorizationError as exc:
            logger.warning("OAuth callback rejected: %s", exc.reason)
            return _home(request, error=exc.reason)

        try:
            record = await _components(request).token_manager.exchange_code(
                code,
                verifier,
                redirect_uri=f"{_public_base(request)}{CALLBACK_PATH}",
                user_id=user_id,
            )
        except TokenExchangeError as exc:
            logger.error("Token exchange failed for user %s: %s", user_id, exc)
            return _home(request, error="token_exchange_failed")
        except RlsGuardError as exc:
            logger.error("OAuth callback failed for user %s: %s", user_id, exc)
            return _home(request, error="callback_failed")

        components = _components(request)
        access_token = components.vault.unseal(record.access_token)
        if not await components.api.validate_access_token(access_token):
            logger.error("Access token for user %s was rejected by the Management API", user_id)
            components.token_manager.disconnect(user_id)
            return _home(request, error="token_validation_failed")
        return _home(request, connected="true", integration_id=record.id or "")

    @app.post("/api/auth/supabase/disconnect")
    async def disconnect(payload: UserRequest, request: Request):
        removed = _components(request).token_manager.disconnect(payload.user_id)
        logger.info("Disconnect for user %s removed=%s", payload.user_id, removed)
        return {"success": True, "message": "Successfully disconnected Supabase integration"}

    @app.get("/api/integrations/supabase/available-projects")
    async def available_projects(request: Request, user_id: str | None = Query(default=None)):
        if not user_id:
            return _error(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
        projects = await _components(request).service.list_available_projects(user_id)
        return {"success": True, "projects": projects}

    @app.get("/api/integrations/supabase/projects")
    async def stored_projects(request: Request, user_id: str | None = Query(default=None)):
        if not user_id:
            return _error(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
        return {"success": True, "projects": list_projects(settings.db_path, user_id)}

    @app.post("/api/integrations/supabase/save-projects")
    async def save_selected_projects(payload: SaveProjectsRequest, request: Request):
        components = _components(request)
        available = await components.service.list_available_projects(payload.user_id)
        wanted = set(payload.project_refs)
        selected = [project for project in available if project["ref"] in wanted]
        if not selected:
            return _error(status.HTTP_404_NOT_FOUND, "No valid projects found")
        integration = components.token_manager.get_integration(payload.user_id)
        if integration is None or integration.id is None:
            return _error(status.HTTP_404_NOT_FOUND, "No Supabase integration found")
        saved = save_projects(settings.db_path, payload.user_id, integration.id, selected)
        return {
            "success": True,
            "projects": saved,
            "message": f"Successfully added {len(saved)} projects",
        }

    @app.post("/api/integrations/supabase/scan")
    async def scan(payload: ScanRequest, request: Request):
        project = get_project(settings.db_path, payload.project_id, payload.user_id)
        if project is None:
            return _error(status.HTTP_404_NOT_FOUND, "Project not found")
        result, scan_id = await scan_stored_project(
            _components(request).service,
            settings.db_path,
            payload.user_id,
            project,
        )
        if not result.success:
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, result.error or "Scan failed")
        return {
            "success": True,
            "scan_id": scan_id,
            "scan_result": result.to_dict(),
            "ai_insights": insights_text(result),
        }

    @app.post("/api/integrations/supabase/scan-all", response_model=ScanAllResponse)
    async def scan_all(payload: UserRequest, request: Request, background_tasks: BackgroundTasks):
        projects = list_pending_projects(settings.db_path, payload.user_id)
        if not projects:
            return ScanAllResponse(success=True, message="No projects to scan", scans_triggered=0)
        background_tasks.add_task(
            run_projects_concurrently,
            _components(request).service,
            settings.db_path,
            payload.user_id,
            projects,
            settings.max_concurrent_projects,
        )
        return ScanAllResponse(
            success=True,
            message=f"Triggered scans for {len(projects)} projects",
            scans_triggered=len(projects),
            total_projects=len(projects),
            results=[ScanTriggerResult(project_id=project["id"], triggered=True) for project in projects],
        )

    return app
