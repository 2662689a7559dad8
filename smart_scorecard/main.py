import json
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from . import config
from .completeness import handle as handle_completeness
from .config import IssuerConfig
from .exceptions import ScorecardAppError
from .fhir_models import to_fhir_json
from .html_report import HtmlReport
from .launch import build_authorize_url, new_state, resolve
from .record import CallbackAction, build_report, check_callback
from .sessions import LaunchContext, SessionStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RESOURCES_DIR = Path(__file__).resolve().parent / "resources"
CAPABILITY_STATEMENT = (RESOURCES_DIR / "capability_statement.json").read_text()
OPERATION_DEFINITION = (RESOURCES_DIR / "operation_definition.json").read_text()

ENDPOINTS = {
    "/index": "this page",
    "/app": "the app (also the redirect_uri after authz)",
    "/launch": "the launch url",
    "/fhir": "FHIR API",
    "/fhir/metadata": "FHIR CapabilityStatement",
    "/fhir/OperationDefinition": "FHIR OperationDefinitions",
    "/fhir/OperationDefinition/Patient-completeness": "FHIR Completeness Service OperationDefinition",
    "/fhir/$completeness": "FHIR Completeness Service Endpoint",
}


def _base_url(request: Request) -> str:
    return (config.APP_BASE_URL or str(request.base_url)).rstrip("/")


def _redirect_uri(request: Request) -> str:
    return f"{_base_url(request)}/app"


def _fhir_response(content: str, status_code: int = 200) -> Response:
    return Response(content=content, status_code=status_code, media_type=config.CONTENT_TYPE)


def create_app(
    issuer_config: Optional[IssuerConfig] = None,
    sessions: Optional[SessionStore] = None,
) -> FastAPI:
    app = FastAPI(title="SMART on FHIR Scorecard", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["HEAD", "GET", "PUT", "POST", "DELETE", "OPTIONS"],
        allow_headers=["X-Requested-With", "X-HTTP-Method-Override", "Content-Type", "Cache-Control", "Accept"],
    )

    # Shared, read-only after startup
    app.state.issuer_config = issuer_config if issuer_config is not None else config.load_issuer_config()
    app.state.sessions = sessions if sessions is not None else SessionStore()
    # Overridable for tests: requests.Session for OAuth2 calls, httpx transport for FHIR calls
    app.state.http_session = None
    app.state.fhir_transport = None

    @app.exception_handler(ScorecardAppError)
    async def scorecard_error_handler(request: Request, exc: ScorecardAppError):
        logger.error(f"{exc.title}: {exc.message}")
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": exc.message}
        if not isinstance(exc.detail, dict) and exc.detail:
            detail["detail"] = exc.detail
        body = HtmlReport().open().echo_hash(exc.title, detail).close()
        return HTMLResponse(content=body, status_code=exc.http_status)

    @app.options("/{path:path}")
    async def preflight(path: str):
        return Response(status_code=200, headers={"Allow": "HEAD,GET,PUT,POST,DELETE,OPTIONS"})

    @app.get("/")
    async def root():
        return RedirectResponse(url="/index", status_code=302)

    @app.get("/index", response_class=HTMLResponse)
    async def index():
        return HtmlReport().open().echo_hash("End Points", ENDPOINTS).close()

    @app.get("/launch")
    def launch_app(request: Request):
        """
        SMART on FHIR launch endpoint
        Resolves the issuer, stores a fresh launch context and redirects to the authorization server
        """
        iss = request.query_params.get("iss")
        launch = request.query_params.get("launch")
        logger.info(f"Received launch parameters:")
        logger.info(f"  launch: {launch}")
        logger.info(f"  iss: {iss}")

        target = resolve(iss, request.app.state.issuer_config, session=request.app.state.http_session)
        redirect_uri = _redirect_uri(request)
        logger.info(f"Launch Client ID: {target.client_id}")
        logger.info(f"Launch Redirect: {redirect_uri}")

        context = LaunchContext(
            issuer_url=iss,
            client_id=target.client_id,
            authorize_url=target.authorize_url,
            token_url=target.token_url,
            requested_scopes=target.scopes,
            anti_forgery_state=new_state(),
        )
        # Always a server-issued id; a launch replaces any pending one from this browser
        sessions = request.app.state.sessions
        sessions.discard(request.cookies.get(config.SESSION_COOKIE))
        session_id = sessions.new_session_id()
        sessions.create(session_id, context)

        redirect_url = build_authorize_url(target.authorize_url, {
            "response_type": "code",
            "client_id": target.client_id,
            "redirect_uri": redirect_uri,
            "scope": target.scopes,
            "launch": launch,
            "state": context.anti_forgery_state,
            "aud": iss,
        })
        logger.info(f"Redirecting to authorization URL: {redirect_url}")

        oauth2_metadata = {"authorize_url": target.authorize_url, "token_url": target.token_url}
        content = (
            HtmlReport().open()
            .echo_hash("params", dict(request.query_params))
            .echo_hash("OAuth2 Metadata", oauth2_metadata)
            .close()
        )
        response = HTMLResponse(content=content, status_code=302, headers={"Location": redirect_url})
        response.set_cookie(config.SESSION_COOKIE, session_id, httponly=True, samesite="lax")
        return response

    @app.get("/app", response_class=HTMLResponse)
    def scorecard_app(request: Request):
        """
        Primary endpoint of the app and the OAuth2 redirect URL
        Exchanges the authorization code, fetches the patient record and renders its scorecard
        """
        params = dict(request.query_params)
        context = request.app.state.sessions.consume(request.cookies.get(config.SESSION_COOKIE))
        outcome = check_callback(params, context)

        if outcome.action is CallbackAction.REDIRECT:
            return RedirectResponse(url=outcome.redirect_url, status_code=302)
        if outcome.action is CallbackAction.ERROR:
            return HtmlReport().open().echo_hash("Invalid Launch!", params).close()
        if outcome.action is CallbackAction.NO_LAUNCH:
            logger.warning("OAuth2 redirect received without a pending launch")
            return HtmlReport().open().echo_hash("No Launch In Progress!", params).close()

        logger.info(f"App Params: {sorted(params)}")
        report = build_report(
            context,
            params.get("code"),
            _redirect_uri(request),
            session=request.app.state.http_session,
            transport=request.app.state.fhir_transport,
        )

        page = HtmlReport().open()
        page.echo_hash("params", params)
        page.echo_hash("token response", report.token.redacted())
        page.echo_hash("patient", report.patient_details)
        page.echo_hash("scorecard", report.scorecard, ["rubric", "points", "description"])
        return page.close()

    @app.get("/fhir")
    async def fhir_root():
        return RedirectResponse(url="/fhir/metadata", status_code=302)

    @app.get("/fhir/metadata")
    async def capability_statement():
        return _fhir_response(CAPABILITY_STATEMENT)

    @app.get("/fhir/OperationDefinition")
    async def operation_definitions(request: Request):
        bundle = {
            "resourceType": "Bundle",
            "type": "searchset",
            "total": 1,
            "entry": [{
                "fullUrl": f"{_base_url(request)}/fhir/OperationDefinition/Patient-completeness",
                "resource": json.loads(OPERATION_DEFINITION),
            }],
        }
        return _fhir_response(json.dumps(bundle))

    @app.get("/fhir/OperationDefinition/Patient-completeness")
    async def completeness_operation_definition():
        return _fhir_response(OPERATION_DEFINITION)

    @app.post("/fhir/$completeness")
    async def completeness(request: Request):
        payload = await request.body()
        status_code, resource = handle_completeness(request.headers.get("content-type"), payload)
        return _fhir_response(to_fhir_json(resource), status_code=status_code)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.BACKEND_PORT)
