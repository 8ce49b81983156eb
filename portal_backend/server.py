from fastapi import FastAPI, APIRouter, Depends, Request, Query, UploadFile, File, Form, BackgroundTasks
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from openai import OpenAIError
import logging
from typing import Optional

from portal_backend.authorization import (
    ProfileNotFound,
    get_store,
    is_authorized,
    require_internal,
    resolve_profile,
    validate_drive_id,
    validate_file_id,
)
from portal_backend.config import Settings, load_settings
from portal_backend.credentials import (
    DRIVE_FILE_SCOPE,
    DRIVE_READONLY_SCOPE,
    CredentialExchange,
)
from portal_backend.drive import GOOGLE_DOC_MIME, DriveClient, FileTooLarge
from portal_backend.errors import (
    BadRequest,
    Forbidden,
    InternalError,
    NotFound,
    UpstreamNotFound,
    UpstreamPermissionDenied,
)
from portal_backend.gate import RequestGate
from portal_backend.identity import (
    VERIFIER_COOKIE,
    IdentityError,
    IdentityProviderClient,
    clear_session_cookies,
    get_current_identity,
    set_session_cookies,
)
from portal_backend.models import (
    ExtractSkillsRequest,
    GrantPermissionRequest,
    Identity,
    ParseResumeRequest,
    PortalAccountResponse,
    Profile,
    UploadResponse,
)
from portal_backend.proxy import stream_file
from portal_backend.resume_parser import (
    ResumeParsingError,
    extract_job_skills,
    extract_text,
    parse_resume_with_ai,
)
from portal_backend.security_events import (
    SecurityEventLogger,
    denied_response,
    group_security_events,
)
from portal_backend.store import MongoStore

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
MAX_PARSE_BYTES = 10 * 1024 * 1024

# Create routers
api_router = APIRouter(prefix="/api")
auth_router = APIRouter(prefix="/auth")


# ============ REQUEST-SCOPED HELPERS ============

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_events(store=Depends(get_store)) -> SecurityEventLogger:
    return SecurityEventLogger(store)


def drive_for(request: Request, access_token: str) -> DriveClient:
    return DriveClient(
        access_token,
        timeout=request.app.state.settings.upstream_timeout,
        transport=request.app.state.drive_transport,
        http=request.app.state.drive_http
    )


def safe_next(target: Optional[str]) -> str:
    """Only same-origin relative paths are valid post-login targets"""
    if not target or not target.startswith("/") or target.startswith("//") or target.startswith("/\\"):
        return "/"
    return target


# ============ FILE ACCESS ============

async def serve_file(request: Request, file_id: Optional[str], identity: Identity, store):
    events = SecurityEventLogger(store)
    file_id = validate_file_id(file_id)

    try:
        profile = await resolve_profile(store, identity.user_id)
    except ProfileNotFound:
        return denied_response(
            events, identity.user_id,
            {"file_id": file_id, "reason": "no_profile"},
            detail="Profile not found"
        )

    if not await is_authorized(store, profile, file_id):
        return denied_response(
            events, identity.user_id,
            {"file_id": file_id, "role": profile.role, "client_id": profile.client_id, "reason": "not_owner"}
        )

    token = await request.app.state.credentials.service_token([DRIVE_READONLY_SCOPE])
    return await stream_file(
        drive_for(request, token),
        file_id,
        background=BackgroundTask(
            events.log_event,
            "contract_view",
            identity.user_id,
            {"file_id": file_id, "role": profile.role},
            "info"
        )
    )


@api_router.get("/files")
async def get_file_by_query(
    request: Request,
    file_id: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store)
):
    """Stream a file the caller is entitled to (file id as query parameter)"""
    return await serve_file(request, file_id, identity, store)


@api_router.get("/files/{file_id}")
async def get_file(
    request: Request,
    file_id: str,
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store)
):
    """Stream a file the caller is entitled to"""
    return await serve_file(request, file_id, identity, store)


@api_router.post("/files/permissions")
async def grant_file_permission(
    request: Request,
    payload: GrantPermissionRequest,
    background_tasks: BackgroundTasks,
    profile: Profile = Depends(require_internal),
    events: SecurityEventLogger = Depends(get_events)
):
    """Share a user-owned file with the service account, acting as that user"""
    settings = get_settings(request)
    if not payload.file_id or not payload.access_token:
        raise BadRequest("Missing required fields")

    file_id = validate_file_id(payload.file_id)
    delegated = request.app.state.credentials.delegated_token(payload.access_token)

    try:
        await drive_for(request, delegated).grant_reader(file_id, settings.google_client_email)
    except UpstreamPermissionDenied:
        raise UpstreamPermissionDenied("You do not have permission to share this file")

    background_tasks.add_task(
        events.log_event,
        "drive_permission_grant",
        profile.id,
        {"file_id": file_id, "grantee": settings.google_client_email},
        "info"
    )
    return {"success": True}


@api_router.post("/files/upload", response_model=UploadResponse)
async def upload_resume(
    request: Request,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    folder_id: Optional[str] = Form(None),
    candidate_id: Optional[str] = Form(None),
    profile: Profile = Depends(require_internal),
    events: SecurityEventLogger = Depends(get_events)
):
    """Upload a resume into a Drive folder with the service account"""
    if file is None or not folder_id:
        raise BadRequest("Missing file or folderId")
    folder_id = validate_drive_id(folder_id, "folderId")

    content = await file.read(MAX_UPLOAD_BYTES + 1)
    if not content:
        raise BadRequest("Uploaded file is empty")
    if len(content) > MAX_UPLOAD_BYTES:
        raise BadRequest("Uploaded file is too large")

    filename = file.filename or "resume"
    name = f"{candidate_id}_{filename}" if candidate_id else filename

    token = await request.app.state.credentials.service_token([DRIVE_FILE_SCOPE])
    created = await drive_for(request, token).create_file(name, folder_id, content, file.content_type)
    if not created.get("id"):
        logger.error(f"Drive upload returned no file id: {created}")
        raise InternalError("Upload failed")

    background_tasks.add_task(
        events.log_event,
        "resume_upload",
        profile.id,
        {"file_id": created["id"], "folder_id": folder_id, "candidate_id": candidate_id},
        "info"
    )
    return UploadResponse(
        file_id=created["id"],
        web_view_link=created.get("webViewLink"),
        download_link=created.get("webContentLink")
    )


# ============ AI PARSING ============

@api_router.post("/resumes/parse")
async def parse_resume(
    request: Request,
    payload: ParseResumeRequest,
    profile: Profile = Depends(require_internal),
    store=Depends(get_store)
):
    """Parse a Drive-hosted resume with AI and store the result against the candidate"""
    settings = get_settings(request)
    if not payload.file_id or not payload.candidate_id:
        raise BadRequest("Missing fileId or candidateId")
    file_id = validate_file_id(payload.file_id)

    token = await request.app.state.credentials.service_token([DRIVE_READONLY_SCOPE])
    drive = drive_for(request, token)

    try:
        metadata = await drive.get_metadata(file_id)
        if metadata.mime_type == GOOGLE_DOC_MIME:
            content = await drive.export_pdf(file_id)
            mime_type = "application/pdf"
        else:
            content = await drive.download(file_id, MAX_PARSE_BYTES)
            mime_type = metadata.mime_type
    except UpstreamNotFound:
        raise UpstreamNotFound(
            "Service account cannot access this file. Ensure it is in a folder shared with the service account."
        )
    except FileTooLarge:
        raise BadRequest("Resume file is too large to parse")

    try:
        text = extract_text(content, mime_type, metadata.name)
        parsed = await parse_resume_with_ai(text, settings.llm_api_key, settings.llm_model)
    except ResumeParsingError as e:
        raise InternalError(str(e))

    parsed_data = parsed.model_dump()
    await store.save_parsed_resume(file_id, payload.candidate_id, metadata.name, parsed_data)
    logger.info(f"Parsed resume {file_id} for candidate {payload.candidate_id}")

    return {"success": True, "parsed_data": parsed_data}


@api_router.post("/jobs/extract-skills")
async def extract_skills(
    request: Request,
    payload: ExtractSkillsRequest,
    profile: Profile = Depends(require_internal)
):
    """Extract key skills and seniority from a job description"""
    settings = get_settings(request)
    if not payload.description or not payload.description.strip():
        raise BadRequest("Description missing")

    try:
        return await extract_job_skills(payload.description, settings.llm_api_key, settings.llm_model)
    except OpenAIError as e:
        logger.error(f"Job skill extraction failed: {e}")
        raise InternalError("Job parsing failed")


# ============ CLIENT PORTAL ============

@api_router.get("/portal/account", response_model=PortalAccountResponse)
async def get_portal_account(
    background_tasks: BackgroundTasks,
    client_id: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
    store=Depends(get_store)
):
    """Account summary for the portal; internal staff viewing a client is audited"""
    events = SecurityEventLogger(store)
    try:
        profile = await resolve_profile(store, identity.user_id)
    except ProfileNotFound:
        raise Forbidden("Profile not found")

    if profile.is_internal:
        if not client_id:
            raise BadRequest("Missing client_id")
        account = await store.get_account(client_id)
        if not account:
            raise NotFound("Account not found")
        background_tasks.add_task(
            events.log_event,
            "impersonation_view",
            identity.user_id,
            {"target_client_id": client_id, "target_client_name": account.get("name")},
            "warning"
        )
        return PortalAccountResponse(
            client_id=client_id,
            name=account.get("name"),
            has_contract=bool(account.get("contract_url")),
            impersonating=True
        )

    if not profile.client_id:
        return denied_response(
            events, identity.user_id,
            {"resource": "portal_account", "role": profile.role, "reason": "no_client_id"}
        )
    if client_id and client_id != profile.client_id:
        return denied_response(
            events, identity.user_id,
            {"resource": "portal_account", "role": profile.role, "requested_client_id": client_id, "reason": "cross_account"}
        )

    account = await store.get_account(profile.client_id)
    if not account:
        raise NotFound("Account not found")
    return PortalAccountResponse(
        client_id=profile.client_id,
        name=account.get("name"),
        has_contract=bool(account.get("contract_url"))
    )


# ============ AUDIT REVIEW ============

@api_router.get("/security-events")
async def list_security_events(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    grouped: bool = False,
    identity: Identity = Depends(get_current_identity),
    profile: Profile = Depends(require_internal),
    store=Depends(get_store)
):
    """Security audit trail, newest first"""
    reviewers = get_settings(request).audit_reviewer_emails
    if reviewers and (identity.email or "").lower() not in reviewers:
        raise Forbidden("Audit log access restricted")

    events = await store.list_security_events(limit=limit, event_type=event_type, user_id=user_id)
    if grouped:
        events = group_security_events(events)
    return {"events": events, "count": len(events)}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy"}


# ============ AUTH ROUTES ============

@auth_router.get("/callback")
async def auth_callback(request: Request, code: Optional[str] = None, next: Optional[str] = "/"):
    """Complete a login by exchanging the authorization code for a session"""
    settings = get_settings(request)
    target = safe_next(next)

    if code:
        provider = request.app.state.identity_provider
        try:
            tokens, identity = await provider.exchange_code(code, request.cookies.get(VERIFIER_COOKIE))
        except IdentityError as e:
            logger.warning(f"[SECURITY] Authorization code exchange failed: {e}")
        else:
            events = SecurityEventLogger(get_store(request))
            response = RedirectResponse(
                url=target,
                status_code=307,
                background=BackgroundTask(
                    events.log_event,
                    "system_login",
                    identity.user_id,
                    {"method": identity.auth_method, "email": identity.email},
                    "info"
                )
            )
            set_session_cookies(response, tokens, settings.secure_cookies)
            response.delete_cookie(VERIFIER_COOKIE)
            return response

    return RedirectResponse(url="/?error=auth-code-error", status_code=307)


@auth_router.post("/logout")
async def logout():
    response = JSONResponse({"success": True})
    clear_session_cookies(response)
    return response


# ============ ERROR RENDERING ============

async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None)
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ============ APP FACTORY ============

def create_app(
    settings: Optional[Settings] = None,
    *,
    store_factory=None,
    identity_provider=None,
    credentials=None,
    drive_transport=None,
    drive_http=None
) -> FastAPI:
    """Build the app. Collaborators default to the real services named in settings."""
    settings = settings or load_settings()

    # Configure logging
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    app = FastAPI(title="Portal Backend")
    app.state.settings = settings

    if store_factory is None:
        # MongoDB connection pool is shared; each request gets its own store wrapper
        client = AsyncIOMotorClient(settings.mongo_url)
        db = client[settings.db_name]

        def store_factory():
            return MongoStore(db)

        @app.on_event("shutdown")
        async def shutdown_db_client():
            client.close()

    app.state.store_factory = store_factory
    app.state.identity_provider = identity_provider or IdentityProviderClient(
        settings.auth_url,
        settings.auth_public_key,
        timeout=settings.upstream_timeout
    )
    app.state.credentials = credentials or CredentialExchange(
        settings.google_client_email,
        settings.google_private_key
    )
    app.state.drive_transport = drive_transport
    app.state.drive_http = drive_http

    app.include_router(api_router)
    app.include_router(auth_router)

    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(RequestGate)
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app
