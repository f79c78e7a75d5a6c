import logging
import os
import secrets
import sys
import threading
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from api.models import (
    ChatContextRequest,
    ClaimVisibilityRequest,
    ConsentContextRequest,
    InviteCreate,
    InviteResponse,
    ReferenceVisibilityUpdate,
    RespondVisibilityRequest,
    VisibilityWriteResponse,
)
from database import identity_store
from database.init_db import get_connection, init_db, migrate_schema, seed_default_people
from identity.claims import claim_visibility, get_claim_context, open_invite, respond_visibility
from identity.consumers import (
    build_chat_context,
    build_consent_context,
    build_editor_payload,
    build_graph,
    build_note_payload,
)
from identity.errors import (
    AmbiguousMatch,
    IdentityError,
    InvalidScope,
    InvalidVisibility,
    NotFound,
    PropagationLimitExceeded,
)
from identity.propagation import create_invite
from identity.visibility import (
    can_reveal_identity,
    explain_visibility,
    set_author_reference_visibility,
    shape_person_payload,
)

# --- API Key Authentication ---
# Set ARCHIVE_API_KEY to enable auth. When unset, auth is disabled
# (local-only development mode).
logger = logging.getLogger("archive_api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("ARCHIVE_LOG_LEVEL", "INFO").upper())

APP_START_TIME = time.time()
MUTATION_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _truthy_env(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


_RESOLVED_API_KEY = os.getenv("ARCHIVE_API_KEY", "").strip()
_AUTH_REQUIRED = _truthy_env(os.getenv("ARCHIVE_REQUIRE_API_KEY", "0")) or bool(_RESOLVED_API_KEY)

if _AUTH_REQUIRED and not _RESOLVED_API_KEY:
    logger.warning(
        "ARCHIVE_REQUIRE_API_KEY is set but no ARCHIVE_API_KEY configured. "
        "All authenticated endpoints will return 503."
    )

if not _AUTH_REQUIRED:
    logger.warning(
        "API key authentication is DISABLED (development mode). "
        "Set ARCHIVE_API_KEY to enable authentication before deploying."
    )

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Security(_api_key_header)):
    """Verify the service API key.

    Sessions and magic links are handled upstream; this key only proves the
    caller is the archive's own front end.
    """
    if not _AUTH_REQUIRED:
        return  # Auth disabled (local development mode)
    if not _RESOLVED_API_KEY:
        raise HTTPException(
            status_code=503,
            detail="API key enforcement enabled but ARCHIVE_API_KEY is not configured.",
        )
    if not api_key or not secrets.compare_digest(api_key, _RESOLVED_API_KEY):
        raise HTTPException(
            status_code=403,
            detail="Invalid or missing API key. Set X-API-Key header.",
        )


# --- Rate Limiter for token-bearing endpoints ---
class _RateLimiter:
    """Simple in-memory sliding-window rate limiter (thread-safe)."""

    def __init__(self, max_calls: int, period_seconds: float):
        self._max_calls = max_calls
        self._period = period_seconds
        self._calls: list[float] = []
        self._lock = threading.Lock()

    def check(self) -> bool:
        """Return True if the request is allowed, False if rate-limited."""
        now = time.monotonic()
        with self._lock:
            self._calls = [t for t in self._calls if now - t < self._period]
            if len(self._calls) >= self._max_calls:
                return False
            self._calls.append(now)
            return True

    def reset(self):
        """Clear all tracked calls (useful for testing)."""
        with self._lock:
            self._calls.clear()


# Claim and respond writes are authorized by possession of a token/invite id,
# so bound how fast they can be guessed.
_claim_limiter = _RateLimiter(max_calls=30, period_seconds=60.0)


def _check_claim_rate_limit():
    if not _claim_limiter.check():
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded for claim endpoints. Try again later.",
        )


def startup():
    """Init DB, migrate schema, seed people on first run."""
    init_db()
    migrate_schema()
    conn = get_connection()
    people_count = conn.execute("SELECT COUNT(*) AS count FROM people").fetchone()["count"]
    conn.close()
    if people_count == 0:
        seed_default_people()


@asynccontextmanager
async def lifespan(application: FastAPI):
    startup()
    yield


app = FastAPI(
    title="Family Archive Identity API",
    description="Disclosure control for people mentioned in archive notes: visibility resolution, redaction, masking and bounded chain invites.",
    version="1.0.0",
    lifespan=lifespan,
)


_ERROR_STATUS = (
    (NotFound, 404),
    (AmbiguousMatch, 409),
    (InvalidVisibility, 400),
    (InvalidScope, 400),
    (PropagationLimitExceeded, 400),
)


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    status_code = next((code for cls, code in _ERROR_STATUS if isinstance(exc, cls)), 400)
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.reason,
            "error": type(exc).__name__,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def _audit_mutation(
    request: Request,
    response_status: int,
    duration_ms: float,
):
    if request.method not in MUTATION_METHODS:
        return
    conn = None
    try:
        conn = get_connection()
        conn.execute(
            """INSERT INTO audit_log
            (request_id, method, path, status_code, duration_ms, actor, client_ip)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                getattr(request.state, "request_id", ""),
                request.method,
                request.url.path,
                int(response_status),
                round(float(duration_ms), 3),
                request.headers.get("X-Contributor-ID", "anonymous"),
                request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
                or (request.client.host if request.client else None),
            ),
        )
        conn.commit()
    except Exception:
        logger.exception("audit_log_write_failed", extra={"path": request.url.path})
    finally:
        if conn is not None:
            conn.close()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except HTTPException as exc:
        response = JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "request_id": request_id},
            headers=exc.headers or None,
        )
    except Exception:
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path},
        )
        response = JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request_id},
        )

    duration_ms = (time.perf_counter() - start) * 1000.0
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    _audit_mutation(request, response.status_code, duration_ms)
    return response


def _visibility_write_payload(result):
    scope = result.get("preference_scope")
    return VisibilityWriteResponse(
        reference_id=result["reference_id"],
        person_id=result.get("person_id"),
        scope=result["scope"],
        visibility=result["visibility"],
        preference_contributor_id=scope.contributor_id if scope is not None else None,
    )


@app.get("/")
def root():
    return {"status": "online", "service": "Family Archive Identity API", "version": "1.0.0"}


@app.get("/healthz")
def healthz():
    return {"status": "ok", "uptime_seconds": round(time.time() - APP_START_TIME, 3)}


@app.get("/readyz")
def readyz():
    conn = None
    try:
        conn = get_connection()
        conn.execute("SELECT 1").fetchone()
        conn.execute("SELECT COUNT(*) FROM people").fetchone()
        return {"status": "ready"}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database not ready: {e}") from e
    finally:
        if conn is not None:
            conn.close()


# --- NOTES ---


@app.get("/notes/{event_id}", dependencies=[Depends(verify_api_key)])
def get_note(event_id: int):
    conn = get_connection()
    try:
        return build_note_payload(conn, event_id)
    finally:
        conn.close()


@app.get("/notes/{event_id}/editor", dependencies=[Depends(verify_api_key)])
def get_note_editor(event_id: int, x_contributor_id: Optional[int] = Header(default=None)):
    conn = get_connection()
    try:
        return build_editor_payload(conn, event_id, x_contributor_id)
    finally:
        conn.close()


@app.patch("/references/{reference_id}/visibility", dependencies=[Depends(verify_api_key)])
def update_reference_visibility(
    reference_id: int,
    body: ReferenceVisibilityUpdate,
    x_contributor_id: Optional[int] = Header(default=None),
):
    conn = get_connection()
    try:
        return set_author_reference_visibility(conn, reference_id, body.visibility, x_contributor_id)
    finally:
        conn.close()


@app.get("/people/{person_id}/visibility", dependencies=[Depends(verify_api_key)])
def get_person_visibility(person_id: int, author_id: Optional[int] = None, reference_id: Optional[int] = None):
    conn = get_connection()
    try:
        person = identity_store.get_person(conn, person_id)
        if person is None:
            raise NotFound("Person not found")
        override = None
        if reference_id is not None:
            reference = identity_store.get_reference(conn, reference_id)
            if reference is None or reference["person_id"] != person_id:
                raise NotFound("Reference not found")
            override = reference["visibility"]
        prefs = identity_store.get_visibility_preferences(conn, [person_id], author_id)[person_id]
        claimed = identity_store.person_has_claimed(conn, person_id)
    finally:
        conn.close()
    visibility, layer = explain_visibility(
        reference_override=override,
        author_preference=prefs["author"],
        global_preference=prefs["global"],
        base_visibility=person["visibility"],
    )
    return {
        "person_id": person_id,
        "visibility": visibility,
        "source": layer,
        "revealed": can_reveal_identity(claimed, visibility),
        "person": shape_person_payload(claimed, person_id, person["canonical_name"], visibility),
    }


# --- CHAT / LLM ---


@app.post("/chat/context", dependencies=[Depends(verify_api_key)])
def chat_context(body: ChatContextRequest):
    if len(body.event_ids) > 50:
        raise HTTPException(status_code=422, detail="event_ids exceeds max count (50)")
    conn = get_connection()
    try:
        return {"notes": build_chat_context(conn, body.event_ids)}
    finally:
        conn.close()


@app.post("/consent-context", dependencies=[Depends(verify_api_key)])
def consent_context(body: ConsentContextRequest):
    conn = get_connection()
    try:
        return build_consent_context(conn, body.names, body.contributor_id)
    finally:
        conn.close()


# --- GRAPH ---


@app.get("/graph", dependencies=[Depends(verify_api_key)])
def graph(limit: int = Query(default=200, ge=1, le=1000)):
    conn = get_connection()
    try:
        return build_graph(conn, limit_events=limit)
    finally:
        conn.close()


# --- CLAIM / RESPOND ---


@app.get("/claim", dependencies=[Depends(verify_api_key)])
def get_claim(token: str = Query(min_length=1)):
    conn = get_connection()
    try:
        return get_claim_context(conn, token)
    finally:
        conn.close()


@app.post(
    "/claim",
    dependencies=[Depends(verify_api_key), Depends(_check_claim_rate_limit)],
    response_model=VisibilityWriteResponse,
)
def post_claim(body: ClaimVisibilityRequest):
    conn = get_connection()
    try:
        result = claim_visibility(conn, body.token, body.visibility, body.scope)
    finally:
        conn.close()
    return _visibility_write_payload(result)


@app.get("/respond/{invite_id}", dependencies=[Depends(verify_api_key)])
def get_respond(invite_id: int):
    conn = get_connection()
    try:
        return open_invite(conn, invite_id)
    finally:
        conn.close()


@app.post(
    "/respond/visibility",
    dependencies=[Depends(verify_api_key), Depends(_check_claim_rate_limit)],
    response_model=VisibilityWriteResponse,
)
def post_respond_visibility(body: RespondVisibilityRequest):
    conn = get_connection()
    try:
        result = respond_visibility(conn, body.invite_id, body.visibility, body.scope)
    finally:
        conn.close()
    return _visibility_write_payload(result)


# --- INVITES ---


@app.post("/invites", dependencies=[Depends(verify_api_key)], response_model=InviteResponse)
def post_invite(body: InviteCreate, x_contributor_id: Optional[int] = Header(default=None)):
    recipient_name = (body.recipient_name or "").strip()
    if not recipient_name:
        raise HTTPException(status_code=422, detail="recipient_name is required")
    if len(recipient_name) > 120:
        raise HTTPException(status_code=422, detail="recipient_name exceeds max length (120)")

    conn = get_connection()
    try:
        if identity_store.get_event(conn, body.event_id) is None:
            raise NotFound("Event not found")
        invite_id, created = create_invite(
            conn,
            body.event_id,
            recipient_name,
            recipient_contact=body.recipient_contact,
            sender_id=x_contributor_id,
            parent_invite_id=body.parent_invite_id,
            message=body.message,
        )
        invite = identity_store.get_invite(conn, invite_id)
    finally:
        conn.close()
    return InviteResponse(id=invite_id, created=created, depth=invite["depth"], status=invite["status"])
