# hijackwatch/main.py
import base64, logging, secrets
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from hijackwatch.core.config import load_settings
from hijackwatch.core.errors import HijackWatchError, InvalidPayload, Unauthorized
from hijackwatch.db.store import DB
from hijackwatch.services.adjudicator import Adjudicator
from hijackwatch.services.detection_service import DetectionService
from hijackwatch.services.ingestion_service import IngestionService, RerunRequest
from hijackwatch.utils.helpers import client_ip

# ---------------- Config ----------------
SETTINGS = load_settings()

logging.basicConfig(level=SETTINGS.log_level, format="%(asctime)s %(levelname)s [%(name)s.%(funcName)s] %(message)s")
log = logging.getLogger(__name__)
log.info("Loaded config from: %s", SETTINGS.cfg_file_used or "<defaults>")
log.info("Allowed origins: %s", SETTINGS.allowed_origins)
log.info("Reasoning model: %s (picker enabled: %s)", SETTINGS.llm_model, SETTINGS.model_picker_enabled)

# ---------------- Request-id middleware ----------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or base64.urlsafe_b64encode(secrets.token_bytes(9)).rstrip(b"=").decode()
        request.state.request_id = rid
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp

class CORSMiddleware(BaseHTTPMiddleware):
    """Credentialed CORS for the configured origins only"""
    async def dispatch(self, request: Request, call_next):
        origin = request.headers.get("Origin", "")
        headers = {}
        if origin in SETTINGS.allowed_origins:
            headers = {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, X-Request-ID",
                "Access-Control-Allow-Credentials": "true",
                "Vary": "Origin",
            }
        elif origin:
            log.debug("CORS: origin %s not allowed", origin)

        # Preflight
        if request.method == "OPTIONS":
            return JSONResponse({"ok": True}, headers=headers)

        response = await call_next(request)
        response.headers.update(headers)
        return response

# ---------------- Services ----------------
detection_service = DetectionService(DB)
adjudicator = Adjudicator(DB, settings=SETTINGS)
ingestion_service = IngestionService(DB, detection_service, adjudicator, SETTINGS)

# ---------------- FastAPI app ----------------
app = FastAPI(
    title="hijackwatch API",
    description="""Session-hijack detection from device fingerprint mismatches""",
    version="1.0.0",
    middleware=[
        Middleware(RequestIDMiddleware),
        Middleware(CORSMiddleware),
        Middleware(SessionMiddleware,
                   secret_key=(SETTINGS.session_secret_key or base64.urlsafe_b64encode(secrets.token_bytes(32)).decode()),
                   session_cookie=SETTINGS.session_cookie_name,
                   https_only=SETTINGS.https_only,
                   same_site="lax"),
    ],
)

if not SETTINGS.session_secret_key:
    log.warning("No session secret configured; generated ephemeral dev key.")

@app.exception_handler(HijackWatchError)
async def _hijackwatch_error(req: Request, exc: HijackWatchError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)

# ---- DB lifecycle ----
@app.on_event("startup")
async def _init_db():
    await DB.init(SETTINGS.db_path)
    log.info("DB initialized at %s", SETTINGS.db_path)

@app.on_event("shutdown")
async def _close_db():
    await DB.close()

# ---------------- Principal ----------------
async def current_principal(req: Request) -> Optional[str]:
    """User id placed in the signed session cookie by the authentication layer"""
    return req.session.get("user_id")

# ---------------- Routes ----------------
@app.get("/healthz")
async def healthz():
    return {"ok": True}

@app.post("/api/session/record")
async def record_fingerprint(req: Request, background: BackgroundTasks,
                             user_id: Optional[str] = Depends(current_principal)):
    """Record one fingerprint observation for the caller's session"""
    result = await ingestion_service.record(
        user_id, await req.body(), ip=client_ip(req), user_agent=req.headers.get("user-agent"),
        background=background,
    )
    return JSONResponse(result)

@app.get("/api/dashboard/sessions")
async def dashboard_sessions(user_id: Optional[str] = Depends(current_principal)):
    """Monitoring view: the caller's sessions with fingerprints and latest detection"""
    return JSONResponse({"sessions": await ingestion_service.list_sessions(user_id)})

@app.get("/api/detections/{event_id}")
async def get_detection(event_id: str, user_id: Optional[str] = Depends(current_principal)):
    event = await ingestion_service.get_event(user_id, event_id)
    return JSONResponse(event.to_dict())

@app.post("/api/detections/{event_id}/adjudicate")
async def rerun_detection(event_id: str, req: Request, background: BackgroundTasks,
                          user_id: Optional[str] = Depends(current_principal)):
    """Re-run adjudication for an event left PENDING"""
    if not user_id:
        raise Unauthorized()
    model_override = None
    body = await req.body()
    if body:
        try:
            model_override = RerunRequest.model_validate_json(body).modelOverride
        except ValidationError:
            raise InvalidPayload()
    result = await ingestion_service.rerun_adjudication(user_id, event_id, model_override, background)
    return JSONResponse(result, status_code=202)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("hijackwatch.main:app", host="0.0.0.0", port=8000)
