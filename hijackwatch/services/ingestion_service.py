"""
Ingestion Service - records fingerprint observations and triggers detection
"""
import logging
from typing import Any, Dict, Optional, Union

import aiosqlite
from fastapi import BackgroundTasks
from pydantic import BaseModel, Field, ValidationError

from hijackwatch.core.config import Settings
from hijackwatch.core.errors import (AlreadyAdjudicated, DetectionFailure, EventNotFound,
                                     InvalidPayload, SessionNotFound, Unauthorized)
from hijackwatch.db.store import FingerprintDB
from hijackwatch.models.models import DetectionEvent, FingerprintAttributes, SessionOverview
from hijackwatch.services.adjudicator import Adjudicator, run_adjudication
from hijackwatch.services.detection_service import DetectionService

log = logging.getLogger(__name__)


class FingerprintPayload(BaseModel):
    """Body posted by the capture widget"""
    visitorId: str = Field(min_length=1)
    requestId: str = Field(min_length=1)
    os: Optional[str] = None
    browser: Optional[str] = None
    screenRes: Optional[str] = None
    timezone: Optional[str] = None
    modelOverride: Optional[str] = None


class RerunRequest(BaseModel):
    """Optional body of an operator re-run"""
    modelOverride: Optional[str] = None


class IngestionService:
    """Service class for fingerprint ingestion and the monitoring read side"""

    def __init__(self, db: FingerprintDB, detection: DetectionService,
                 adjudicator: Adjudicator, settings: Settings):
        self.db = db
        self.detection = detection
        self.adjudicator = adjudicator
        self.settings = settings

    async def _require_session(self, user_id: Optional[str]) -> Dict[str, Any]:
        if not user_id:
            raise Unauthorized()
        session = await self.db.get_active_session_for_user(user_id)
        if not session:
            log.warning("No durable session for user %s", user_id)
            raise SessionNotFound()
        return session

    async def record(self, user_id: Optional[str], body: Union[bytes, str, Dict[str, Any]],
                     ip: Optional[str], user_agent: Optional[str],
                     background: BackgroundTasks) -> Dict[str, Any]:
        """
        Persist one observation and run detection against the session's original.
        `body` is the raw JSON request body or an already-decoded dict.
        Adjudication, if needed, is queued on `background` and runs after the response.
        """
        session = await self._require_session(user_id)
        session_id = session["session_id"]

        try:
            if isinstance(body, (bytes, str)):
                payload = FingerprintPayload.model_validate_json(body or b"null")
            else:
                payload = FingerprintPayload.model_validate(body)
        except ValidationError as e:
            log.info("Rejected fingerprint payload for session %s: %s", session_id[:8], e.errors())
            raise InvalidPayload()

        existing = await self.db.get_fingerprint_by_request_id(payload.requestId)
        if existing:
            log.info("Duplicate capture request_id=%s -> fingerprint %s", payload.requestId, existing.id)
            return {"status": "duplicate", "id": existing.id}

        try:
            fingerprint = await self.db.insert_fingerprint(
                session_id=session_id,
                visitor_id=payload.visitorId,
                request_id=payload.requestId,
                ip=ip,
                user_agent=user_agent,
                os=payload.os,
                browser=payload.browser,
                screen_res=payload.screenRes,
                timezone=payload.timezone,
            )
        except aiosqlite.IntegrityError:
            # A concurrent submission of the same capture won the insert
            existing = await self.db.get_fingerprint_by_request_id(payload.requestId)
            if existing is None:
                raise
            return {"status": "duplicate", "id": existing.id}

        log.info("Fingerprint %s recorded session=%s visitor=%s original=%s ip=%s",
                 fingerprint.id, session_id[:8], payload.visitorId, fingerprint.is_original, ip)

        attributes = FingerprintAttributes(os=payload.os, browser=payload.browser,
                                           screen_res=payload.screenRes, timezone=payload.timezone)
        try:
            result = await self.detection.detect(session_id, payload.visitorId, ip, attributes)
        except DetectionFailure as e:
            # The fingerprint stays recorded and the client still gets ok
            log.error("DETECTION_FAILURE session=%s fingerprint=%s: %s", session_id, fingerprint.id, e)
            return {"status": "ok", "id": fingerprint.id, "detected": False, "eventId": None}

        if result.detected and result.event_id:
            model_override = payload.modelOverride if self.settings.model_picker_enabled else None
            if payload.modelOverride and not self.settings.model_picker_enabled:
                log.info("Ignoring model override %r; model picker disabled", payload.modelOverride)
            background.add_task(run_adjudication, self.adjudicator, result.event_id, model_override)

        return {
            "status": "ok",
            "id": fingerprint.id,
            "detected": result.detected,
            "eventId": result.event_id,
        }

    # --- monitoring read side ----------------------------------------------

    async def list_sessions(self, user_id: Optional[str]) -> list:
        """Unexpired sessions with de-duplicated fingerprint history and latest event"""
        if not user_id:
            raise Unauthorized()
        out = []
        for s in await self.db.list_sessions_for_user(user_id):
            seen = set()
            unique = []
            for fp in await self.db.list_fingerprints(s["session_id"]):
                if fp.visitor_id in seen:
                    continue
                seen.add(fp.visitor_id)
                unique.append(fp)
            overview = SessionOverview(
                session_id=s["session_id"],
                expires_at=s["expires_at"],
                fingerprints=unique,
                latest_event=await self.db.latest_detection_event(s["session_id"]),
            )
            out.append(overview.to_dict())
        return out

    async def get_event(self, user_id: Optional[str], event_id: str) -> DetectionEvent:
        if not user_id:
            raise Unauthorized()
        event = await self.db.get_detection_event_for_user(event_id, user_id)
        if event is None:
            raise EventNotFound()
        return event

    async def rerun_adjudication(self, user_id: Optional[str], event_id: str,
                                 model_override: Optional[str],
                                 background: BackgroundTasks) -> Dict[str, Any]:
        """Operator retry for an event left PENDING by a failed attempt"""
        event = await self.get_event(user_id, event_id)
        if event.status.is_terminal:
            raise AlreadyAdjudicated()
        override = model_override if self.settings.model_picker_enabled else None
        background.add_task(run_adjudication, self.adjudicator, event_id, override)
        log.info("Re-adjudication scheduled for event %s (attempts so far: %d)",
                 event_id, event.adjudication_attempts)
        return {"status": "scheduled", "eventId": event_id}
