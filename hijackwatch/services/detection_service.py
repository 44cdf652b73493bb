"""
Detection Service - compares a new observation with the session's original fingerprint
"""
import logging
import sqlite3
from typing import Optional

from hijackwatch.core.errors import DetectionFailure
from hijackwatch.db.store import DB, FingerprintDB
from hijackwatch.models.models import DetectionResult, FingerprintAttributes
from hijackwatch.services.similarity import compute_similarity

log = logging.getLogger(__name__)


class DetectionService:
    """
    Decides whether a new fingerprint conflicts with the session's original.

    The triggering fingerprint must already be persisted. A visitor-id change is
    necessary but not sufficient evidence of a hijack (private browsing and
    provider upgrades rotate it too), so this never issues a verdict: it only
    records a PENDING event carrying the similarity score for adjudication.
    """

    def __init__(self, db: Optional[FingerprintDB] = None):
        self.db = db or DB

    async def detect(self, session_id: str, new_visitor_id: str, new_ip: Optional[str],
                     attributes: FingerprintAttributes) -> DetectionResult:
        try:
            async with self.db.transaction() as tx:
                original = await self.db.get_original_fingerprint(session_id, tx=tx)
                if original is None:
                    log.debug("No original fingerprint for session %s", session_id[:8])
                    return DetectionResult(detected=False)

                if original.visitor_id == new_visitor_id:
                    return DetectionResult(detected=False)

                score = compute_similarity(original.attributes, attributes)
                event_id = await self.db.create_detection_event(
                    tx,
                    session_id=session_id,
                    original_visitor_id=original.visitor_id,
                    original_ip=original.ip,
                    new_visitor_id=new_visitor_id,
                    new_ip=new_ip,
                    similarity_score=score,
                )
        except (sqlite3.Error, ValueError) as e:
            # ValueError: aiosqlite connection closed underneath us
            raise DetectionFailure(f"Detection transaction failed for session {session_id}: {e}") from e

        log.warning("Visitor mismatch on session %s: %s -> %s (similarity=%.2f) event=%s",
                    session_id[:8], original.visitor_id, new_visitor_id, score, event_id)
        return DetectionResult(detected=True, event_id=event_id)

