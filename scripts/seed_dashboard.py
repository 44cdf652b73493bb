# scripts/seed_dashboard.py
"""
Seed demo sessions for the monitoring view.

Usage: python scripts/seed_dashboard.py <user_id> [db_path]

Creates five sessions for the user: two FLAGGED, one CLEAR, one PENDING and
one ACTIVE (fingerprints only, no detection event).
"""
import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from hijackwatch.core.config import load_settings
from hijackwatch.db.store import FingerprintDB
from hijackwatch.models.models import EventStatus
from hijackwatch.utils.helpers import now

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
log = logging.getLogger("seed")

WEEK = 7 * 24 * 60 * 60

SEED_SESSIONS = [
    {
        "label": "flagged",
        "original": {
            "visitor_id": "abc123def456gh", "ip": "203.0.113.42",
            "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/537.36 Chrome/126.0.0.0 Safari/537.36",
            "os": "Mac OS", "browser": "Chrome", "screen_res": "1920x1080", "timezone": "America/New_York",
        },
        "event": {
            "new_visitor_id": "xyz789qrs012tu", "new_ip": "198.51.100.77", "similarity_score": 0.25,
            "status": EventStatus.FLAGGED, "confidence_score": 92,
            "reasoning": "Different visitor ID and IP with low attribute similarity (0.25) across OS, browser, "
                         "timezone and screen resolution. The US East Coast IP moved to a European range. "
                         "Consistent with a stolen session cookie replayed from another device.",
        },
    },
    {
        "label": "clear",
        "original": {
            "visitor_id": "mno345pqr678st", "ip": "192.0.2.10",
            "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/605.1.15 Safari/605.1.15",
            "os": "Mac OS", "browser": "Safari", "screen_res": "2560x1440", "timezone": "America/Chicago",
        },
        "event": {
            "new_visitor_id": "mno345pqr999zz", "new_ip": "192.0.2.11", "similarity_score": 0.85,
            "status": EventStatus.CLEAR, "confidence_score": 22,
            "reasoning": "OS, browser, timezone and screen resolution all match. The IPs share a /24, "
                         "suggesting DHCP reassignment. Consistent with fingerprint drift on the same device.",
        },
    },
    {
        "label": "pending",
        "original": {
            "visitor_id": "jkl901uvw234xy", "ip": "10.0.0.55",
            "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0.0.0 Safari/537.36",
            "os": "Windows", "browser": "Chrome", "screen_res": "1366x768", "timezone": "Europe/London",
        },
        "event": {
            "new_visitor_id": "aaa111bbb222cc", "new_ip": "172.16.0.99", "similarity_score": 0.45,
            "status": EventStatus.PENDING,
        },
    },
    {
        "label": "active",
        "original": {
            "visitor_id": "def456ghi789jk", "ip": "100.64.0.1",
            "user_agent": "Mozilla/5.0 (iPhone; CPU iPhone OS 17_5 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148 Safari/604.1",
            "os": "iOS", "browser": "Safari", "screen_res": "390x844", "timezone": "America/Los_Angeles",
        },
        "event": None,
    },
    {
        "label": "flagged2",
        "original": {
            "visitor_id": "qqq555rrr888ss", "ip": "151.101.1.140",
            "user_agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/125.0.0.0 Safari/537.36",
            "os": "Linux", "browser": "Chrome", "screen_res": "1920x1200", "timezone": "Asia/Tokyo",
        },
        "event": {
            "new_visitor_id": "zzz000www111vv", "new_ip": "45.33.32.156", "similarity_score": 0.10,
            "status": EventStatus.FLAGGED, "confidence_score": 97,
            "reasoning": "Original session from Linux in Asia/Tokyo; new request from a different visitor ID "
                         "with a US IP and no overlap in OS, timezone or screen resolution.",
        },
    },
]


async def _seed_one(db: FingerprintDB, user_id: str, seed: Dict[str, Any]) -> str:
    stamp = now()
    sid = await db.create_session(user_id, expires_at=stamp + WEEK,
                                  session_token=f"seed-{seed['label']}-{stamp}")
    orig = seed["original"]
    await db.insert_fingerprint(session_id=sid, request_id=f"req-{seed['label']}-orig-{stamp}", **orig)

    event: Optional[Dict[str, Any]] = seed["event"]
    if event:
        async with db.transaction() as tx:
            eid = await db.create_detection_event(
                tx, session_id=sid,
                original_visitor_id=orig["visitor_id"], original_ip=orig["ip"],
                new_visitor_id=event["new_visitor_id"], new_ip=event["new_ip"],
                similarity_score=event["similarity_score"],
            )
        if event["status"].is_terminal:
            await db.finalize_detection_event(eid, event["confidence_score"], event["reasoning"],
                                              event["status"], model="seed")
    log.info("Created %s session: %s", seed["label"].upper(), sid)
    return sid


async def main(user_id: str, db_path: Optional[str] = None) -> None:
    db = FingerprintDB()
    await db.init(db_path or load_settings().db_path)
    try:
        for seed in SEED_SESSIONS:
            await _seed_one(db, user_id, seed)
    finally:
        await db.close()
    log.info("Done! %d test sessions created (2 FLAGGED, 1 CLEAR, 1 PENDING, 1 ACTIVE)", len(SEED_SESSIONS))


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(sys.argv[1], sys.argv[2] if len(sys.argv) > 2 else None))
