"""
Domain Models and Data Structures
"""
from enum import Enum
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field


class EventStatus(str, Enum):
    """Persisted lifecycle of a DetectionEvent"""
    PENDING = "PENDING"
    FLAGGED = "FLAGGED"
    CLEAR = "CLEAR"

    @property
    def is_terminal(self) -> bool:
        return self is not EventStatus.PENDING


# Derived display state for a session with fingerprints but no detection event.
# Never persisted.
ACTIVE = "ACTIVE"


@dataclass
class FingerprintAttributes:
    """Coarse device attributes compared by the similarity scorer"""
    os: Optional[str] = None
    browser: Optional[str] = None
    screen_res: Optional[str] = None
    timezone: Optional[str] = None


SIMILARITY_FIELDS = ("os", "browser", "screen_res", "timezone")


@dataclass
class Fingerprint:
    """One observation of device attributes tied to a session"""
    id: str
    session_id: str
    visitor_id: str
    request_id: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    screen_res: Optional[str] = None
    timezone: Optional[str] = None
    is_original: bool = False
    created_at: Optional[int] = None

    @property
    def attributes(self) -> FingerprintAttributes:
        return FingerprintAttributes(os=self.os, browser=self.browser,
                                     screen_res=self.screen_res, timezone=self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "visitorId": self.visitor_id,
            "ip": self.ip,
            "userAgent": self.user_agent,
            "os": self.os,
            "browser": self.browser,
            "screenRes": self.screen_res,
            "timezone": self.timezone,
            "isOriginal": self.is_original,
            "createdAt": self.created_at,
        }


@dataclass
class DetectionEvent:
    """A hijack-suspicion record with snapshots of both compared fingerprints"""
    id: str
    session_id: str
    original_visitor_id: str
    new_visitor_id: str
    original_ip: Optional[str]
    new_ip: Optional[str]
    similarity_score: float
    status: EventStatus = EventStatus.PENDING
    confidence_score: Optional[int] = None
    reasoning: Optional[str] = None
    model: Optional[str] = None
    adjudication_attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "originalVisitorId": self.original_visitor_id,
            "newVisitorId": self.new_visitor_id,
            "originalIp": self.original_ip,
            "newIp": self.new_ip,
            "similarityScore": self.similarity_score,
            "status": self.status.value,
            "confidenceScore": self.confidence_score,
            "reasoning": self.reasoning,
            "model": self.model,
            "adjudicationAttempts": self.adjudication_attempts,
            "lastError": self.last_error,
            "createdAt": self.created_at,
        }


@dataclass
class DetectionResult:
    """Outcome of a single detection pass"""
    detected: bool
    event_id: Optional[str] = None


@dataclass
class Verdict:
    """Parsed reasoning-model result"""
    confidence_score: int
    reasoning: str
    status: EventStatus
    model: str
    applied: bool = True  # False when the event was already terminal


@dataclass
class SessionOverview:
    """Monitoring row: one session with its fingerprint history and latest event"""
    session_id: str
    expires_at: Optional[int]
    fingerprints: List[Fingerprint] = field(default_factory=list)
    latest_event: Optional[DetectionEvent] = None

    @property
    def display_status(self) -> str:
        return self.latest_event.status.value if self.latest_event else ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "expiresAt": self.expires_at,
            "status": self.display_status,
            "fingerprints": [fp.to_dict() for fp in self.fingerprints],
            "detectionEvent": self.latest_event.to_dict() if self.latest_event else None,
        }
