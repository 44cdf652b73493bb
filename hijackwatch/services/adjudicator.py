"""
Adjudicator - resolves PENDING detection events with a reasoning model

Formats the two compared fingerprints into a prompt, asks the model for a
structured {confidenceScore, reasoning} verdict and applies the single
PENDING -> FLAGGED/CLEAR transition.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from hijackwatch.core.config import Settings, load_settings
from hijackwatch.core.errors import AdjudicationError, UnexpectedResponseShape
from hijackwatch.db.store import DB, FingerprintDB
from hijackwatch.models.models import DetectionEvent, EventStatus, Fingerprint, Verdict
from hijackwatch.services.similarity import describe_differences

log = logging.getLogger(__name__)

FLAG_THRESHOLD = 70

SYSTEM_PROMPT = (
    "You are a security analysis system that detects session-cookie hijacking. "
    "You are given two browser fingerprints observed on the SAME session credential: "
    "the original fingerprint recorded when the session began, and a new one whose "
    "visitor identifier differs. Legitimate use of several devices is not in play here, "
    "because every device signs in and holds its own session credential. One credential "
    "seen from two distinct physical devices is the hijack signal.\n\n"
    "Indicators of a hijack (a different physical device):\n"
    "- different operating system family\n"
    "- different browser family\n"
    "- a materially different screen class (e.g. phone vs. desktop resolution)\n"
    "- a divergent timezone together with an IP address from a different network or region\n\n"
    "Benign explanations (the same device):\n"
    "- private/incognito browsing on the same browser, which rotates the visitor identifier\n"
    "- browser or extension updates that change the identifier or user-agent version\n"
    "- VPN reconnects or DHCP reassignment that change the IP while device attributes match\n\n"
    "Return a confidence score from 0 (definitely legitimate) to 100 (definitely a hijack) "
    "and a short justification that names the attributes that drove the score."
)

VERDICT_SCHEMA: Dict[str, Any] = {
    "name": "hijack_verdict",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "confidenceScore": {
                "type": "integer",
                "minimum": 0,
                "maximum": 100,
                "description": "0 = definitely not a hijack, 100 = definitely a hijack",
            },
            "reasoning": {
                "type": "string",
                "description": "Human-readable explanation of the confidence score",
            },
        },
        "required": ["confidenceScore", "reasoning"],
        "additionalProperties": False,
    },
}


@dataclass
class ModelReply:
    """Tagged view of a chat completion: kind is text, tool_call, refusal or empty"""
    kind: str
    text: Optional[str] = None


def classify_response(response: Any) -> ModelReply:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ModelReply("empty")
    message = getattr(choices[0], "message", None)
    if message is None:
        return ModelReply("empty")
    if getattr(message, "tool_calls", None):
        return ModelReply("tool_call")
    if getattr(message, "refusal", None):
        return ModelReply("refusal", message.refusal)
    content = getattr(message, "content", None)
    if isinstance(content, str) and content.strip():
        return ModelReply("text", content)
    return ModelReply("empty")


def parse_verdict(reply: ModelReply) -> tuple:
    """Strictly parse (confidenceScore, reasoning) from a text reply"""
    if reply.kind != "text":
        raise UnexpectedResponseShape(f"Unexpected model response type: {reply.kind}")
    try:
        data = json.loads(reply.text)
    except (TypeError, ValueError) as e:
        raise UnexpectedResponseShape(f"Model reply is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UnexpectedResponseShape("Model reply is not a JSON object")

    score = data.get("confidenceScore")
    reasoning = data.get("reasoning")
    # bool is an int subclass
    if isinstance(score, bool) or not isinstance(score, int):
        raise UnexpectedResponseShape(f"confidenceScore is not an integer: {score!r}")
    if not 0 <= score <= 100:
        raise UnexpectedResponseShape(f"confidenceScore out of range: {score}")
    if not isinstance(reasoning, str):
        raise UnexpectedResponseShape("reasoning is missing or not a string")
    return score, reasoning.strip()


def status_for_confidence(confidence_score: int) -> EventStatus:
    return EventStatus.FLAGGED if confidence_score >= FLAG_THRESHOLD else EventStatus.CLEAR


def _describe(label: str, fp: Dict[str, Any]) -> str:
    def show(v):
        return v if v not in (None, "") else "unknown"
    return (
        f"{label} fingerprint:\n"
        f"  visitor id: {show(fp.get('visitor_id'))}\n"
        f"  IP: {show(fp.get('ip'))}\n"
        f"  OS: {show(fp.get('os'))}\n"
        f"  browser: {show(fp.get('browser'))}\n"
        f"  screen resolution: {show(fp.get('screen_res'))}\n"
        f"  timezone: {show(fp.get('timezone'))}\n"
        f"  user-agent: {show(fp.get('user_agent'))}\n"
    )


def _as_prompt_fields(fp: Optional[Fingerprint], visitor_id: str, ip: Optional[str]) -> Dict[str, Any]:
    """Row values when the fingerprint is still stored, else the event snapshot"""
    if fp is None:
        return {"visitor_id": visitor_id, "ip": ip}
    return {
        "visitor_id": fp.visitor_id,
        "ip": fp.ip,
        "os": fp.os,
        "browser": fp.browser,
        "screen_res": fp.screen_res,
        "timezone": fp.timezone,
        "user_agent": fp.user_agent,
    }


def build_messages(event: DetectionEvent, original: Optional[Fingerprint],
                   new: Optional[Fingerprint]) -> List[Dict[str, str]]:
    original_fields = _as_prompt_fields(original, event.original_visitor_id, event.original_ip)
    new_fields = _as_prompt_fields(new, event.new_visitor_id, event.new_ip)
    if original is not None and new is not None:
        differences = describe_differences(original.attributes, new.attributes)
    else:
        differences = ["device attributes unavailable for at least one fingerprint"]

    user = (
        f"Session ID: {event.session_id}\n\n"
        + _describe("Original", original_fields) + "\n"
        + _describe("New", new_fields) + "\n"
        + f"Component similarity score: {event.similarity_score:.2f} (0=different, 1=identical)\n"
        + "Attribute differences:\n"
        + ("".join(f"  - {d}\n" for d in differences) if differences else "  - none\n")
        + "\nAnalyze whether this represents a session hijack."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


class Adjudicator:
    """Runs one adjudication per call; the store guarantees a single terminal write"""

    def __init__(self, db: Optional[FingerprintDB] = None, client: Optional[AsyncOpenAI] = None,
                 settings: Optional[Settings] = None, http_client: Any = None):
        self.db = db or DB
        self.settings = settings or load_settings()
        self._client = client
        self._http_client = http_client

    @property
    def client(self) -> AsyncOpenAI:
        # AsyncOpenAI refuses to construct without an api key
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.llm_api_key,
                base_url=self.settings.llm_base_url,
                timeout=self.settings.llm_timeout_seconds,
                # one HTTP request per attempt; attempts are counted on the event
                max_retries=0,
                http_client=self._http_client,
            )
        return self._client

    async def adjudicate(self, event_id: str, model_override: Optional[str] = None) -> Optional[Verdict]:
        """
        Resolve a PENDING event. Returns None when the event no longer exists.
        Raises AdjudicationError (or UnexpectedResponseShape) on model failure;
        the event then stays PENDING with the attempt recorded.
        """
        event = await self.db.get_detection_event(event_id)
        if event is None:
            log.info("Detection event %s no longer exists; nothing to adjudicate", event_id)
            return None
        if event.status.is_terminal:
            log.info("Detection event %s already %s; skipping", event_id, event.status.value)
            return Verdict(confidence_score=event.confidence_score, reasoning=event.reasoning or "",
                           status=event.status, model=event.model or "", applied=False)

        history = await self.db.list_fingerprints(event.session_id)
        original = next((fp for fp in history if fp.is_original), None)
        new = next((fp for fp in reversed(history) if fp.visitor_id == event.new_visitor_id), None)
        if original is None or new is None:
            log.warning("Event %s: fingerprint rows missing (original=%s new=%s); using snapshot fields",
                        event_id, original is not None, new is not None)

        model = model_override or self.settings.llm_model
        messages = build_messages(event, original, new)

        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=self.settings.llm_max_tokens,
                    response_format={"type": "json_schema", "json_schema": VERDICT_SCHEMA},
                ),
                timeout=self.settings.llm_timeout_seconds,
            )
            confidence_score, reasoning = parse_verdict(classify_response(response))
        except UnexpectedResponseShape as e:
            await self.db.record_adjudication_failure(event_id, str(e))
            raise
        except asyncio.TimeoutError as e:
            await self.db.record_adjudication_failure(event_id, "model call timed out")
            raise AdjudicationError(
                f"Model call timed out after {self.settings.llm_timeout_seconds}s") from e
        except OpenAIError as e:
            await self.db.record_adjudication_failure(event_id, str(e))
            raise AdjudicationError(f"Model call failed: {e}") from e

        status = status_for_confidence(confidence_score)
        applied = await self.db.finalize_detection_event(
            event_id, confidence_score, reasoning, status, model)
        if applied:
            log.info("Adjudicated event %s: %s (confidence=%d, model=%s)",
                     event_id, status.value, confidence_score, model)
        else:
            log.warning("Event %s was finalized concurrently; verdict %s not applied",
                        event_id, status.value)
        return Verdict(confidence_score=confidence_score, reasoning=reasoning,
                       status=status, model=model, applied=applied)


async def run_adjudication(adjudicator: Adjudicator, event_id: str,
                           model_override: Optional[str] = None) -> None:
    """Background entry point; errors stop here and the event stays PENDING"""
    try:
        await adjudicator.adjudicate(event_id, model_override)
    except Exception:
        log.exception("Adjudication failed for event %s; event left PENDING", event_id)
