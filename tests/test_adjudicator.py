"""
Tests for model adjudication of detection events
"""
import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from hijackwatch.core.config import load_settings
from hijackwatch.core.errors import AdjudicationError, UnexpectedResponseShape
from hijackwatch.models.models import EventStatus, FingerprintAttributes
from hijackwatch.services.adjudicator import (Adjudicator, ModelReply, build_messages,
                                              classify_response, parse_verdict,
                                              run_adjudication, status_for_confidence)
from hijackwatch.services.detection_service import DetectionService

from conftest import MAC_CHROME, WIN_FIREFOX, chat_response, fake_openai_client, verdict_response


async def _pending_event(db, session_id, new_attrs=WIN_FIREFOX, new_visitor="fp-new", new_ip="9.9.9.9"):
    await db.insert_fingerprint(session_id=session_id, visitor_id="fp-original", request_id="req-1",
                                ip="1.2.3.4", user_agent="Mozilla/5.0 (Macintosh)", **MAC_CHROME)
    await db.insert_fingerprint(session_id=session_id, visitor_id=new_visitor, request_id="req-2",
                                ip=new_ip, user_agent="Mozilla/5.0 (Windows NT 10.0)", **new_attrs)
    result = await DetectionService(db).detect(session_id, new_visitor, new_ip,
                                               FingerprintAttributes(**new_attrs))
    return result.event_id


class TestStatusMapping:

    def test_boundary_seventy_is_flagged(self):
        assert status_for_confidence(70) is EventStatus.FLAGGED

    def test_boundary_sixty_nine_is_clear(self):
        assert status_for_confidence(69) is EventStatus.CLEAR

    def test_threshold_ignores_settings(self, tmp_path):
        path = tmp_path / "hijackwatch.yaml"
        path.write_text("llm:\n  flag_threshold: 95\n", encoding="utf-8")
        settings = load_settings(str(path))
        assert not hasattr(settings, "flag_threshold")
        assert status_for_confidence(92) is EventStatus.FLAGGED

    def test_extremes(self):
        assert status_for_confidence(0) is EventStatus.CLEAR
        assert status_for_confidence(100) is EventStatus.FLAGGED


class TestResponseParsing:
    """Tagged classification and strict parsing of the model reply"""

    def test_text_reply(self):
        reply = classify_response(verdict_response(92, "different device"))
        assert reply.kind == "text"
        assert parse_verdict(reply) == (92, "different device")

    def test_tool_call_reply_rejected(self):
        response = chat_response(tool_calls=[SimpleNamespace(id="call-1", type="function")])
        reply = classify_response(response)
        assert reply.kind == "tool_call"
        with pytest.raises(UnexpectedResponseShape, match="tool_call"):
            parse_verdict(reply)

    def test_refusal_reply_rejected(self):
        reply = classify_response(chat_response(refusal="I can't help with that"))
        assert reply.kind == "refusal"
        with pytest.raises(UnexpectedResponseShape):
            parse_verdict(reply)

    def test_empty_reply_rejected(self):
        assert classify_response(SimpleNamespace(choices=[])).kind == "empty"
        assert classify_response(chat_response(content="")).kind == "empty"

    @pytest.mark.parametrize("text", [
        "not json",
        json.dumps([1, 2]),
        json.dumps({"reasoning": "missing score"}),
        json.dumps({"confidenceScore": "92", "reasoning": "string score"}),
        json.dumps({"confidenceScore": 92.5, "reasoning": "float score"}),
        json.dumps({"confidenceScore": True, "reasoning": "bool score"}),
        json.dumps({"confidenceScore": 101, "reasoning": "out of range"}),
        json.dumps({"confidenceScore": -1, "reasoning": "out of range"}),
        json.dumps({"confidenceScore": 50}),
    ])
    def test_malformed_text_rejected(self, text):
        with pytest.raises(UnexpectedResponseShape):
            parse_verdict(ModelReply("text", text))


class TestPrompt:

    async def test_prompt_carries_both_fingerprints_and_score(self, db, session_id):
        event_id = await _pending_event(db, session_id)
        event = await db.get_detection_event(event_id)
        history = await db.list_fingerprints(session_id)

        messages = build_messages(event, history[0], history[1])

        assert messages[0]["role"] == "system"
        assert "incognito" in messages[0]["content"]
        user = messages[1]["content"]
        for expected in ("fp-original", "fp-new", "1.2.3.4", "9.9.9.9", "Mac OS", "Windows",
                         "Chrome", "Firefox", "1920x1080", "1366x768", "America/New_York",
                         "Europe/London", "Mozilla/5.0 (Windows NT 10.0)", "0.00"):
            assert expected in user

    async def test_prompt_falls_back_to_snapshot(self, db, session_id):
        event_id = await _pending_event(db, session_id)
        event = await db.get_detection_event(event_id)

        user = build_messages(event, None, None)[1]["content"]

        assert "fp-original" in user and "1.2.3.4" in user
        assert "fp-new" in user and "9.9.9.9" in user
        assert "unknown" in user


class TestAdjudicator:
    """Adjudication lifecycle against a stubbed model client"""

    async def test_missing_event_returns_silently(self, db, settings):
        client = fake_openai_client(verdict_response(90))
        result = await Adjudicator(db, client, settings).adjudicate("nonexistent-id")
        assert result is None
        client.chat.completions.create.assert_not_called()

    async def test_high_confidence_flags_event(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)
        client = fake_openai_client(verdict_response(92, "Different OS, browser, screen and timezone."))

        verdict = await Adjudicator(db, client, settings).adjudicate(event_id)

        assert verdict.status is EventStatus.FLAGGED
        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.FLAGGED
        assert event.confidence_score == 92
        assert "Different OS" in event.reasoning
        assert event.model == "test-model"
        assert event.adjudication_attempts == 1
        client.chat.completions.create.assert_awaited_once()

    async def test_low_confidence_clears_event(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id, new_attrs=MAC_CHROME, new_visitor="fp-incognito",
                                        new_ip="1.2.3.4")
        client = fake_openai_client(verdict_response(25, "Likely incognito on the same device."))

        await Adjudicator(db, client, settings).adjudicate(event_id)

        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.CLEAR
        assert event.confidence_score == 25

    @pytest.mark.parametrize("score,expected", [(70, EventStatus.FLAGGED), (69, EventStatus.CLEAR)])
    async def test_threshold_boundary(self, db, session_id, settings, score, expected):
        event_id = await _pending_event(db, session_id)
        await Adjudicator(db, fake_openai_client(verdict_response(score)), settings).adjudicate(event_id)
        assert (await db.get_detection_event(event_id)).status is expected

    async def test_request_shape(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)
        client = fake_openai_client(verdict_response(50))

        await Adjudicator(db, client, settings).adjudicate(event_id)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        fmt = kwargs["response_format"]
        assert fmt["type"] == "json_schema"
        schema = fmt["json_schema"]["schema"]
        assert schema["required"] == ["confidenceScore", "reasoning"]
        assert schema["properties"]["confidenceScore"]["type"] == "integer"

    async def test_model_override_used(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)
        client = fake_openai_client(verdict_response(50))

        await Adjudicator(db, client, settings).adjudicate(event_id, "override-model")

        assert client.chat.completions.create.call_args.kwargs["model"] == "override-model"
        assert (await db.get_detection_event(event_id)).model == "override-model"

    async def test_unexpected_shape_leaves_event_pending(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)
        client = fake_openai_client(chat_response(tool_calls=[SimpleNamespace(id="tool-1")]))

        with pytest.raises(UnexpectedResponseShape, match="Unexpected model response type"):
            await Adjudicator(db, client, settings).adjudicate(event_id)

        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.PENDING
        assert event.confidence_score is None
        assert event.adjudication_attempts == 1
        assert "tool_call" in event.last_error

    async def test_timeout_leaves_event_pending(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)

        async def hang(**kwargs):
            await asyncio.sleep(10)

        client = fake_openai_client(side_effect=hang)
        settings.llm_timeout_seconds = 0.05

        with pytest.raises(AdjudicationError, match="timed out"):
            await Adjudicator(db, client, settings).adjudicate(event_id)

        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.PENDING
        assert event.adjudication_attempts == 1

    async def test_terminal_event_never_overwritten(self, db, session_id, settings):
        event_id = await _pending_event(db, session_id)
        await Adjudicator(db, fake_openai_client(verdict_response(92)), settings).adjudicate(event_id)

        second_client = fake_openai_client(verdict_response(10))
        verdict = await Adjudicator(db, second_client, settings).adjudicate(event_id)

        assert verdict.applied is False
        second_client.chat.completions.create.assert_not_called()
        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.FLAGGED
        assert event.confidence_score == 92

    async def test_conditional_update_blocks_second_transition(self, db, session_id):
        event_id = await _pending_event(db, session_id)
        assert await db.finalize_detection_event(event_id, 92, "first", EventStatus.FLAGGED, "m") is True
        assert await db.finalize_detection_event(event_id, 10, "second", EventStatus.CLEAR, "m") is False
        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.FLAGGED
        assert event.reasoning == "first"

    async def test_run_adjudication_swallows_and_logs(self, db, session_id, settings, caplog):
        event_id = await _pending_event(db, session_id)
        client = fake_openai_client(chat_response(content="not json"))

        await run_adjudication(Adjudicator(db, client, settings), event_id)

        assert "Adjudication failed for event" in caplog.text
        assert (await db.get_detection_event(event_id)).status is EventStatus.PENDING


class TestModelClient:
    """The lazily built openai client"""

    def test_sdk_retries_disabled(self, db, settings):
        assert Adjudicator(db, settings=settings).client.max_retries == 0

    async def test_one_http_request_per_attempt(self, db, session_id, settings):
        requests = []

        def server_error(request):
            requests.append(request)
            return httpx.Response(500, json={"error": {"message": "upstream exploded"}})

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(server_error))
        event_id = await _pending_event(db, session_id)
        adjudicator = Adjudicator(db, settings=settings, http_client=http_client)

        with pytest.raises(AdjudicationError, match="Model call failed"):
            await adjudicator.adjudicate(event_id)
        await http_client.aclose()

        assert len(requests) == 1
        assert requests[0].url.path.endswith("/chat/completions")
        event = await db.get_detection_event(event_id)
        assert event.status is EventStatus.PENDING
        assert event.adjudication_attempts == 1
