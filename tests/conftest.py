"""
Test configuration for hijackwatch tests
"""
import dataclasses
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from hijackwatch.core.config import load_settings
from hijackwatch.db.store import FingerprintDB
from hijackwatch.utils.helpers import now

TEST_USER = "user-1"

MAC_CHROME = {"os": "Mac OS", "browser": "Chrome", "screen_res": "1920x1080", "timezone": "America/New_York"}
WIN_FIREFOX = {"os": "Windows", "browser": "Firefox", "screen_res": "1366x768", "timezone": "Europe/London"}


def chat_response(content=None, tool_calls=None, refusal=None):
    """Minimal stand-in for an openai ChatCompletion"""
    message = SimpleNamespace(content=content, tool_calls=tool_calls, refusal=refusal)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


def verdict_response(confidence_score, reasoning="test reasoning"):
    return chat_response(json.dumps({"confidenceScore": confidence_score, "reasoning": reasoning}))


def fake_openai_client(response=None, side_effect=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


@pytest.fixture
def settings(tmp_path):
    """Defaults with a throwaway db and a dummy key"""
    return dataclasses.replace(
        load_settings(),
        db_path=str(tmp_path / "hijackwatch-test.db"),
        llm_api_key="test-key",
        llm_model="test-model",
        llm_timeout_seconds=5,
        model_picker_enabled=False,
    )


@pytest_asyncio.fixture
async def db(settings):
    store = FingerprintDB(settings.db_path)
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def session_id(db):
    return await db.create_session(TEST_USER, expires_at=now() + 3600)
