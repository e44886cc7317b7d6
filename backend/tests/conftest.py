"""
Pytest configuration and fixtures for CountCam tests.
"""
import asyncio
import os
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Never talk to the real model from tests
os.environ.pop("GOOGLE_API_KEY", None)

from countcam.database import HistoryStore, get_history_store
from countcam.main import app
from countcam.visitors.exceptions import ModelOutputError
from countcam.visitors.schemas import CountResult, Direction
from countcam.visitors.service import get_visitor_counter


class FakeVisitorCounter:
    """Stands in for the Gemini client; replays queued outcomes in order."""

    def __init__(self):
        self.outcomes = []
        self.calls = []

    def returns(self, visitor_count, counted_direction=None):
        self.outcomes.append((visitor_count, counted_direction))
        return self

    def fails(self, message="Model did not return valid structured output or was blocked.", details=None):
        self.outcomes.append(ModelOutputError(message, details))
        return self

    async def count_visitors(self, video_data_uri, direction):
        self.calls.append((video_data_uri, direction))
        outcome = self.outcomes.pop(0) if self.outcomes else (0, None)
        if isinstance(outcome, Exception):
            raise outcome
        visitor_count, counted_direction = outcome
        counted = Direction(counted_direction) if counted_direction else direction
        return CountResult(
            visitor_count=visitor_count,
            counted_direction=counted,
            requested_direction=direction,
            direction_mismatch=counted != direction,
        )


def gemini_response(text=None, finish_reason="STOP", safety_ratings=None, block_reason=None):
    """Minimal object shaped like a google-genai GenerateContentResponse."""
    parts = [SimpleNamespace(text=text)] if text is not None else []
    candidates = [
        SimpleNamespace(
            content=SimpleNamespace(parts=parts),
            finish_reason=finish_reason,
            safety_ratings=safety_ratings,
        )
    ] if finish_reason is not None else []
    prompt_feedback = SimpleNamespace(block_reason=block_reason) if block_reason else None
    return SimpleNamespace(candidates=candidates, prompt_feedback=prompt_feedback)


class FakeGenaiClient:
    """Mimics ``genai.Client().aio.models.generate_content``."""

    def __init__(self, response=None, error=None, delay=0):
        self.response = response
        self.error = error
        self.delay = delay
        self.requests = []
        self.aio = SimpleNamespace(models=SimpleNamespace(generate_content=self._generate_content))

    async def _generate_content(self, **kwargs):
        self.requests.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def store(tmp_path):
    """History store backed by a throwaway SQLite file."""
    history_store = HistoryStore(f"sqlite:///{tmp_path / 'test_visitor_logs.db'}")
    history_store.init()
    yield history_store
    history_store.shutdown()


@pytest.fixture
def fake_counter():
    return FakeVisitorCounter()


@pytest_asyncio.fixture
async def client(store, fake_counter):
    """Async HTTP client with the store and model client injected."""
    app.dependency_overrides[get_history_store] = lambda: store
    app.dependency_overrides[get_visitor_counter] = lambda: fake_counter
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def video_bytes():
    return b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64
