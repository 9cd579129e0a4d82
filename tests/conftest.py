"""Shared fixtures and test doubles for the scheduler and download queue tests."""

import asyncio
import base64
from typing import Dict, List, Optional

import pytest

from batch_imagegen.backends import GenerationBackend
from batch_imagegen.events import NotificationBus
from batch_imagegen.models import BatchTaskConfig, GenerationResponse, ModelFamily
from batch_imagegen.saver import ArtifactSaver, DownloadError
from batch_imagegen.store import MemoryTaskStore


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


def fake_image(prompt: str) -> str:
    """Data URL standing in for a generated image."""
    payload = base64.b64encode(f"png:{prompt}".encode()).decode("ascii")
    return f"data:image/png;base64,{payload}"


class FakeBackend(GenerationBackend):
    """Scripted backend recording call order and peak concurrency.

    ``outcomes`` maps a prompt to the results of its successive calls; an
    exception instance is raised, a string is returned as the image ref.
    Once a prompt's script is used up the call succeeds. ``gates`` holds
    events a call waits on before resolving.
    """

    family = ModelFamily.OPENAI

    def __init__(self, outcomes: Optional[Dict[str, list]] = None, delay: float = 0.0,
                 delays: Optional[Dict[str, float]] = None):
        self.outcomes = {prompt: list(script) for prompt, script in (outcomes or {}).items()}
        self.delay = delay
        self.delays = delays or {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.completed: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, request):
        self.calls.append(request.prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            gate = self.gates.get(request.prompt)
            if gate is not None:
                await gate.wait()
            await asyncio.sleep(self.delays.get(request.prompt, self.delay))
            script = self.outcomes.get(request.prompt)
            outcome = script.pop(0) if script else fake_image(request.prompt)
            if isinstance(outcome, Exception):
                raise outcome
            self.completed.append(request.prompt)
            return GenerationResponse(image_ref=outcome)
        finally:
            self.in_flight -= 1


class FakeSaver(ArtifactSaver):
    """Saver that records writes; ``failures`` maps a source to how many times it fails."""

    def __init__(self, failures: Optional[Dict[str, int]] = None, delay: float = 0.0,
                 error: Optional[Exception] = None):
        self.failures = dict(failures or {})
        self.delay = delay
        self.error = error
        self.attempts: Dict[str, int] = {}
        self.saved: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def save(self, source, destination, progress=None):
        self.attempts[source] = self.attempts.get(source, 0) + 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.failures.get(source, 0) > 0:
                self.failures[source] -= 1
                raise self.error or DownloadError("connection reset")
            if progress:
                progress(50, 100, 1000.0)
                progress(100, 100, 2000.0)
            path = f"/saved/{destination}"
            self.saved.append(path)
            return path
        finally:
            self.in_flight -= 1


async def drain(rounds: int = 10) -> None:
    """Give scheduled callbacks a few loop iterations to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return MemoryTaskStore()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def fake_saver():
    return FakeSaver


@pytest.fixture
def image_for():
    return fake_image


@pytest.fixture
def settle():
    return drain


@pytest.fixture
def task_config():
    """Factory for task configs with fast retries."""

    def _make(**overrides) -> BatchTaskConfig:
        values = dict(model="test-model", model_family=ModelFamily.OPENAI, concurrent_limit=2,
                      retry_attempts=0, retry_delay_ms=0, auto_download=False)
        values.update(overrides)
        return BatchTaskConfig(**values)

    return _make
