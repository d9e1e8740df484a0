"""
Shared fakes and fixtures for the scenario generation tests.
"""
import asyncio
import random
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from firesim.consistency import ConsistencyValidator
from firesim.costs import CostEstimator, UsageTracker
from firesim.image_generator import ImageGeneratorService
from firesim.orchestrator import GenerationOrchestrator
from firesim.prompts import VIEWPOINT_PERSPECTIVES
from firesim.providers import GenMetadata, GenOptions, GenResult, ProviderError
from firesim.schemas import GenerationRequest
from firesim.state import ProgressStore
from firesim.storage import StorageError

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 256


class InMemoryStorage:
    """Artifact store backed by a dict."""

    def __init__(self, fail_when: Optional[Callable[[str], bool]] = None):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.uploads: List[str] = []
        self.fail_when = fail_when

    def upload(self, key, data, content_type="application/octet-stream", metadata=None):
        self.uploads.append(key)
        if self.fail_when and self.fail_when(key):
            raise StorageError(f"Failed to upload {key}: simulated outage")
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type
        return key

    def mint_access_url(self, locator, ttl: timedelta):
        return f"https://artifacts.test/{locator}?expires={int(ttl.total_seconds())}"

    def load(self, key):
        return self.objects.get(key)


class ManualTimer:
    def __init__(self, when: float, callback: Callable[[], None]):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose clock only moves when a test calls advance()."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[ManualTimer] = []

    def call_later(self, delay, callback):
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> List[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float):
        self.now += seconds
        due = [t for t in self.pending() if t.when <= self.now]
        self.timers = [t for t in self.timers if t not in due and not t.cancelled]
        for timer in due:
            timer.callback()


def prompt_is_for(prompt: str, viewpoint: str) -> bool:
    return VIEWPOINT_PERSPECTIVES[viewpoint] in prompt


class ScriptedProvider:
    """
    In-process provider that records calls and fails on demand.

    fail_when receives (prompt, options) and returns True to raise a ProviderError.
    """

    def __init__(
        self,
        model_id: str = "fake-image-model",
        max_concurrent: int = 2,
        fail_when: Optional[Callable[[str, GenOptions], bool]] = None,
        delay: float = 0.0,
        thinking: Optional[str] = None,
    ):
        self.model_id = model_id
        self.max_concurrent = max_concurrent
        self.fail_when = fail_when
        self.delay = delay
        self.thinking = thinking
        self.calls: List[Tuple[str, GenOptions]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def is_available(self):
        return True

    async def generate(self, prompt, options):
        self.calls.append((prompt, options))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.thinking and options.on_thinking_update:
                options.on_thinking_update(self.thinking)
            if self.fail_when and self.fail_when(prompt, options):
                raise ProviderError("Image model API error 500: simulated failure", status_code=500)
            return GenResult(
                image_data=PNG_BYTES,
                format="png",
                metadata=GenMetadata(
                    model=self.model_id,
                    prompt_hash="0" * 16,
                    generation_time_ms=1,
                    width=1024,
                    height=1024,
                    seed=options.seed,
                ),
                thinking_text=self.thinking,
                model_text_response="Rendered the requested scene.",
            )
        finally:
            self.in_flight -= 1


async def no_sleep(seconds: float) -> None:
    return None


def request_payload(**overrides) -> dict:
    payload = {
        "perimeter": {
            "type": "Feature",
            "geometry": {
                "type": "Polygon",
                "coordinates": [[
                    [150.30, -33.70],
                    [150.32, -33.70],
                    [150.32, -33.72],
                    [150.30, -33.72],
                    [150.30, -33.70],
                ]],
            },
            "properties": {"drawn": True},
        },
        "inputs": {
            "fire_danger_rating": "extreme",
            "wind_speed": 45,
            "wind_direction": "NW",
            "temperature": 38,
            "humidity": 12,
            "time_of_day": "afternoon",
            "intensity": "high",
            "fire_stage": "established",
        },
        "geo_context": {
            "vegetation_type": "Dry Sclerophyll Forest",
            "elevation": {"min": 600, "max": 900, "mean": 750},
            "slope": {"min": 5, "max": 30, "mean": 18},
            "aspect": "NW",
            "nearby_features": ["road"],
            "data_source": "test",
            "confidence": "high",
        },
        "requested_views": ["aerial", "ground_north", "ridge"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_request():
    """Build a GenerationRequest, overriding any top-level field."""
    def factory(**overrides) -> GenerationRequest:
        return GenerationRequest.model_validate(request_payload(**overrides))
    return factory


@pytest.fixture
def request_geo_with():
    """Build a geo_context payload with some fields replaced."""
    def factory(**overrides) -> dict:
        geo = dict(request_payload()["geo_context"])
        geo.update(overrides)
        return geo
    return factory


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def make_orchestrator(storage, scheduler):
    """Build an orchestrator around a scripted provider and in-memory storage."""
    def factory(provider: Optional[ScriptedProvider] = None, **kwargs) -> GenerationOrchestrator:
        generator = ImageGeneratorService(
            provider or ScriptedProvider(),
            sleep=no_sleep,
            timeout_ms=kwargs.pop("timeout_ms", 5000),
        )
        kwargs.setdefault("validator", ConsistencyValidator())
        kwargs.setdefault("cost_estimator", CostEstimator())
        kwargs.setdefault("usage_tracker", UsageTracker())
        artifacts = kwargs.pop("storage", storage)
        return GenerationOrchestrator(
            generator=generator,
            storage=artifacts,
            progress_store=kwargs.pop("progress_store", None) or ProgressStore(artifacts, scheduler=scheduler),
            provider_name="mock",
            rng=random.Random(7),
            **kwargs,
        )
    return factory
