"""Shared fixtures: in-process provider / storage doubles and a service factory."""
from __future__ import annotations

import os
import threading
import time
from typing import Callable, List, Optional, Tuple

import pytest

os.environ.setdefault("TTS_STREAM_SKIP_STARTUP", "1")
os.environ.setdefault("TTS_STREAM_NO_COLOR", "1")

from tts_stream.core.config import Settings  # noqa: E402
from tts_stream.services.speech_service import SpeechService  # noqa: E402
from tts_stream.store.memory import MemoryJobStore  # noqa: E402
from tts_stream.tts.provider import BaseSpeechProvider  # noqa: E402
from tts_stream.tts.storage import ObjectStorage, UploadResult, object_key  # noqa: E402


class FakeProvider(BaseSpeechProvider):
    """
    Provider double.

    ``fail_with(text, call_number)`` may return an exception to raise.
    ``gate`` (an Event) blocks every call until it is set.
    """
    name = "fake"

    def __init__(
        self,
        fail_with: Optional[Callable[[str, int], Optional[Exception]]] = None,
        configured: bool = True,
        gate: Optional[threading.Event] = None,
        delay_s: float = 0.0,
    ):
        self.fail_with = fail_with
        self.configured = configured
        self.gate = gate
        self.delay_s = delay_s
        self.calls: List[Tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return self.configured

    def synthesize(self, text: str, voice: str, fmt: str) -> bytes:
        with self._lock:
            self.calls.append((text, voice, fmt))
            n = len(self.calls)
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.fail_with is not None:
            exc = self.fail_with(text, n)
            if exc is not None:
                raise exc
        return f"AUDIO[{voice}:{len(text)}]".encode("utf-8")


class FakeClock:
    """Settable clock for stores; time only moves when ``advance`` is called."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStorage(ObjectStorage):
    name = "fake"

    def __init__(self):
        self.objects = {}
        self._lock = threading.Lock()

    def upload(self, data: bytes, folder: str, fmt: str, key: str) -> UploadResult:
        obj_key = object_key(folder, key, fmt)
        with self._lock:
            self.objects[obj_key] = data
        return UploadResult(url=f"https://cdn.test/{obj_key}", key=obj_key)


def make_settings(raw: Optional[dict] = None, workers: int = 2) -> Settings:
    base = {
        "queue": {"workers": workers, "backoff_s": 0, "rate_limit_backoff_s": 0},
        "logging": {"level": 1},
    }
    for section, values in (raw or {}).items():
        base.setdefault(section, {}).update(values)
    return Settings(raw=base)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def make_service():
    """Factory for SpeechService instances wired to doubles; shut down after the test."""
    created: List[SpeechService] = []

    def _make(provider=None, storage=None, store=None, raw=None, workers: int = 2) -> SpeechService:
        service = SpeechService(
            make_settings(raw, workers=workers),
            store=store or MemoryJobStore(),
            provider=provider or FakeProvider(),
            storage=storage or FakeStorage(),
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        service.shutdown()
