"""
End-to-end tests for SpeechService with a fake provider and storage.

Tests cover:
- generate(): chunked synchronous synthesis
- generate_cached(): whole-text cache hit / miss
- start_job(): create, join, reuse, rate limiting and failures
- start_material_generation(): priority order, de-duplication across
  readers and voices, plan replacement
- Health info and error cases
"""
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeClock, FakeProvider
from tts_stream.services.errors import (
    ErrorCode,
    NotFoundError,
    PermanentProviderError,
    RateLimitError,
    TransientProviderError,
    ValidationError,
)
from tts_stream.services.speech_service import NOT_REQUESTED
from tts_stream.store import ABANDONED_MESSAGE
from tts_stream.store.memory import MemoryJobStore
from tts_stream.utils.text import content_hash

# 25 sentences of 100 characters: four chunks at max_chars=800
ARTICLE = ("a" * 98 + ". ") * 25

# 10 sentences of 99 characters: ten chunks at max_chars=100
LESSON = "".join(f"S{i}" + "x" * 95 + ". " for i in range(10))

# Two sentences of about 60 characters: two chunks at max_chars=100
TWO_CHUNKS = "a" * 58 + ". " + "b" * 58 + "."

# Blank lines between two words: five chunks at max_chars=10, three of them only newlines
BLANK_GAP = "Hello.\n" + "\n" * 30 + "World."


def _chunk_number(text):
    return int(re.search(r"S(\d)", text).group(1))


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not reached"
        time.sleep(0.01)


class TestGenerate:
    """Tests for generate()."""

    def test_concatenates_chunks(self, make_service, fake_provider):
        service = make_service(provider=fake_provider, raw={"chunking": {"max_chars": 800}})
        result = service.generate(ARTICLE, voice="emma", fmt="WAV")

        assert result.chunks == 4
        assert result.voice == "Emma"
        assert result.format == "wav"
        assert result.content_type == "audio/wav"
        assert result.audio == b"AUDIO[Emma:799]AUDIO[Emma:800]AUDIO[Emma:800]AUDIO[Emma:101]"
        assert [len(text) for text, _, _ in fake_provider.calls] == [799, 800, 800, 101]

    def test_default_voice_and_format(self, make_service):
        result = make_service().generate("Hello.")
        assert (result.voice, result.format) == ("Idera", "mp3")

    def test_blank_text(self, make_service, fake_provider):
        service = make_service(provider=fake_provider)
        with pytest.raises(ValidationError) as exc_info:
            service.generate("   ")
        assert exc_info.value.code == ErrorCode.TEXT_REQUIRED
        assert fake_provider.calls == []

    def test_unconfigured_provider(self, make_service):
        service = make_service(provider=FakeProvider(configured=False))
        with pytest.raises(ValidationError) as exc_info:
            service.generate("Hello.")
        assert exc_info.value.code == ErrorCode.PROVIDER_NOT_CONFIGURED

    def test_provider_error_propagates(self, make_service):
        service = make_service(provider=FakeProvider(fail_with=lambda t, n: PermanentProviderError("bad")))
        with pytest.raises(PermanentProviderError):
            service.generate("Hello.")

    def test_blank_chunks_add_no_audio(self, make_service, fake_provider):
        service = make_service(provider=fake_provider, raw={"chunking": {"max_chars": 10}})
        result = service.generate(BLANK_GAP)
        assert result.chunks == 5
        assert result.audio == b"AUDIO[Idera:10]AUDIO[Idera:6]"
        assert [text for text, _, _ in fake_provider.calls] == ["Hello.\n\n\n\n", "World."]


class TestGenerateCached:
    """Tests for generate_cached()."""

    def test_miss_then_hit(self, make_service, fake_provider, fake_storage):
        service = make_service(provider=fake_provider, storage=fake_storage)

        first = service.generate_cached("Good morning.", voice="Tayo")
        assert first.cached is False
        assert first.access_count == 1
        assert first.text_hash == content_hash("Good morning.")
        assert first.audio_url.startswith("https://cdn.test/tts-cache/")
        assert len(fake_storage.objects) == 1

        second = service.generate_cached("Good morning.", voice="tayo")
        assert second.cached is True
        assert second.audio_url == first.audio_url
        assert second.access_count == 2
        assert len(fake_provider.calls) == 1

    def test_voice_is_part_of_key(self, make_service, fake_provider):
        service = make_service(provider=fake_provider)
        service.generate_cached("Good morning.", voice="Tayo")
        assert service.generate_cached("Good morning.", voice="Emma").cached is False
        assert len(fake_provider.calls) == 2

    def test_collapse_whitespace_option(self, make_service, fake_provider):
        """With collapse_whitespace, layout variants share one entry."""
        service = make_service(provider=fake_provider, raw={"hashing": {"collapse_whitespace": True}})
        service.generate_cached("Good   morning.\n")
        assert service.generate_cached(" Good morning. ").cached is True
        assert fake_provider.calls == [("Good morning.", "Idera", "mp3")]

    def test_hit_served_without_provider(self, make_service):
        """Cached audio is still served when the provider is unconfigured."""
        provider = FakeProvider()
        service = make_service(provider=provider)
        service.generate_cached("Cached text.")
        provider.configured = False
        assert service.generate_cached("Cached text.").cached is True

        with pytest.raises(ValidationError):
            service.generate_cached("Something new.")


class TestJobs:
    """Tests for start_job() / get_job_status()."""

    def test_concurrent_requests_share_one_job(self, make_service, fake_provider):
        """Simultaneous requests for the same text get one job and one set of provider calls."""
        service = make_service(provider=fake_provider, workers=4)
        with ThreadPoolExecutor(max_workers=8) as pool:
            views = list(pool.map(lambda _: service.start_job(ARTICLE, voice="Idera"), range(8)))

        assert len({v.job_id for v in views}) == 1
        assert sum(v.created for v in views) == 1
        assert service.queue.wait_idle(timeout=10)

        status = service.get_job_status(views[0].job_id)
        assert status.status == "completed"
        assert status.total_chunks == status.completed_chunks == 4
        assert [c["index"] for c in status.chunk_urls] == [0, 1, 2, 3]
        assert len(fake_provider.calls) == 4

    def test_completed_job_returned_as_cached(self, make_service, fake_provider):
        service = make_service(provider=fake_provider)
        first = service.start_job("Short text.")
        assert first.created is True
        assert first.status == "pending"
        assert service.queue.wait_idle(timeout=10)

        again = service.start_job("Short text.")
        assert again.job_id == first.job_id
        assert again.cached is True
        assert again.status == "completed"
        assert len(again.chunk_urls) == 1
        assert len(fake_provider.calls) == 1

    def test_join_in_flight_job(self, make_service):
        gate = threading.Event()
        provider = FakeProvider(gate=gate)
        service = make_service(provider=provider)
        try:
            first = service.start_job("Hold on.")
            joined = service.start_job("Hold on.")
            assert joined.job_id == first.job_id
            assert joined.created is False
            assert joined.cached is False
        finally:
            gate.set()
        assert service.queue.wait_idle(timeout=10)
        assert len(provider.calls) == 1

    def test_rate_limited_job(self, make_service):
        """Every attempt rate limited: the job ends rate_limited after max_attempts calls."""
        provider = FakeProvider(fail_with=lambda t, n: RateLimitError())
        service = make_service(provider=provider, raw={"queue": {"max_attempts": 2}})

        view = service.start_job("Only one chunk here.")
        assert service.queue.wait_idle(timeout=10)

        status = service.get_job_status(view.job_id)
        assert status.status == "rate_limited"
        assert "Rate limited" in status.error_message
        assert status.completed_chunks == 0
        assert len(provider.calls) == 2

    def test_rate_limited_multi_chunk_job(self, make_service):
        provider = FakeProvider(fail_with=lambda t, n: RateLimitError())
        service = make_service(provider=provider, raw={"queue": {"max_attempts": 2}})

        view = service.start_job(ARTICLE)
        assert service.queue.wait_idle(timeout=10)

        status = service.get_job_status(view.job_id)
        assert status.status == "rate_limited"
        assert status.chunk_urls == []
        per_chunk = {}
        for text, _, _ in provider.calls:
            per_chunk[text] = per_chunk.get(text, 0) + 1
        assert max(per_chunk.values()) <= 2

    def test_failed_job_is_superseded(self, make_service):
        provider = FakeProvider(fail_with=lambda t, n: PermanentProviderError("bad input") if n == 1 else None)
        service = make_service(provider=provider)

        failed = service.start_job("Try again later.")
        assert service.queue.wait_idle(timeout=10)
        status = service.get_job_status(failed.job_id)
        assert status.status == "failed"
        assert status.error_message == "Chunk 0: bad input"

        retry = service.start_job("Try again later.")
        assert retry.created is True
        assert retry.job_id != failed.job_id
        assert service.queue.wait_idle(timeout=10)
        assert service.get_job_status(retry.job_id).status == "completed"

    def test_stale_job_replaced_without_paying_twice(self, make_service):
        """Chunks still queued for a replaced stale job never reach the provider."""
        clock = FakeClock()
        gate = threading.Event()
        provider = FakeProvider(gate=gate)
        service = make_service(provider=provider, store=MemoryJobStore(clock=clock), workers=1,
                               raw={"chunking": {"max_chars": 100}})
        try:
            stuck = service.start_job(TWO_CHUNKS)
            assert stuck.total_chunks == 2
            _wait_for(lambda: len(provider.calls) == 1)

            clock.advance(1_000)
            fresh = service.start_job(TWO_CHUNKS)
            assert fresh.created is True
            assert fresh.job_id != stuck.job_id
        finally:
            gate.set()
        assert service.queue.wait_idle(timeout=10)

        old = service.get_job_status(stuck.job_id)
        assert old.status == "failed"
        assert old.error_message == ABANDONED_MESSAGE
        assert service.get_job_status(fresh.job_id).status == "completed"
        # The chunk already in flight, then the two chunks of the new job
        assert len(provider.calls) == 3

    def test_blank_chunks_complete_without_provider(self, make_service, fake_provider):
        service = make_service(provider=fake_provider, raw={"chunking": {"max_chars": 10}})
        view = service.start_job(BLANK_GAP)
        assert view.total_chunks == 5
        assert service.queue.wait_idle(timeout=10)

        status = service.get_job_status(view.job_id)
        assert status.status == "completed"
        assert len(status.chunk_urls) == 5
        assert sorted(text for text, _, _ in fake_provider.calls) == ["Hello.\n\n\n\n", "World."]

    def test_transient_error_retried(self, make_service):
        provider = FakeProvider(fail_with=lambda t, n: TransientProviderError("503") if n == 1 else None)
        service = make_service(provider=provider)
        view = service.start_job("Flaky provider.")
        assert service.queue.wait_idle(timeout=10)
        assert service.get_job_status(view.job_id).status == "completed"
        assert len(provider.calls) == 2

    def test_requested_by_recorded(self, make_service):
        service = make_service()
        view = service.start_job("Who asked?", requested_by="user-7")
        assert service.store.get_job(view.job_id).requested_by == "user-7"

    def test_unknown_job(self, make_service):
        with pytest.raises(NotFoundError):
            make_service().get_job_status("no-such-job")

    def test_unconfigured_creates_nothing(self, make_service):
        service = make_service(provider=FakeProvider(configured=False))
        with pytest.raises(ValidationError):
            service.start_job("Hello.")
        assert service.queue.stats().submitted == 0


class TestMaterials:
    """Tests for start_material_generation() / get_material_status()."""

    def _service(self, make_service, provider, workers=1, store=None):
        return make_service(provider=provider, workers=workers, store=store, raw={"chunking": {"max_chars": 100}})

    def test_plan_boundaries(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        view = service.start_material_generation("lesson-1", LESSON, voice="Idera", start_chunk=0)
        assert view.total_chunks == 10
        assert view.chunk_boundaries[0] == {"start": 0, "end": 98}
        assert view.chunk_boundaries[1] == {"start": 98, "end": 197}
        assert view.chunk_boundaries[-1] == {"start": 890, "end": 990}

    def test_reading_position_first_then_forward_then_backward(self, make_service, fake_provider):
        """With one worker, chunks are generated from the start chunk outwards."""
        service = self._service(make_service, fake_provider)
        view = service.start_material_generation("lesson-1", LESSON, voice="Idera", start_chunk=6)
        assert view.start_chunk == 6
        assert view.queued == [6, 7, 8, 9, 5, 4, 3, 2, 1, 0]
        assert service.queue.wait_idle(timeout=10)

        order = [_chunk_number(text) for text, _, _ in fake_provider.calls]
        assert order == [6, 7, 8, 9, 5, 4, 3, 2, 1, 0]

        status = service.get_material_status("lesson-1", voice="Idera")
        assert all(c["status"] == "completed" for c in status.chunks)
        assert all(c["audio_url"] for c in status.chunks)

    def test_second_reader_joins_in_flight_work(self, make_service):
        gate = threading.Event()
        provider = FakeProvider(gate=gate)
        service = self._service(make_service, provider, workers=2)
        try:
            first = service.start_material_generation("lesson-1", LESSON, voice="Idera", start_chunk=6)
            second = service.start_material_generation("lesson-1", LESSON, voice="Idera", start_chunk=0)
            assert len(first.queued) == 10
            assert second.queued == []
        finally:
            gate.set()
        assert service.queue.wait_idle(timeout=10)

        status = service.get_material_status("lesson-1", voice="Idera")
        assert [c["status"] for c in status.chunks] == ["completed"] * 10
        texts = [text for text, _, _ in provider.calls]
        assert len(texts) == len(set(texts)) == 10

    def test_completed_chunks_not_regenerated(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        service.start_material_generation("lesson-1", LESSON, voice="Idera")
        assert service.queue.wait_idle(timeout=10)

        again = service.start_material_generation("lesson-1", LESSON, voice="Idera", start_chunk=3)
        assert again.queued == []
        assert len(fake_provider.calls) == 10

    def test_other_voice_queues_everything(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        service.start_material_generation("lesson-1", LESSON, voice="Idera")
        assert service.queue.wait_idle(timeout=10)

        emma = service.start_material_generation("lesson-1", LESSON, voice="Emma")
        assert len(emma.queued) == 10
        assert service.queue.wait_idle(timeout=10)
        assert sum(1 for _, voice, _ in fake_provider.calls if voice == "Emma") == 10

    def test_content_change_replaces_plan(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        service.start_material_generation("lesson-1", LESSON, voice="Idera")
        assert service.queue.wait_idle(timeout=10)

        edited = "Brand new content. Much shorter now."
        view = service.start_material_generation("lesson-1", edited, voice="Idera")
        assert view.content_hash == content_hash(edited)
        assert view.total_chunks == 1
        assert view.queued == [0]
        assert service.queue.wait_idle(timeout=10)
        status = service.get_material_status("lesson-1", voice="Idera")
        assert status.chunks[0]["status"] == "completed"

    def test_status_for_unrequested_voice(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        service.start_material_generation("lesson-1", LESSON, voice="Idera")
        status = service.get_material_status("lesson-1", voice="Femi")
        assert {c["status"] for c in status.chunks} == {NOT_REQUESTED}
        assert all(c["audio_url"] is None for c in status.chunks)

    def test_failed_chunk_requeued_on_next_request(self, make_service):
        provider = FakeProvider(fail_with=lambda t, n: PermanentProviderError("rejected") if n == 1 else None)
        service = self._service(make_service, provider)
        service.start_material_generation("lesson-1", "One sentence only.", voice="Idera")
        assert service.queue.wait_idle(timeout=10)

        status = service.get_material_status("lesson-1", voice="Idera")
        assert status.chunks[0]["status"] == "failed"
        assert status.chunks[0]["error_message"] == "rejected"

        again = service.start_material_generation("lesson-1", "One sentence only.", voice="Idera")
        assert again.queued == [0]
        assert service.queue.wait_idle(timeout=10)
        assert service.get_material_status("lesson-1", voice="Idera").chunks[0]["status"] == "completed"

    def test_stuck_chunk_reclaimed_and_completed(self, make_service, fake_provider):
        """A chunk left processing by a lost worker is generated again once it is stale."""
        clock = FakeClock()
        store = MemoryJobStore(clock=clock)
        service = self._service(make_service, fake_provider, store=store)
        content = "One sentence only."
        digest = content_hash(content)
        store.save_plan("lesson-1", digest, [{"start": 0, "end": len(content)}])
        assert store.claim_material_chunk("lesson-1", 0, "Idera", 0, len(content), digest, stale_after_s=120)
        assert store.begin_material_chunk("lesson-1", 0, "Idera", digest)

        fresh = service.start_material_generation("lesson-1", content, voice="Idera")
        assert fresh.queued == []
        assert fresh.chunks[0]["status"] == "processing"

        clock.advance(121)
        again = service.start_material_generation("lesson-1", content, voice="Idera")
        assert again.queued == [0]
        assert service.queue.wait_idle(timeout=10)

        chunk = service.get_material_status("lesson-1", voice="Idera").chunks[0]
        assert chunk["status"] == "completed"
        assert chunk["audio_url"].startswith("https://cdn.test/tts-materials/")
        assert fake_provider.calls == [(content, "Idera", "mp3")]

    def test_start_chunk_out_of_range(self, make_service, fake_provider):
        service = self._service(make_service, fake_provider)
        with pytest.raises(ValidationError) as exc_info:
            service.start_material_generation("lesson-1", LESSON, start_chunk=10)
        assert exc_info.value.code == ErrorCode.INVALID_START_CHUNK
        assert service.queue.stats().submitted == 0

    def test_invalid_material_id(self, make_service):
        with pytest.raises(ValidationError) as exc_info:
            make_service().start_material_generation("bad id", LESSON)
        assert exc_info.value.code == ErrorCode.INVALID_MATERIAL_ID

    def test_blank_content(self, make_service):
        with pytest.raises(ValidationError, match="content is required"):
            make_service().start_material_generation("lesson-1", "  ")

    def test_unknown_material(self, make_service):
        with pytest.raises(NotFoundError):
            make_service().get_material_status("nothing-here")


class TestServiceInfo:
    def test_health(self, make_service):
        health = make_service(workers=3).get_health_info()
        assert health["ok"] is True
        assert health["provider"]["configured"] is True
        assert health["store"]["backend"] == "memory"
        assert health["queue"]["running"] is True
        assert health["queue"]["workers"] == 3

    def test_voices(self, make_service):
        data = make_service(raw={"provider": {"default_voice": "emma"}}).list_voices()
        assert len(data["voices"]) == 16
        assert data["default_voice"] == "Emma"

    def test_shutdown_stops_queue(self, make_service):
        service = make_service()
        service.shutdown()
        assert service.queue.running is False
