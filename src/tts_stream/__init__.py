"""
tts-stream: Chunked, cached, asynchronous speech generation service.

Turns long-form reading material into spoken audio through an external
speech provider, without paying for the same synthesis twice.

Key Features:
    - Sentence-aware chunking with deterministic boundaries
    - Whole-text cache for one-shot requests (/v1/tts/generate-cached)
    - Streaming jobs that fill in chunk URLs as workers finish (/v1/tts/jobs)
    - Per-material chunk cache shared by every reader of a material
    - Priority worker queue (reading position first, then the rest)
    - Prometheus metrics and structured JSONL logging

Example Usage:
    >>> from tts_stream.core.config import Settings
    >>> from tts_stream.services.speech_service import SpeechService
    >>>
    >>> service = SpeechService(Settings(raw={"store": {"backend": "memory"}}))
    >>> job = service.start_job("A long chapter ...", voice="Idera")
    >>> service.get_job_status(job.job_id)
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
