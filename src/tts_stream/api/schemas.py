"""
API Request/Response Schemas.

Request models accept blank or missing text on purpose: emptiness is
checked by the service validators so every rejection uses the same
``{"ok": false, "error": CODE}`` envelope instead of a 422.

Models:
    GenerateRequest: /v1/tts/generate, /v1/tts/generate-cached, /v1/tts/jobs
    MaterialRequest: POST /v1/materials/{material_id}/tts
    CachedAudioResponse, JobResponse, MaterialResponse, VoicesResponse

Example Request:
    {
        "text": "Good morning. Today we look at photosynthesis.",
        "voice": "Emma",
        "format": "mp3"
    }
"""
from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    """
    Text to speech request.

    Attributes:
        text: Text to synthesize. Long texts are chunked server-side.
        voice: Voice name (case-insensitive). Unknown names fall back to
            the default voice.
        format: mp3, wav, opus or flac. Defaults to the configured format.
    """
    text: str | None = Field(
        default=None,
        description="Text to synthesize"
    )
    voice: str | None = Field(
        default=None,
        description="Voice name, None for the default voice"
    )
    format: str | None = Field(
        default=None,
        description="Audio format: mp3, wav, opus or flac"
    )


class MaterialRequest(BaseModel):
    content: str | None = Field(
        default=None,
        description="Full material text; chunk offsets refer to it"
    )
    voice: str | None = Field(
        default=None,
        description="Voice name, None for the default voice"
    )
    start_chunk: int | None = Field(
        default=0,
        description="Chunk the reader starts at; generated first"
    )
    format: str | None = Field(
        default=None,
        description="Audio format: mp3, wav, opus or flac"
    )


class ChunkUrl(BaseModel):
    index: int
    url: str


class CachedAudioResponse(BaseModel):
    ok: bool = True
    audio_url: str = Field(..., description="URL of the complete audio")
    text_hash: str
    voice: str
    format: str
    cached: bool = Field(..., description="True when served from the cache")
    access_count: int


class JobResponse(BaseModel):
    """
    Job status, returned by both StartJob and GetJobStatus.

    ``chunk_urls`` lists populated chunks only; clients play them in index
    order as they appear.
    """
    ok: bool = True
    job_id: str
    status: str = Field(..., description="pending, processing, completed, failed or rate_limited")
    voice: str
    format: str
    total_chunks: int
    completed_chunks: int
    chunk_urls: List[ChunkUrl]
    error_message: str | None = None
    cached: bool = False
    created: bool = False


class MaterialChunk(BaseModel):
    index: int
    status: str = Field(..., description="pending, processing, completed, failed or not_requested")
    audio_url: str | None = None
    char_start: int
    char_end: int
    error_message: str | None = None


class ChunkBoundary(BaseModel):
    start: int
    end: int


class MaterialResponse(BaseModel):
    ok: bool = True
    material_id: str
    voice: str
    content_hash: str
    total_chunks: int
    chunks: List[MaterialChunk]
    chunk_boundaries: List[ChunkBoundary]
    start_chunk: int | None = None
    queued: List[int] = Field(default_factory=list, description="Chunk indexes queued by this request")


class VoiceInfo(BaseModel):
    name: str
    gender: str


class VoicesResponse(BaseModel):
    ok: bool = True
    voices: List[VoiceInfo]
    default_voice: str
