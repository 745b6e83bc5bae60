"""
Tests for the voice catalogue and request validators.
"""
import pytest

from tts_stream.services.errors import ErrorCode, ValidationError
from tts_stream.services.validators import (
    MAX_TEXT_CHARS,
    validate_format,
    validate_material_id,
    validate_start_chunk,
    validate_text,
)
from tts_stream.tts.voices import (
    AUDIO_FORMATS,
    VOICES,
    content_type_for,
    find_voice,
    resolve_voice,
)


class TestVoices:
    """Tests for voice lookup and fallback."""

    def test_catalogue_has_sixteen_voices(self):
        assert len(VOICES) == 16
        assert {v.gender for v in VOICES} == {"female", "male"}

    def test_case_insensitive_lookup(self):
        assert find_voice("emma").name == "Emma"
        assert find_voice(" TAYO ").name == "Tayo"
        assert find_voice("nobody") is None
        assert find_voice(None) is None

    def test_resolve_known(self):
        assert resolve_voice("zainab") == "Zainab"

    def test_resolve_unknown_falls_back(self):
        """Unknown voices use the default instead of failing."""
        assert resolve_voice("Nobody") == "Idera"
        assert resolve_voice("Nobody", default="Femi") == "Femi"
        assert resolve_voice(None, default="umar") == "Umar"

    def test_resolve_with_unknown_default(self):
        assert resolve_voice(None, default="Ghost") == "Idera"

    def test_content_types(self):
        assert content_type_for("mp3") == "audio/mpeg"
        assert content_type_for("wav") == "audio/wav"
        assert content_type_for("xyz") == "application/octet-stream"


class TestValidateText:
    def test_valid_text_returned_unchanged(self):
        assert validate_text("  Hello.  ") == "  Hello.  "

    @pytest.mark.parametrize("value", [None, "", "   ", "\n\t"])
    def test_blank_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_text(value)
        assert exc_info.value.code == ErrorCode.TEXT_REQUIRED

    def test_field_name_in_message(self):
        with pytest.raises(ValidationError, match="content is required"):
            validate_text("", field="content")

    def test_too_long(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_text("a" * (MAX_TEXT_CHARS + 1))
        assert exc_info.value.code == ErrorCode.TEXT_TOO_LONG

    def test_custom_max_length(self):
        with pytest.raises(ValidationError):
            validate_text("abcdef", max_length=5)


class TestValidateFormat:
    def test_default_when_missing(self):
        assert validate_format(None) == "mp3"
        assert validate_format("", default="wav") == "wav"

    @pytest.mark.parametrize("fmt", list(AUDIO_FORMATS))
    def test_supported(self, fmt):
        assert validate_format(fmt.upper()) == fmt

    def test_unsupported(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_format("aac")
        assert exc_info.value.code == ErrorCode.INVALID_FORMAT


class TestValidateMaterialId:
    @pytest.mark.parametrize("value", ["lesson-1", "course:42.unit_3", "A"])
    def test_valid(self, value):
        assert validate_material_id(value) == value

    @pytest.mark.parametrize("value", [None, "", "has space", "../etc", "-leading", "x" * 129])
    def test_invalid(self, value):
        with pytest.raises(ValidationError) as exc_info:
            validate_material_id(value)
        assert exc_info.value.code == ErrorCode.INVALID_MATERIAL_ID


class TestValidateStartChunk:
    def test_in_range(self):
        assert validate_start_chunk(None, 3) == 0
        assert validate_start_chunk(2, 3) == 2

    @pytest.mark.parametrize("value", [-1, 3, 10])
    def test_out_of_range_rejected(self, value):
        """Out-of-range start chunks are rejected, not clamped."""
        with pytest.raises(ValidationError) as exc_info:
            validate_start_chunk(value, 3)
        assert exc_info.value.code == ErrorCode.INVALID_START_CHUNK
        assert exc_info.value.details == {"total_chunks": 3}
