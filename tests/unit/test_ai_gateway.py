"""Tests for the AI gateway helpers."""

from __future__ import annotations

import json
import struct

import pytest

from backend.app.infra import ai_gateway
from backend.app.infra.ai_gateway import (
    AiServiceError,
    ImageGenerationResult,
    build_image_prompt,
    parse_analysis_payload,
)

pytestmark = [pytest.mark.collaborators]


@pytest.fixture(autouse=True)
def stub_llm_config(monkeypatch):
    monkeypatch.setattr(
        ai_gateway,
        "_llm_config",
        lambda: {
            "default_provider": "stub",
            "analysis": {"model": "stub-analysis-v1"},
            "image": {"model": "stub-image-v1", "width": 16, "height": 8},
        },
    )


def test_analyze_text_returns_structured_result():
    result = ai_gateway.analyze_text(
        "I was flying over the sea. A Lighthouse appeared and I felt happy."
    )

    assert result.summary.startswith("I was flying over the sea.")
    assert result.model_version == "stub-analysis-v1"
    assert all(tag == tag.lower() for tag in result.tags)
    assert "Lighthouse" in result.entities
    assert set(result.emotions) == set(ai_gateway.EMOTION_KEYS)
    assert result.primary_emotion() == "joy"
    assert result.interpretation


def test_analyze_text_rejects_empty_content():
    with pytest.raises(AiServiceError) as excinfo:
        ai_gateway.analyze_text("   ")

    assert excinfo.value.code == "invalid_response"


def test_parse_payload_strips_markdown_fences_and_clamps_scores():
    raw = "```json\n" + json.dumps(
        {
            "summary": " A chase through a dark forest. ",
            "tags": ["Forest", "Chase"],
            "entities": ["Forest", ""],
            "emotions": {"fear": 1.4, "joy": -0.2, "anger": "high"},
            "interpretation": "Avoidance of something unresolved.",
        }
    ) + "\n```"

    result = parse_analysis_payload(raw, model_version="m1")

    assert result.summary == "A chase through a dark forest."
    assert result.tags == ["forest", "chase"]
    assert result.entities == ["Forest"]
    assert result.emotions == {"fear": 1.0, "joy": 0.0}
    assert result.model_version == "m1"


@pytest.mark.parametrize(
    "raw",
    ["", "not json", "[1, 2]", json.dumps({"tags": ["x"]})],
    ids=["empty", "invalid_json", "not_object", "missing_summary"],
)
def test_parse_payload_rejects_unusable_responses(raw):
    with pytest.raises(AiServiceError) as excinfo:
        parse_analysis_payload(raw)

    assert excinfo.value.code == "invalid_response"
    assert excinfo.value.retryable is True


def test_generate_image_returns_png_with_configured_size():
    result = ai_gateway.generate_image("A glass city in a storm")

    assert result.mime_type == "image/png"
    assert result.image_data.startswith(b"\x89PNG\r\n\x1a\n")
    width, height = struct.unpack(">II", result.image_data[16:24])
    assert (width, height) == (16, 8)
    assert result.model_version == "stub-image-v1"
    assert ai_gateway.generate_image("A glass city in a storm").image_data == (
        result.image_data
    )


def test_generate_image_rejects_empty_prompt():
    with pytest.raises(AiServiceError):
        ai_gateway.generate_image("")


def test_image_prompt_carries_summary_and_mood():
    prompt = build_image_prompt("  A door opens onto the sea.  ", "surprise")

    assert "A door opens onto the sea.\n" in prompt
    assert "Mood: surprise" in prompt
    assert "Mood: neutral" in build_image_prompt("x", "")


def test_suggest_filename_uses_dimensions_and_extension():
    jpeg = ImageGenerationResult(
        image_data=b"", mime_type="image/jpeg", width=1024, height=768
    )
    png = ImageGenerationResult(image_data=b"", mime_type="image/png", width=8, height=8)

    assert jpeg.suggest_filename("dream-abc") == "dream-abc_1024x768.jpg"
    assert png.suggest_filename("dream-abc") == "dream-abc_8x8.png"


def test_error_factories_set_codes():
    assert AiServiceError.network_error("x").code == "network_error"
    assert AiServiceError.rate_limited("x").code == "rate_limited"
