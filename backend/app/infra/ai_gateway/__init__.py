"""AI gateway entry points for dream analysis and image generation."""

from __future__ import annotations

import hashlib
import json
import re
import struct
import textwrap
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...config import load_settings
from ..logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "AiServiceError",
    "AnalysisResult",
    "ImageGenerationResult",
    "analyze_text",
    "build_analysis_prompt",
    "build_image_prompt",
    "generate_image",
    "parse_analysis_payload",
]

EMOTION_KEYS = ("joy", "fear", "anger", "sadness", "surprise")
_EMOTION_LEXICON: Dict[str, tuple[str, ...]] = {
    "joy": ("happy", "joy", "laugh", "fly", "flying", "sun", "love", "friend"),
    "fear": ("afraid", "fear", "chase", "chased", "dark", "fall", "falling", "monster"),
    "anger": ("angry", "fight", "shout", "rage", "broken"),
    "sadness": ("sad", "cry", "lost", "alone", "rain", "funeral"),
    "surprise": ("sudden", "suddenly", "strange", "door", "appeared", "secret"),
}
_STOPWORDS = frozenset(
    {"this", "that", "with", "from", "then", "there", "they", "were", "have", "into", "when", "over"}
)


@dataclass(frozen=True)
class AnalysisResult:
    """Structured insights extracted from dream content."""

    summary: str
    tags: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    emotions: Dict[str, float] = field(default_factory=dict)
    interpretation: Optional[str] = None
    model_version: Optional[str] = None

    def primary_emotion(self) -> str:
        if not self.emotions:
            return "neutral"
        return max(self.emotions.items(), key=lambda item: item[1])[0]


@dataclass(frozen=True)
class ImageGenerationResult:
    """Image bytes plus metadata returned by the image model."""

    image_data: bytes
    mime_type: str
    width: int
    height: int
    model_version: Optional[str] = None

    def suggest_filename(self, prefix: str) -> str:
        extension = "jpg" if self.mime_type == "image/jpeg" else "png"
        return f"{prefix}_{self.width}x{self.height}.{extension}"


class AiServiceError(RuntimeError):
    """Raised when the AI provider cannot complete a request."""

    def __init__(self, message: str, *, code: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable

    @classmethod
    def network_error(cls, details: str) -> "AiServiceError":
        return cls(f"AI service network error: {details}", code="network_error")

    @classmethod
    def invalid_response(cls, details: str) -> "AiServiceError":
        return cls(f"Invalid AI service response: {details}", code="invalid_response")

    @classmethod
    def rate_limited(cls, details: str) -> "AiServiceError":
        return cls(f"AI service rate limit exceeded: {details}", code="rate_limited")


def _llm_config() -> Dict[str, Any]:
    return dict(load_settings().llm or {})


def analyze_text(text: str) -> AnalysisResult:
    """Analyze dream content with the configured text model."""

    content = (text or "").strip()
    if not content:
        raise AiServiceError.invalid_response("dream content is empty")

    config = _llm_config()
    analysis_cfg = dict(config.get("analysis") or {})
    provider = analysis_cfg.get("provider") or config.get("default_provider", "stub")
    model = analysis_cfg.get("model") or "stub-analysis"
    prompt = build_analysis_prompt(content)

    logger.debug(
        "ai_analysis_request_prepared",
        extra={"provider": provider, "model": model, "chars": len(content)},
    )
    if provider != "stub":
        logger.warning(
            "ai_provider_unimplemented",
            extra={"provider": provider, "operation": "analysis"},
        )
    raw_text = _stub_analysis_response(content)
    logger.info(
        "ai_analysis_stub_used",
        extra={"provider": provider, "model": model, "prompt_chars": len(prompt)},
    )
    return parse_analysis_payload(raw_text, model_version=model)


def generate_image(prompt: str) -> ImageGenerationResult:
    """Render an image for ``prompt`` with the configured image model."""

    prompt_text = (prompt or "").strip()
    if not prompt_text:
        raise AiServiceError.invalid_response("image prompt is empty")

    config = _llm_config()
    image_cfg = dict(config.get("image") or {})
    provider = image_cfg.get("provider") or config.get("default_provider", "stub")
    model = image_cfg.get("model") or "stub-image"
    width = max(1, int(image_cfg.get("width", 64)))
    height = max(1, int(image_cfg.get("height", 64)))

    if provider != "stub":
        logger.warning(
            "ai_provider_unimplemented",
            extra={"provider": provider, "operation": "image"},
        )
    image_data = _stub_png(prompt_text, width=width, height=height)
    logger.info(
        "ai_image_stub_used",
        extra={
            "provider": provider,
            "model": model,
            "size_bytes": len(image_data),
            "width": width,
            "height": height,
        },
    )
    return ImageGenerationResult(
        image_data=image_data,
        mime_type="image/png",
        width=width,
        height=height,
        model_version=model,
    )


def build_analysis_prompt(content: str) -> str:
    return textwrap.dedent(
        """\
        You are an expert dream analyst specializing in symbolism, emotions, and psychological interpretation.

        Dream description:
        {content}

        Analyze this dream and return ONLY a valid JSON object with this structure:
        {{"summary": "...", "tags": ["..."], "entities": ["..."],
          "emotions": {{"joy": 0.0, "fear": 0.0, "anger": 0.0, "sadness": 0.0, "surprise": 0.0}},
          "interpretation": "..."}}

        Guidelines:
        - summary: max 100 words
        - tags: max 10 lowercase tags
        - entities: key people, places, objects
        - emotions: scores 0.0-1.0 that sum to about 1.0
        - interpretation: 2-3 sentences, insightful but not prescriptive
        """
    ).format(content=content)


def build_image_prompt(summary: str, primary_emotion: str) -> str:
    return textwrap.dedent(
        """\
        Create a dreamlike, surreal image based on this dream:

        {summary}

        Style: ethereal, slightly surreal, soft lighting, dreamlike color palette.
        Mood: {mood}, evocative and mysterious.
        Quality: high detail, digital art style.
        """
    ).format(summary=summary.strip(), mood=primary_emotion or "neutral")


def parse_analysis_payload(
    raw_text: str, *, model_version: Optional[str] = None
) -> AnalysisResult:
    """Validate the model's JSON reply and normalize it into ``AnalysisResult``."""

    cleaned = re.sub(r"```(?:json)?", "", raw_text or "").strip()
    if not cleaned:
        raise AiServiceError.invalid_response("analysis response is empty")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise AiServiceError.invalid_response(
            f"analysis response is not valid JSON: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise AiServiceError.invalid_response("analysis payload must be a JSON object")

    summary = _coerce_string(payload.get("summary"))
    if not summary:
        raise AiServiceError.invalid_response("analysis payload missing summary")

    return AnalysisResult(
        summary=summary,
        tags=[tag.lower() for tag in _coerce_strings(payload.get("tags"))][:10],
        entities=_coerce_strings(payload.get("entities")),
        emotions=_coerce_emotions(payload.get("emotions")),
        interpretation=_coerce_string(payload.get("interpretation")),
        model_version=model_version,
    )


def _stub_analysis_response(content: str) -> str:
    normalized = re.sub(r"\s+", " ", content).strip()
    sentences = re.split(r"(?<=[.!?])\s+", normalized)
    summary = textwrap.shorten(
        " ".join(sentences[:2]), width=400, placeholder="..."
    )
    words = re.findall(r"[A-Za-z]+", normalized)
    tags: List[str] = []
    for word in words:
        lowered = word.lower()
        if len(lowered) < 4 or lowered in _STOPWORDS or lowered in tags:
            continue
        tags.append(lowered)
        if len(tags) >= 5:
            break
    entities: List[str] = []
    for word in words[1:]:
        if word[:1].isupper() and word not in entities:
            entities.append(word)
    emotions = _stub_emotions([word.lower() for word in words])
    primary = max(emotions.items(), key=lambda item: item[1])[0]
    payload = {
        "summary": summary or "A dream without words.",
        "tags": tags or ["dream"],
        "entities": entities[:5],
        "emotions": emotions,
        "interpretation": (
            f"The dream is dominated by {primary}; its recurring images "
            "suggest something the dreamer is still processing."
        ),
    }
    return json.dumps(payload, ensure_ascii=False)


def _stub_emotions(words: List[str]) -> Dict[str, float]:
    hits = {key: 0 for key in EMOTION_KEYS}
    for word in words:
        for emotion, lexicon in _EMOTION_LEXICON.items():
            if word in lexicon:
                hits[emotion] += 1
    total = sum(hits.values())
    if not total:
        return {"joy": 0.2, "fear": 0.2, "anger": 0.2, "sadness": 0.2, "surprise": 0.2}
    return {key: round(count / total, 3) for key, count in hits.items()}


def _stub_png(prompt: str, *, width: int, height: int) -> bytes:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    pixel = bytes(digest[:3])
    row = b"\x00" + pixel * width
    raw = row * height

    def chunk(kind: bytes, data: bytes) -> bytes:
        body = kind + data
        return (
            struct.pack(">I", len(data))
            + body
            + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)
        )

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", header)
        + chunk(b"IDAT", zlib.compress(raw))
        + chunk(b"IEND", b"")
    )


def _coerce_string(value: Any) -> Optional[str]:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _coerce_strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items: List[str] = []
    for item in value:
        cleaned = _coerce_string(item)
        if cleaned and cleaned not in items:
            items.append(cleaned)
    return items


def _coerce_emotions(value: Any) -> Dict[str, float]:
    if not isinstance(value, dict):
        return {}
    emotions: Dict[str, float] = {}
    for key, score in value.items():
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            continue
        emotions[str(key)] = min(1.0, max(0.0, float(score)))
    return emotions
