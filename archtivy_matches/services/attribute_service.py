"""
Archtivy Matches — Attribute Extractor

Asks a multimodal Gemini model for structured tags describing one image:

    {"category": [...], "material": [...], "color": [...], "context": [...],
     "confidence": 0-100}

The response is validated by a strict pydantic schema.  Anything that does
not fit (non-list values, non-string tags, non-numeric confidence) is
rejected rather than coerced, and the caller receives empty attributes with
an error string.  The extractor never raises and never retries.

The same client also produces a short, objective alt text for images whose
listing has none; the pipeline embeds that text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from archtivy_matches.config import ProviderConfig

logger = structlog.get_logger("archtivy.attribute_service")

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

ATTRIBUTE_KINDS: tuple[str, ...] = ("category", "material", "color", "context")

ALT_MIN_CHARS = 80
ALT_MAX_CHARS = 180
ALT_TEXT_CONFIDENCE = 85.0

_CODE_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)

_ATTRIBUTES_PROMPT = (
    "From this image, return a JSON object with optional arrays: "
    "category (e.g. residential, commercial, furniture, lighting), "
    "material (e.g. concrete, wood, brass), color (e.g. white, grey), "
    "context (e.g. interior, exterior, kitchen). Every array holds short "
    "lowercase strings. Also return a number 0-100 for confidence. "
    'Format: {"category":[],"material":[],"color":[],"context":[],"confidence":0}'
)

_ALT_TEXT_PROMPT = (
    "Describe this image in one short sentence in English for use as image "
    "alt text. Rules: factual and objective only; include material, color, "
    "form, or object type when visible; length between "
    f"{ALT_MIN_CHARS} and {ALT_MAX_CHARS} characters; avoid mood words and "
    "marketing adjectives. Reply with ONLY the alt text, no quotes or "
    "explanation."
)


# ──────────────────────────────────────────────────────────────────────────────
# Result types
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AttributesResult:
    attrs: dict[str, list[str]] = field(default_factory=dict)
    confidence: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class AltTextResult:
    alt: str = ""
    confidence: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class ParsedAttributes:
    attrs: dict[str, list[str]]
    confidence: float


@dataclass(frozen=True)
class AttributeParseFailure:
    reason: str
    raw: str = ""


AttributeParse = Union[ParsedAttributes, AttributeParseFailure]


class _AttributePayload(BaseModel):
    """Strict shape of the model's JSON answer."""

    model_config = ConfigDict(strict=True, extra="allow")

    category: list[str] = []
    material: list[str] = []
    color: list[str] = []
    context: list[str] = []
    confidence: float = 0.0

    @model_validator(mode="after")
    def _extra_kinds_are_string_lists(self) -> "_AttributePayload":
        for kind, value in (self.model_extra or {}).items():
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"attribute kind {kind!r} must be a list of strings")
        return self

    def tag_lists(self) -> dict[str, list[str]]:
        kinds: dict[str, list[str]] = {k: getattr(self, k) for k in ATTRIBUTE_KINDS}
        kinds.update(self.model_extra or {})
        return kinds


# ──────────────────────────────────────────────────────────────────────────────
# Parsing helpers
# ──────────────────────────────────────────────────────────────────────────────

def clamp_confidence(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


def normalize_tags(values: list[str]) -> list[str]:
    """Lowercase, strip and de-duplicate tags, keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        tag = value.strip().lower()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    match = _CODE_FENCE.search(cleaned)
    if match:
        return match.group(1).strip()
    return cleaned


def parse_attributes(raw: str) -> AttributeParse:
    """Validate a raw model answer into ``ParsedAttributes``.

    Parameters
    ----------
    raw:
        Text returned by the vision model, optionally wrapped in a
        markdown code fence.

    Returns
    -------
    ParsedAttributes | AttributeParseFailure
        Parsed, normalised tags (empty kinds dropped) and a clamped
        confidence, or a failure carrying the reason.
    """
    if not raw or not raw.strip():
        return AttributeParseFailure("empty response", raw or "")

    try:
        data: Any = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as exc:
        return AttributeParseFailure(f"invalid JSON: {exc.msg}", raw)

    if not isinstance(data, dict):
        return AttributeParseFailure("expected a JSON object", raw)

    try:
        payload = _AttributePayload.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ())) or "payload"
        return AttributeParseFailure(f"{location}: {first.get('msg')}", raw)

    attrs: dict[str, list[str]] = {}
    for kind, values in payload.tag_lists().items():
        tags = normalize_tags(values)
        if tags:
            attrs[kind.strip().lower()] = tags

    return ParsedAttributes(attrs=attrs, confidence=clamp_confidence(payload.confidence))


# ──────────────────────────────────────────────────────────────────────────────
# Vision clients
# ──────────────────────────────────────────────────────────────────────────────

class VisionClient(Protocol):
    async def generate(self, prompt: str, image_url: str, json_output: bool = False) -> str: ...


class GeminiVisionClient:
    """Downloads the image with ``httpx`` and sends it inline to Gemini."""

    def __init__(self, config: ProviderConfig) -> None:
        import google.generativeai as genai

        genai.configure(api_key=config.api_key)
        self._genai = genai
        self._model_name = config.vision_model
        self._timeout = config.timeout_seconds

    async def _fetch_image(self, image_url: str) -> tuple[bytes, str]:
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            response = await client.get(image_url)
            response.raise_for_status()
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
        return response.content, mime_type or "image/jpeg"

    async def generate(self, prompt: str, image_url: str, json_output: bool = False) -> str:
        data, mime_type = await self._fetch_image(image_url)
        model = self._genai.GenerativeModel(self._model_name)
        generation_config = self._genai.GenerationConfig(
            max_output_tokens=512,
            response_mime_type="application/json" if json_output else "text/plain",
        )
        response = await model.generate_content_async(
            [prompt, {"mime_type": mime_type, "data": data}],
            generation_config=generation_config,
        )
        if not response.candidates:
            raise ValueError(
                f"Gemini returned no candidates for model {self._model_name}. "
                f"Prompt feedback: {response.prompt_feedback}"
            )
        return response.text or ""


# ──────────────────────────────────────────────────────────────────────────────
# Extractor
# ──────────────────────────────────────────────────────────────────────────────

class AttributeExtractor:
    """Structured attributes and alt text for a single image URL."""

    def __init__(
        self,
        config: ProviderConfig,
        client: VisionClient | None = None,
    ) -> None:
        self.config = config
        if client is None and config.has_credentials:
            client = GeminiVisionClient(config)
        self._client = client
        self._missing_credentials_logged = False

    @property
    def is_live(self) -> bool:
        return self._client is not None

    def _credentials_error(self) -> str:
        if not self._missing_credentials_logged:
            logger.warning("vision_credentials_missing", fallback="empty_attributes")
            self._missing_credentials_logged = True
        return "GEMINI_API_KEY not set"

    async def extract_attributes(self, image_url: str) -> AttributesResult:
        url = image_url.strip() if isinstance(image_url, str) else ""
        if not url:
            return AttributesResult(error="image url is empty")
        if self._client is None:
            return AttributesResult(error=self._credentials_error())

        log = logger.bind(image_url=url)
        try:
            raw = await self._client.generate(_ATTRIBUTES_PROMPT, url, json_output=True)
        except Exception as exc:
            log.warning("attribute_extraction_failed", error=str(exc))
            return AttributesResult(error=f"attribute extraction failed: {exc}")

        parsed = parse_attributes(raw)
        if isinstance(parsed, AttributeParseFailure):
            log.warning("attribute_payload_rejected", reason=parsed.reason)
            return AttributesResult(error=f"malformed attributes: {parsed.reason}")

        log.debug("attributes_extracted", kinds=sorted(parsed.attrs), confidence=parsed.confidence)
        return AttributesResult(attrs=parsed.attrs, confidence=parsed.confidence)

    async def describe_image(self, image_url: str) -> AltTextResult:
        """Short objective alt text for ``image_url`` (best-effort)."""
        url = image_url.strip() if isinstance(image_url, str) else ""
        if not url:
            return AltTextResult(error="image url is empty")
        if self._client is None:
            return AltTextResult(error=self._credentials_error())

        try:
            raw = await self._client.generate(_ALT_TEXT_PROMPT, url)
        except Exception as exc:
            logger.warning("alt_text_failed", image_url=url, error=str(exc))
            return AltTextResult(error=f"alt text failed: {exc}")

        alt = " ".join(raw.split()).strip("\"'")[:ALT_MAX_CHARS].strip()
        if not alt:
            return AltTextResult(error="model returned empty alt text")
        return AltTextResult(alt=alt, confidence=ALT_TEXT_CONFIDENCE)
