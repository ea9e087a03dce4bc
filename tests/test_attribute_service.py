"""Unit tests for AttributeExtractor — strict attribute parsing and alt text."""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from archtivy_matches.services.attribute_service import (
    ALT_MAX_CHARS,
    AttributeExtractor,
    AttributeParseFailure,
    ParsedAttributes,
    parse_attributes,
)


@pytest.fixture
def vision_client():
    client = MagicMock()
    client.generate = AsyncMock()
    return client


class TestParseAttributes:
    """Strict validation of the model's JSON answer."""

    def test_code_fenced_payload(self):
        raw = (
            "```json\n"
            '{"category": ["Residential"], "material": ["Oak", "oak", " Concrete "],'
            ' "color": [], "context": ["interior"], "confidence": 72}\n'
            "```"
        )
        parsed = parse_attributes(raw)
        assert isinstance(parsed, ParsedAttributes)
        assert parsed.attrs == {
            "category": ["residential"],
            "material": ["oak", "concrete"],
            "context": ["interior"],
        }
        assert parsed.confidence == 72.0

    def test_confidence_is_clamped(self):
        assert parse_attributes('{"confidence": 150}').confidence == 100.0
        assert parse_attributes('{"confidence": -3.5}').confidence == 0.0

    def test_missing_confidence_defaults_to_zero(self):
        parsed = parse_attributes('{"color": ["white"]}')
        assert isinstance(parsed, ParsedAttributes)
        assert parsed.confidence == 0.0

    def test_extra_kind_of_strings_is_kept(self):
        parsed = parse_attributes('{"style": ["Brutalist"], "confidence": 50}')
        assert parsed.attrs == {"style": ["brutalist"]}

    @pytest.mark.parametrize(
        "payload",
        [
            {"material": "wood"},
            {"material": [1, 2]},
            {"confidence": "high"},
            {"notes": "looks like a kitchen"},
            {"category": None},
        ],
    )
    def test_unknown_shapes_are_rejected(self, payload):
        parsed = parse_attributes(json.dumps(payload))
        assert isinstance(parsed, AttributeParseFailure)
        assert parsed.reason

    def test_invalid_json(self):
        parsed = parse_attributes("category: wood")
        assert isinstance(parsed, AttributeParseFailure)
        assert "invalid JSON" in parsed.reason

    def test_non_object_json(self):
        parsed = parse_attributes('["wood"]')
        assert isinstance(parsed, AttributeParseFailure)

    def test_empty_response(self):
        assert isinstance(parse_attributes("  "), AttributeParseFailure)


class TestExtractAttributes:

    @pytest.mark.asyncio
    async def test_without_credentials(self, provider_config):
        extractor = AttributeExtractor(provider_config)
        result = await extractor.extract_attributes("https://cdn.example.com/a.jpg")

        assert not extractor.is_live
        assert result.attrs == {}
        assert result.confidence == 0.0
        assert result.error == "GEMINI_API_KEY not set"

    @pytest.mark.asyncio
    async def test_successful_extraction(self, provider_config, vision_client):
        vision_client.generate.return_value = '{"material": ["Brass"], "confidence": 88}'
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.extract_attributes("https://cdn.example.com/a.jpg")

        assert result.attrs == {"material": ["brass"]}
        assert result.confidence == 88.0
        assert result.error is None
        args, kwargs = vision_client.generate.call_args
        assert args[1] == "https://cdn.example.com/a.jpg"
        assert kwargs == {"json_output": True}

    @pytest.mark.asyncio
    async def test_malformed_payload_degrades(self, provider_config, vision_client):
        vision_client.generate.return_value = '{"material": "brass", "confidence": 90}'
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.extract_attributes("https://cdn.example.com/a.jpg")

        assert result.attrs == {}
        assert result.confidence == 0.0
        assert result.error.startswith("malformed attributes")

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, provider_config, vision_client):
        vision_client.generate.side_effect = RuntimeError("503 unavailable")
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.extract_attributes("https://cdn.example.com/a.jpg")

        assert vision_client.generate.await_count == 1
        assert result.attrs == {}
        assert "503" in result.error

    @pytest.mark.asyncio
    async def test_empty_url(self, provider_config, vision_client):
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.extract_attributes("")

        vision_client.generate.assert_not_awaited()
        assert result.error


class TestDescribeImage:

    @pytest.mark.asyncio
    async def test_alt_text_is_trimmed_and_capped(self, provider_config, vision_client):
        vision_client.generate.return_value = '"' + "Polished concrete floor " * 20 + '"'
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.describe_image("https://cdn.example.com/a.jpg")

        assert result.error is None
        assert 0 < len(result.alt) <= ALT_MAX_CHARS
        assert result.alt.startswith("Polished concrete floor")
        assert result.confidence == 85.0

    @pytest.mark.asyncio
    async def test_empty_answer_is_an_error(self, provider_config, vision_client):
        vision_client.generate.return_value = "   "
        extractor = AttributeExtractor(provider_config, client=vision_client)
        result = await extractor.describe_image("https://cdn.example.com/a.jpg")

        assert result.alt == ""
        assert result.confidence == 0.0
        assert result.error

    @pytest.mark.asyncio
    async def test_without_credentials(self, provider_config):
        result = await AttributeExtractor(provider_config).describe_image("https://cdn.example.com/a.jpg")
        assert result.alt == ""
        assert result.error == "GEMINI_API_KEY not set"
