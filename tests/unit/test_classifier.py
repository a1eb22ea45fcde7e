"""Tests for the OpenAI-backed product classifier (client mocked)."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from pricebridge.config import ClassifierConfig
from pricebridge.core.errors import ParseFailureError, TransportError
from pricebridge.integration.classifier import (
    CATEGORIES,
    OpenAIClassifier,
    extract_json_object,
)


def completion(content: str | None):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def make_classifier(*responses, max_attempts: int = 3) -> tuple[OpenAIClassifier, AsyncMock]:
    client = MagicMock()
    create = AsyncMock(side_effect=list(responses))
    client.chat.completions.create = create
    config = ClassifierConfig(api_key=None, max_attempts=max_attempts, min_delay_seconds=0)
    return OpenAIClassifier(config, client=client), create


class TestExtractJsonObject:
    def test_plain_json(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_json_wrapped_in_prose(self):
        assert extract_json_object('Sure! {"name": "X"} Hope this helps') == {"name": "X"}

    def test_no_object(self):
        with pytest.raises(ParseFailureError):
            extract_json_object("no json here")

    def test_array_is_rejected(self):
        with pytest.raises(ParseFailureError):
            extract_json_object("[1, 2]")


class TestOpenAIClassifier:
    def test_requires_api_key_without_client(self):
        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            OpenAIClassifier(ClassifierConfig(api_key=None))

    @pytest.mark.asyncio
    async def test_classify(self):
        classifier, create = make_classifier(
            completion(
                json.dumps(
                    {"name": "Cerveza Atlas", "pack_size": "6-Pack 355 ml", "category": "alcoholAndBars"}
                )
            )
        )

        result = await classifier.classify("CERVEZA ATLAS LATA 355ML 6PK")

        assert result.name == "Cerveza Atlas"
        assert result.pack_size == "6-Pack 355 ml"
        assert result.category == "alcoholAndBars"
        kwargs = create.await_args.kwargs
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][1] == {"role": "user", "content": "CERVEZA ATLAS LATA 355ML 6PK"}

    @pytest.mark.asyncio
    async def test_unknown_category_becomes_other(self):
        classifier, _ = make_classifier(
            completion('{"name": "Thing", "pack_size": "null", "category": "gadgetsAndStuff"}')
        )

        result = await classifier.classify("thing")

        assert result.category == "other"
        assert result.pack_size is None

    @pytest.mark.asyncio
    async def test_detect_brand(self):
        classifier, _ = make_classifier(completion('{"name": " Milka ", "url": "https://www.milka.com/"}'))

        brand = await classifier.detect_brand("Chocolate Milka 100g")

        assert brand.name == "Milka"
        assert brand.url == "https://www.milka.com/"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["Generic", "sin marca", "Assorted"])
    async def test_placeholder_brands_are_dropped(self, name):
        classifier, _ = make_classifier(completion(json.dumps({"name": name, "url": "https://x.com"})))

        brand = await classifier.detect_brand("whatever")

        assert brand.name is None
        assert brand.url is None

    @pytest.mark.asyncio
    async def test_non_http_brand_url_is_dropped(self):
        classifier, _ = make_classifier(completion('{"name": "Nestle", "url": "nestle dot com"}'))

        brand = await classifier.detect_brand("Nido 800g")

        assert brand.name == "Nestle"
        assert brand.url is None

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self):
        classifier, create = make_classifier(
            asyncio.TimeoutError(),
            completion('{"name": "A", "pack_size": null, "category": "groceries"}'),
        )

        result = await classifier.classify("a")

        assert result.category == "groceries"
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        classifier, create = make_classifier(
            asyncio.TimeoutError(), asyncio.TimeoutError(), max_attempts=2
        )

        with pytest.raises(TransportError, match="max retries"):
            await classifier.classify("a")
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_empty_response_is_a_parse_failure(self):
        classifier, create = make_classifier(completion(None))

        with pytest.raises(ParseFailureError):
            await classifier.classify("a")
        assert create.await_count == 1


def test_other_is_a_category():
    assert "other" in CATEGORIES
    assert len(set(CATEGORIES)) == len(CATEGORIES)
