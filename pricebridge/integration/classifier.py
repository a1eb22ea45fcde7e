"""AI product classification for the completion path.

Two independent calls per product: one standardizes name, pack size and
category; the other detects the consumer brand and its website. Each call
races a wall-clock timeout and is retried only when the model is rate
limited or times out.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

from openai import APITimeoutError, AsyncOpenAI, RateLimitError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pricebridge.config import ClassifierConfig
from pricebridge.core.errors import ParseFailureError, TransportError
from pricebridge.models import BrandDetection, Classification

logger = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = (
    "groceries",
    "restaurantsCafes",
    "fastFoodDelivery",
    "alcoholAndBars",
    "beverages",
    "snacksAndConfectionery",
    "clothingFashion",
    "footwear",
    "jewelryAccessories",
    "cosmeticsBeauty",
    "personalHygiene",
    "pharmacyMedical",
    "healthSupplements",
    "fuelAutoServices",
    "carPartsAccessories",
    "publicTransport",
    "travelAccommodation",
    "homeUtilities",
    "householdCleaning",
    "furnitureHomeDecor",
    "homeAppliances",
    "electronicsGadgets",
    "computersAccessories",
    "mobileAccessories",
    "telecommunications",
    "booksLiterature",
    "stationeryOffice",
    "entertainmentLeisure",
    "streamingDigitalMedia",
    "sportsFitness",
    "outdoorRecreation",
    "toysGames",
    "babyProducts",
    "petFoodSupplies",
    "educationCourses",
    "financialInsurance",
    "professionalServices",
    "softwareDigitalGoods",
    "giftsCelebrations",
    "charityDonations",
    "other",
)

DEFAULT_CATEGORY = "other"

CATEGORY_PROMPT = f"""You standardize retail product data.

Return a JSON object with exactly these keys:
{{"name": string, "pack_size": string | null, "category": string}}

Rules:
- name: start with the brand name, Title Case, keep the original language.
  Remove SKU codes, pack size text and promotional text.
- pack_size: quantity or size such as "500 ml", "1 kg", "6-Pack". null if absent.
- category: exactly one of: {", ".join(CATEGORIES)}.
  Use "other" only when nothing fits.

Example: "CERVEZA ATLAS LATA 355ML 6PK" ->
{{"name": "Cerveza Atlas", "pack_size": "6-Pack 355 ml", "category": "alcoholAndBars"}}
"""

BRAND_PROMPT = """You extract the consumer-facing brand of a retail product.

Return a JSON object with exactly these keys:
{"name": string | null, "url": string | null}

Rules:
- name: the brand as printed, preserving spelling and accents.
- url: the brand's own root website (e.g. "https://www.milka.com/").
  Never a retailer, marketplace or social network. null when unsure.
- Generic or placeholder brands (other, generic, white label, no brand,
  assorted, miscellaneous) -> {"name": null, "url": null}.
"""

PLACEHOLDER_BRANDS = frozenset({
    "otro", "otra", "otros", "otras", "other", "others", "generic", "generico",
    "genérico", "marca blanca", "marca propia", "white label", "no brand",
    "sin marca", "surtido", "variedad", "assorted", "miscellaneous", "unnamed",
    "various",
})


class ProductClassifier(Protocol):
    async def classify(self, product_input: str) -> Classification: ...

    async def detect_brand(self, product_input: str) -> BrandDetection: ...


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object, tolerating prose around the first ``{...}`` block.

    Raises:
        ParseFailureError: If no JSON object can be recovered
    """
    text = text.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ParseFailureError(f"No JSON object in model output: {text[:200]!r}")
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError as e:
            raise ParseFailureError(f"Malformed JSON in model output: {e}") from e
    if not isinstance(parsed, dict):
        raise ParseFailureError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


class OpenAIClassifier:
    """ProductClassifier backed by the OpenAI chat completions API."""

    def __init__(self, config: ClassifierConfig | None = None, client: AsyncOpenAI | None = None):
        self.config = config or ClassifierConfig()
        if client is None and not self.config.api_key:
            raise ValueError("OPENAI_API_KEY is required for the product classifier")
        self.client = client or AsyncOpenAI(api_key=self.config.api_key)

    async def _complete(self, system_prompt: str, product_input: str, label: str) -> dict[str, Any]:
        async def call() -> str:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.config.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": product_input},
                    ],
                    response_format={"type": "json_object"},
                    temperature=self.config.temperature,
                ),
                timeout=self.config.timeout_seconds,
            )
            content = response.choices[0].message.content
            if not content:
                raise ParseFailureError(f"{label}: empty response from model")
            return content

        retrying = AsyncRetrying(
            retry=retry_if_exception_type((RateLimitError, APITimeoutError, asyncio.TimeoutError)),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.min_delay_seconds, max=30),
            before_sleep=lambda state: logger.info(
                f"{label}: {type(state.outcome.exception()).__name__}, "
                f"retrying attempt {state.attempt_number}"
            ),
        )

        try:
            content = await retrying(call)
        except RetryError as e:
            raise TransportError(
                f"{label}: max retries exceeded", status=429, retryable=True
            ) from e.last_attempt.exception()

        return extract_json_object(content)

    async def classify(self, product_input: str) -> Classification:
        data = await self._complete(CATEGORY_PROMPT, product_input, "category")
        name, pack_size = data.get("name"), data.get("pack_size")
        result = Classification(
            name=str(name) if name else None,
            pack_size=str(pack_size) if pack_size is not None else None,
            category=str(data.get("category") or DEFAULT_CATEGORY),
        )
        if result.category not in CATEGORIES:
            logger.info(f"Unknown category {result.category!r}, using {DEFAULT_CATEGORY!r}")
            result.category = DEFAULT_CATEGORY
        return result

    async def detect_brand(self, product_input: str) -> BrandDetection:
        data = await self._complete(BRAND_PROMPT, product_input, "brand")
        name = data.get("name")
        url = data.get("url")
        if not isinstance(name, str) or name.strip().lower() in PLACEHOLDER_BRANDS:
            return BrandDetection()
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            url = None
        return BrandDetection(name=name.strip(), url=url)
