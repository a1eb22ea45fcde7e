"""One-time completion of temporary aggregate records.

A record registered from a single scan starts out ``temporary``: only the
identifier is trusted. The first vendor hit triggers completion, which
classifies the product, detects its brand and writes both onto the record
exactly once, guarded by a processing claim.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricebridge.canonical.keys import brand_id_for, new_holder_id
from pricebridge.db.models import AggregateRecordModel, BrandModel
from pricebridge.integration.classifier import DEFAULT_CATEGORY, ProductClassifier
from pricebridge.models import (
    BrandDetection,
    Classification,
    ClaimStatus,
    CompletionResult,
    CompletionStatus,
)
from pricebridge.reconciliation.claims import ProcessingClaimTracker
from pricebridge.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class CompletionService:
    """Claim, classify and complete a temporary record."""

    def __init__(
        self,
        session_factory,
        claims: ProcessingClaimTracker,
        classifier: ProductClassifier,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.claims = claims
        self.classifier = classifier
        self.clock = clock

    async def _load_input(self, record_id: str) -> str | None:
        async with self.session_factory() as session:
            row = (
                await session.execute(
                    select(
                        AggregateRecordModel.canonical_identifier,
                        AggregateRecordModel.name,
                        AggregateRecordModel.product_input,
                    ).where(AggregateRecordModel.id == record_id)
                )
            ).one_or_none()
        if row is None:
            return None
        identifier, name, stored = row
        return stored or f"Code: {identifier}\nDescription: {name or ''}"

    async def complete(
        self, record_id: str, product_input: str | None = None, holder_id: str | None = None
    ) -> CompletionResult:
        """Run completion for one record.

        Args:
            record_id: Aggregate record to complete
            product_input: Text describing the product (stored input if omitted)
            holder_id: Claim holder id (generated if omitted)

        Returns:
            CompletionResult; ``skipped`` when the claim was not granted
        """
        holder_id = holder_id or new_holder_id("gp")
        claim = await self.claims.claim(record_id, holder_id)
        if not claim.claimed:
            return CompletionResult(
                record_id=record_id,
                status=CompletionStatus.SKIPPED,
                claim_status=claim.status,
                holder_id=claim.holder_id,
                message=f"claim not granted: {claim.status.value}",
            )

        try:
            text = product_input or await self._load_input(record_id)
            if text is None:
                await self.claims.abandon(record_id, holder_id)
                return CompletionResult(
                    record_id=record_id,
                    status=CompletionStatus.SKIPPED,
                    claim_status=ClaimStatus.NOT_FOUND,
                    holder_id=holder_id,
                    message="record disappeared",
                )

            logger.info(f"[{holder_id}] Classifying {record_id}")
            classification, brand = await asyncio.gather(
                self.classifier.classify(text), self.classifier.detect_brand(text)
            )

            brand_id = brand_id_for(brand.url) if brand.url and brand.name else None

            async def apply(session: AsyncSession, record: AggregateRecordModel) -> None:
                await self._apply(session, record, classification, brand, brand_id)

            completed = await self.claims.complete(record_id, holder_id, apply=apply)
        except Exception as e:
            logger.error(f"[{holder_id}] Completion failed for {record_id}: {e}", exc_info=True)
            try:
                await self.claims.abandon(record_id, holder_id)
            except Exception:
                logger.warning(f"[{holder_id}] Could not abandon claim on {record_id}", exc_info=True)
            return CompletionResult(
                record_id=record_id,
                status=CompletionStatus.FAILED,
                claim_status=ClaimStatus.CLAIMED,
                holder_id=holder_id,
                message=str(e),
            )

        if not completed:
            return CompletionResult(
                record_id=record_id,
                status=CompletionStatus.SKIPPED,
                claim_status=ClaimStatus.ALREADY_PROCESSED,
                holder_id=holder_id,
                message="processed concurrently",
            )

        logger.info(
            f"[{holder_id}] Completed {record_id}: category={classification.category}, "
            f"brand={brand.name or '-'}"
        )
        return CompletionResult(
            record_id=record_id,
            status=CompletionStatus.COMPLETED,
            claim_status=ClaimStatus.CLAIMED,
            holder_id=holder_id,
            category=classification.category or DEFAULT_CATEGORY,
            brand_id=brand_id,
        )

    async def _apply(
        self,
        session: AsyncSession,
        record: AggregateRecordModel,
        classification: Classification,
        brand: BrandDetection,
        brand_id: str | None,
    ) -> None:
        if brand_id is not None:
            if await session.get(BrandModel, brand_id) is None:
                session.add(
                    BrandModel(id=brand_id, name=brand.name, url=brand.url, created_at=self.clock())
                )
                # brand row must exist before the record references it
                await session.flush()
            record.brand_id = brand_id
            record.brand_name = brand.name

        record.name = classification.name or record.name
        record.category = classification.category or DEFAULT_CATEGORY
        record.pack_size = classification.pack_size
        record.product_input = None
        record.updated_at = self.clock()
        await session.flush()
