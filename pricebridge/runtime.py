"""Process-wide service graph shared by the worker, web app and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from pricebridge.config import AppConfig, get_config
from pricebridge.core.tasks import BackgroundTaskQueue
from pricebridge.db.connection import create_engine_for, create_session_factory
from pricebridge.integration.classifier import OpenAIClassifier, ProductClassifier
from pricebridge.integration.http_client import SafeHttpClient
from pricebridge.integration.rate_limiter import TokenBucketRateLimiter
from pricebridge.integration.vendors import VendorRegistry, load_vendor_registry
from pricebridge.reconciliation.claims import ProcessingClaimTracker
from pricebridge.reconciliation.completion import CompletionService
from pricebridge.reconciliation.engine import ReconciliationEngine
from pricebridge.reconciliation.leases import LeaseManager
from pricebridge.reconciliation.observations import ObservationRecorder

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a job or request handler needs, built once per process."""

    config: AppConfig
    engine: AsyncEngine
    session_factory: sessionmaker
    rate_limiter: TokenBucketRateLimiter
    http: SafeHttpClient
    vendors: VendorRegistry
    leases: LeaseManager
    claims: ProcessingClaimTracker
    reconciler: ReconciliationEngine
    tasks: BackgroundTaskQueue
    recorder: ObservationRecorder
    completion: CompletionService | None = None

    @classmethod
    async def create(
        cls,
        config: AppConfig | None = None,
        classifier: ProductClassifier | None = None,
        vendors: VendorRegistry | None = None,
    ) -> Services:
        """Build and start the service graph.

        Args:
            config: Application config (``get_config()`` if omitted)
            classifier: Product classifier; an OpenAI one is built when an API
                key is configured, otherwise completion is disabled
            vendors: Vendor registry (loaded from the vendors file if omitted)
        """
        config = config or get_config()
        engine = create_engine_for(config.db)
        session_factory = create_session_factory(engine)

        rate_limiter = TokenBucketRateLimiter(config.rate_limit)
        await rate_limiter.start()
        http = SafeHttpClient(rate_limiter, config.http)

        if vendors is None:
            vendors = load_vendor_registry(config.vendors_config_path, http)

        transaction_attempts = config.reconcile.transaction_attempts
        leases = LeaseManager(session_factory, config.lease, transaction_attempts=transaction_attempts)
        claims = ProcessingClaimTracker(
            session_factory, config.claim, transaction_attempts=transaction_attempts
        )
        await claims.start()

        tasks = BackgroundTaskQueue(config.worker.background_concurrency)

        if classifier is None and config.classifier.api_key:
            classifier = OpenAIClassifier(config.classifier)
        completion = (
            CompletionService(session_factory, claims, classifier) if classifier is not None else None
        )
        if completion is None:
            logger.warning("No product classifier configured; record completion is disabled")
        on_temporary_hit = completion.complete if completion is not None else None

        reconciler = ReconciliationEngine(
            session_factory,
            leases,
            vendors,
            config.reconcile,
            tasks=tasks,
            on_temporary_hit=on_temporary_hit,
        )

        recorder = ObservationRecorder(
            session_factory,
            tasks=tasks,
            on_temporary_hit=on_temporary_hit,
            transaction_attempts=transaction_attempts,
        )

        logger.info(
            f"Services ready: {len(vendors)} vendors ({', '.join(reconciler.vendor_order)})"
        )
        return cls(
            config=config,
            engine=engine,
            session_factory=session_factory,
            rate_limiter=rate_limiter,
            http=http,
            vendors=vendors,
            leases=leases,
            claims=claims,
            reconciler=reconciler,
            tasks=tasks,
            recorder=recorder,
            completion=completion,
        )

    async def close(self) -> None:
        """Drain background work and release every resource."""
        await self.tasks.close()
        await self.claims.stop()
        await self.http.aclose()
        await self.rate_limiter.stop()
        await self.engine.dispose()
        logger.info("Services closed")
