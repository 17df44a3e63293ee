from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .logging import configure_logging
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..infrastructure.providers.registry import ProviderRegistry
from ..presentation.api.routers import analysis as analysis_router
from ..presentation.api.routers import subscription as subscription_router
from ..presentation.api.routers import webhooks as webhooks_router
from ..services.reconciliation_service import ReconciliationService
from ..services.symptom_analyzer import OpenAISymptomAnalyzer
from ..services.usage_quota import UsageQuotaService
from ..services.webhook_ingestion import WebhookIngestionService

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="SymptomCheck Billing", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subscription_router.router)
    app.include_router(webhooks_router.router)
    app.include_router(analysis_router.router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        container: ApplicationContainer = app.state.container  # type: ignore[attr-defined]
        return {
            "ok": True,
            "providers": container.providers.availability(),
            "analyzer": container.symptom_analyzer.configured,
        }

    return app


def build_container(settings: Settings) -> ApplicationContainer:
    persistence = SQLitePersistence(settings.database_path)
    providers = ProviderRegistry.from_settings(settings)
    reconciliation = ReconciliationService(
        persistence,
        providers,
        staleness_seconds=settings.reconcile_staleness_seconds,
    )
    ingestion = WebhookIngestionService(
        persistence,
        persistence,
        providers,
        reconciliation,
        lease_seconds=settings.webhook_claim_lease_seconds,
    )
    quota = UsageQuotaService(persistence, persistence, free_limit=settings.free_analysis_limit)
    analyzer = OpenAISymptomAnalyzer(settings.openai_api_key, settings.openai_model)
    if not analyzer.configured:
        logger.warning("OPENAI_API_KEY not set; symptom analysis is disabled.")

    return ApplicationContainer(
        settings=settings,
        persistence=persistence,
        providers=providers,
        reconciliation_service=reconciliation,
        webhook_ingestion_service=ingestion,
        usage_quota_service=quota,
        symptom_analyzer=analyzer,
    )


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]
        try:
            yield
        finally:
            container.providers.close()
            container.persistence.close()

    return lifespan
