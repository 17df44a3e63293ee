from dataclasses import dataclass

from .config import Settings
from ..domain.ports.analysis import SymptomAnalyzer
from ..domain.ports.persistence import PersistenceGateway
from ..infrastructure.providers.registry import ProviderRegistry
from ..services.reconciliation_service import ReconciliationService
from ..services.usage_quota import UsageQuotaService
from ..services.webhook_ingestion import WebhookIngestionService


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    persistence: PersistenceGateway
    providers: ProviderRegistry
    reconciliation_service: ReconciliationService
    webhook_ingestion_service: WebhookIngestionService
    usage_quota_service: UsageQuotaService
    symptom_analyzer: SymptomAnalyzer
