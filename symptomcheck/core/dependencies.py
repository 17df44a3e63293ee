from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_reconciliation_service(container: ApplicationContainer = Depends(get_container)):
    return container.reconciliation_service


def get_webhook_ingestion_service(container: ApplicationContainer = Depends(get_container)):
    return container.webhook_ingestion_service


def get_usage_quota_service(container: ApplicationContainer = Depends(get_container)):
    return container.usage_quota_service


def get_symptom_analyzer(container: ApplicationContainer = Depends(get_container)):
    return container.symptom_analyzer
