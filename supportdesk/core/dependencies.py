from fastapi import Depends, Request

from .container import ApplicationContainer


def get_container(request: Request) -> ApplicationContainer:
    container = getattr(request.app.state, "container", None)
    if not container:
        raise RuntimeError("Application container not initialised.")
    return container


def get_settings(container: ApplicationContainer = Depends(get_container)):
    return container.settings


def get_persistence_gateway(container: ApplicationContainer = Depends(get_container)):
    return container.persistence


def get_admin_auth_service(container: ApplicationContainer = Depends(get_container)):
    return container.admin_auth_service


def get_usage_tracker(container: ApplicationContainer = Depends(get_container)):
    return container.usage_tracker


def get_subscription_service(container: ApplicationContainer = Depends(get_container)):
    return container.subscription_service


def get_trial_manager(container: ApplicationContainer = Depends(get_container)):
    return container.trial_manager


def get_billing_reconciler(container: ApplicationContainer = Depends(get_container)):
    return container.billing_reconciler


def get_job_scheduler(container: ApplicationContainer = Depends(get_container)):
    return container.job_scheduler
