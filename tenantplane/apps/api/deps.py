from __future__ import annotations

from tenantplane.services.bootstrap import BootstrapSequencer
from tenantplane.services.container import get_container
from tenantplane.services.provisioning.jobs import ProvisioningJobTracker
from tenantplane.services.routing import MultiTenantRouter


def get_tracker() -> ProvisioningJobTracker:
    return get_container().tracker


def get_router() -> MultiTenantRouter:
    return get_container().router


def get_bootstrap() -> BootstrapSequencer:
    return get_container().bootstrap
