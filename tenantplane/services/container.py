from __future__ import annotations

from dataclasses import dataclass

from tenantplane.core.config import get_settings
from tenantplane.providers.datastore.factory import get_dedicated_store_factory, get_shared_store
from tenantplane.providers.events.factory import get_event_publisher
from tenantplane.providers.identity.factory import get_identity_provider
from tenantplane.providers.metrics.factory import get_metrics_sink
from tenantplane.providers.parameters.factory import get_parameter_store
from tenantplane.providers.stacks.factory import get_stack_orchestrator
from tenantplane.services.bootstrap import BootstrapSequencer
from tenantplane.services.provisioning.job_store import get_job_store
from tenantplane.services.provisioning.jobs import ProvisioningJobTracker
from tenantplane.services.provisioning.provisioner import AccountProvisioner
from tenantplane.services.routing import MultiTenantRouter


@dataclass
class ServiceContainer:
    provisioner: AccountProvisioner
    router: MultiTenantRouter
    tracker: ProvisioningJobTracker
    bootstrap: BootstrapSequencer


_container: ServiceContainer | None = None


def build_container() -> ServiceContainer:
    # Wire every component from the configured providers.
    settings = get_settings()
    stacks = get_stack_orchestrator()
    provisioner = AccountProvisioner(get_parameter_store(), stacks, get_event_publisher(), settings=settings)
    router = MultiTenantRouter(provisioner, get_shared_store(), get_dedicated_store_factory())
    tracker = ProvisioningJobTracker(provisioner, stacks, get_metrics_sink(), get_job_store())
    bootstrap = BootstrapSequencer(router, provisioner, get_identity_provider(), settings=settings)
    return ServiceContainer(provisioner=provisioner, router=router, tracker=tracker, bootstrap=bootstrap)


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        _container = build_container()
    return _container


def reset_container() -> None:
    # Tests rebuild the graph after changing provider settings.
    global _container
    _container = None
