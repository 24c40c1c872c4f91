from __future__ import annotations


class TenantPlaneError(Exception):
    """Base error for tenantplane."""


class ProviderConfigError(TenantPlaneError):
    """Missing or invalid provider configuration."""


class ValidationError(TenantPlaneError):
    """Malformed provisioning input; no state was mutated."""


class ConflictError(TenantPlaneError):
    """A non-terminal job or in-progress operation already exists for the account."""


class NotFoundError(TenantPlaneError):
    """No provisioning record exists for the account."""


class IntegrationUnavailableError(TenantPlaneError):
    """External integration short-circuited by an open breaker."""


class ParameterStoreError(TenantPlaneError):
    """Parameter store request failure."""


class DataStoreError(TenantPlaneError):
    """Shared or dedicated data store request failure."""


class StackOperationError(TenantPlaneError):
    """Stack orchestrator request failed or the stack reached a failed state."""


class StackTimeoutError(StackOperationError):
    """Stack did not reach a terminal state within the maximum wait."""


class TransientPublishError(TenantPlaneError):
    """Event or metrics emission failed; always logged, never surfaced."""


class IdentityProviderError(TenantPlaneError):
    """Identity provider request failure."""


class ProvisioningFailure(TenantPlaneError):
    """Provisioning or deprovisioning failed after the failure was persisted."""

    def __init__(self, account_id: str, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.cause = cause

    @property
    def error_code(self) -> str:
        # Report the underlying cause class for metrics drill-down.
        if self.cause is not None:
            return self.cause.__class__.__name__
        return self.__class__.__name__


class AccountNotRoutableError(TenantPlaneError):
    """Account has no active routing facts yet; callers may retry with backoff."""

    def __init__(self, account_id: str, status: str | None = None) -> None:
        detail = f"status={status}" if status else "no routing facts"
        super().__init__(f"Account {account_id} is not routable ({detail})")
        self.account_id = account_id
        self.status = status


class BootstrapError(TenantPlaneError):
    """A bootstrap step failed; earlier steps are left in place."""

    def __init__(self, step: str, message: str, completed_steps: list[str]) -> None:
        super().__init__(f"Bootstrap step {step} failed: {message}")
        self.step = step
        self.completed_steps = list(completed_steps)
