from __future__ import annotations

import logging
from typing import Any

from tenantplane.core.errors import ParameterStoreError
from tenantplane.providers.aws import call_aws, client_error_code, create_client, is_auth_error


logger = logging.getLogger(__name__)

_INTEGRATION = "parameters.ssm"
# SSM DeleteParameters accepts at most 10 names per request.
_DELETE_BATCH = 10


class SsmParameterStore:
    def __init__(self, region: str | None = None, client: Any | None = None) -> None:
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = create_client("ssm", region=self._region)
        return self._client

    async def put(self, name: str, value: str, *, overwrite: bool = True) -> None:
        client = self._get_client()
        try:
            await call_aws(
                _INTEGRATION,
                client.put_parameter,
                Name=name,
                Value=value,
                Type="String",
                Overwrite=overwrite,
            )
        except Exception as exc:
            raise self._map_error(exc, f"Failed to write parameter {name}") from exc

    async def get(self, name: str) -> str | None:
        client = self._get_client()
        try:
            response = await call_aws(
                _INTEGRATION,
                client.get_parameter,
                expected_errors=frozenset({"ParameterNotFound"}),
                Name=name,
            )
        except Exception as exc:
            if client_error_code(exc) == "ParameterNotFound":
                return None
            raise self._map_error(exc, f"Failed to read parameter {name}") from exc
        return (response.get("Parameter") or {}).get("Value")

    async def delete_many(self, names: list[str]) -> None:
        client = self._get_client()
        for offset in range(0, len(names), _DELETE_BATCH):
            batch = names[offset : offset + _DELETE_BATCH]
            try:
                response = await call_aws(_INTEGRATION, client.delete_parameters, Names=batch)
            except Exception as exc:
                raise self._map_error(exc, "Failed to delete parameters") from exc
            # Missing names come back as InvalidParameters; deleting twice is not an error.
            missing = response.get("InvalidParameters") or []
            if missing:
                logger.debug("ssm_delete_missing names=%s", ",".join(missing))

    def _map_error(self, exc: Exception, message: str) -> ParameterStoreError:
        if is_auth_error(exc):
            return ParameterStoreError("AWS credentials missing or denied for SSM.")
        return ParameterStoreError(f"{message}: {exc}")
