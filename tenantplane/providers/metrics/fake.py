from __future__ import annotations

from tenantplane.providers.metrics.base import OperationMetrics


class FakeMetricsSink:
    def __init__(self) -> None:
        self.records: list[tuple[str, OperationMetrics]] = []

    async def emit(self, event_name: str, record: OperationMetrics) -> None:
        self.records.append((event_name, record))

    def of_event(self, event_name: str) -> list[OperationMetrics]:
        return [record for name, record in self.records if name == event_name]


class NullMetricsSink:
    async def emit(self, event_name: str, record: OperationMetrics) -> None:
        _ = (event_name, record)
