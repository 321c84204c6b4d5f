"""
Telemetry Port

Architectural Intent:
- What the executors need from an observability backend: metrics and spans
- The OpenTelemetry exporter satisfies it structurally; executors run
  without one
"""

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class TelemetryPort(Protocol):
    def record_metric(
        self,
        name: str,
        value: float,
        unit: str = "",
        attributes: Optional[dict[str, str]] = None,
    ) -> None: ...

    def start_span(
        self, name: str, attributes: Optional[dict[str, str]] = None
    ) -> Optional[Any]: ...

    def end_span(self, span: Any) -> None: ...
