"""Aggregated health checks over named indicators."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

STATUS_UP = "UP"
STATUS_DOWN = "DOWN"

SERVICE_DATASTORE = "datastore"
SERVICE_BROKER = "broker"
SERVICE_RUNTIME = "runtime"

#: An indicator is a callable that raises when its service is unhealthy.
HealthIndicator = Callable[[], Any]


@dataclass(frozen=True)
class HealthCheckResult:
    """Overall status and the version reporting it."""

    status: str
    version: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class HealthCheck:
    """A set of named health indicators checked together."""

    def __init__(self, version: str = "") -> None:
        self.version = version
        self._indicators: dict[str, HealthIndicator] = {}

    def with_indicator(self, name: str, indicator: HealthIndicator) -> "HealthCheck":
        """Add an indicator under a unique, non-blank name and return self."""
        name = name.strip()
        if not name:
            raise ValueError("health indicator name must not be empty")
        if name in self._indicators:
            raise ValueError(f"health indicator with name {name} already exists")
        self._indicators[name] = indicator
        return self

    def do(self) -> HealthCheckResult:
        """Run the indicators; DOWN as soon as one of them raises, else UP."""
        for name, indicator in self._indicators.items():
            try:
                indicator()
            except Exception:
                logger.exception("failed %s healthcheck", name)
                return HealthCheckResult(STATUS_DOWN, self.version)
        return HealthCheckResult(STATUS_UP, self.version)