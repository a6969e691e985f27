"""
Health checker — aggregate store health from components.

Reports storage reachability, circuit breakers, and stale locks.
Used by the CLI ``health`` command and the ``/api/health`` endpoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from statekeeper.core.errors import StateStoreError
from statekeeper.core.reliability.circuit_breaker import CircuitBreakerRegistry, CircuitState

if TYPE_CHECKING:
    from statekeeper.core.engine.coordinator import StateCoordinator

logger = logging.getLogger(__name__)


@dataclass
class ComponentHealth:
    """Health of a single component."""

    name: str
    status: str = "unknown"  # healthy, degraded, unhealthy, unknown
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass
class SystemHealth:
    """Aggregate health of the whole store."""

    status: str = "healthy"
    timestamp: str = ""
    components: list[ComponentHealth] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(UTC).isoformat()

    def add(self, component: ComponentHealth) -> None:
        self.components.append(component)
        self._recalculate()

    def _recalculate(self) -> None:
        statuses = [c.status for c in self.components]
        if any(s == "unhealthy" for s in statuses):
            self.status = "unhealthy"
        elif any(s == "degraded" for s in statuses):
            self.status = "degraded"
        elif all(s == "healthy" for s in statuses):
            self.status = "healthy"
        else:
            self.status = "unknown"

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "components": [c.to_dict() for c in self.components],
        }


def check_circuit_breakers(registry: CircuitBreakerRegistry) -> ComponentHealth:
    """Open breakers mean a storage component is failing fast."""
    if not registry.breakers:
        return ComponentHealth(
            name="circuit_breakers",
            status="healthy",
            message="No circuit breakers registered",
        )

    open_count = sum(1 for cb in registry.breakers.values() if cb.state == CircuitState.OPEN)
    half_open_count = sum(
        1 for cb in registry.breakers.values() if cb.state == CircuitState.HALF_OPEN
    )
    total = len(registry.breakers)

    if open_count > 0:
        status = "unhealthy"
        message = f"{open_count}/{total} circuits open"
    elif half_open_count > 0:
        status = "degraded"
        message = f"{half_open_count}/{total} circuits half-open"
    else:
        status = "healthy"
        message = f"All {total} circuits closed"

    return ComponentHealth(
        name="circuit_breakers",
        status=status,
        message=message,
        details=registry.get_status(),
    )


def check_storage(coordinator: StateCoordinator) -> ComponentHealth:
    """Can the ledger index be listed at all?"""
    try:
        keys = coordinator.ledger.keys()
    except StateStoreError as e:
        return ComponentHealth(
            name="storage",
            status="unhealthy",
            message=str(e),
            details=coordinator.backend.describe(),
        )
    return ComponentHealth(
        name="storage",
        status="healthy",
        message=f"{len(keys)} state key(s)",
        details=coordinator.backend.describe(),
    )


def check_stale_locks(coordinator: StateCoordinator) -> ComponentHealth:
    """Stale locks block their key until an administrator clears them."""
    try:
        stale = coordinator.locks.list_locks(stale_only=True)
    except StateStoreError as e:
        return ComponentHealth(name="locks", status="unknown", message=str(e))

    if not stale:
        return ComponentHealth(name="locks", status="healthy", message="No stale locks")

    return ComponentHealth(
        name="locks",
        status="degraded",
        message=f"{len(stale)} stale lock(s) need a force-unlock",
        details={lk.key: lk.model_dump(mode="json") for lk in stale},
    )


def check_system_health(coordinator: StateCoordinator) -> SystemHealth:
    """Run all health checks and return aggregate status."""
    health = SystemHealth()
    health.add(check_storage(coordinator))
    health.add(check_stale_locks(coordinator))
    health.add(check_circuit_breakers(coordinator.backend.breakers))
    if not health.healthy:
        logger.warning("Store health is %s", health.status)
    return health
