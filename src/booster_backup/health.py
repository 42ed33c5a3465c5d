"""Health checks for the two collaborators every backup depends on.

- Database connectivity
- Object store reachability (file count and total size)
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .logger import get_logger
from .storage import ObjectStore

log = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status for a single component."""

    name: str = Field(description="Component name")
    status: HealthStatus = Field(description="Health status")
    message: Optional[str] = Field(default=None, description="Status message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Component specific figures")
    last_check: datetime = Field(description="Last check timestamp")
    check_duration_ms: float = Field(description="Check duration in milliseconds")


class HealthCheckResponse(BaseModel):
    """Overall health check response."""

    status: HealthStatus = Field(description="Overall health status")
    components: Dict[str, ComponentHealth] = Field(description="Component health checks")
    timestamp: datetime = Field(description="Check timestamp")

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def check_database_health(engine: Engine) -> ComponentHealth:
    """Run a trivial query against the backed-up database."""
    start_time = time.time()
    status = HealthStatus.HEALTHY
    message = "Database is healthy"

    try:
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1")).scalar()
        if result != 1:
            status = HealthStatus.UNHEALTHY
            message = "Database query returned unexpected result"
    except Exception as e:
        status = HealthStatus.UNHEALTHY
        message = f"Database health check failed: {e}"
        log.error(message)

    return ComponentHealth(
        name="database",
        status=status,
        message=message,
        last_check=datetime.now(timezone.utc),
        check_duration_ms=(time.time() - start_time) * 1000,
    )


def check_object_store_health(store: ObjectStore) -> ComponentHealth:
    """List the object store and report how much it holds."""
    start_time = time.time()
    details: Dict[str, Any] = {}

    try:
        objects = store.list()
        details = {
            "file_count": len(objects),
            "total_size": sum(o.size_bytes for o in objects),
        }
        status = HealthStatus.HEALTHY
        message = f"Connected to object store, found {len(objects)} files"
    except Exception as e:
        status = HealthStatus.UNHEALTHY
        message = f"Object store health check failed: {e}"
        log.error(message)

    return ComponentHealth(
        name="object_store",
        status=status,
        message=message,
        details=details,
        last_check=datetime.now(timezone.utc),
        check_duration_ms=(time.time() - start_time) * 1000,
    )


def run_health_check(engine: Engine, store: ObjectStore) -> HealthCheckResponse:
    """Check every component; any unhealthy one degrades the overall status."""
    components = {
        c.name: c for c in (check_database_health(engine), check_object_store_health(store))
    }
    overall = HealthStatus.HEALTHY
    if any(c.status != HealthStatus.HEALTHY for c in components.values()):
        overall = HealthStatus.DEGRADED

    return HealthCheckResponse(
        status=overall,
        components=components,
        timestamp=datetime.now(timezone.utc),
    )
