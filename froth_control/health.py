"""Liveness reporting: broker connectivity plus per-machine command state."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from aiohttp import web

from .core.models import CommandState, CommandTransition, FailureReason

LOGGER = logging.getLogger(__name__)


def _stamp(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": _stamp(self.updated_at),
        }


@dataclass(slots=True)
class DeviceActivity:
    """Last command transition observed for one machine."""

    command: str
    state: CommandState
    attempt: int
    updated_at: datetime
    reason: Optional[FailureReason] = None

    @property
    def busy(self) -> bool:
        return self.state.is_outstanding

    def as_dict(self) -> Dict[str, object]:
        entry: Dict[str, object] = {
            "state": self.state.value,
            "command": self.command,
            "attempt": self.attempt,
            "updatedAt": _stamp(self.updated_at),
        }
        if self.reason is not None:
            entry["reason"] = self.reason.value
        return entry


class HealthReporter:
    """Aggregates component health and machine activity for `/healthz`.

    Only components decide the overall status; a failed command leaves the
    service healthy.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentStatus] = {}
        self._activity: Dict[str, DeviceActivity] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._components[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    def record_transition(self, transition: CommandTransition) -> None:
        # Runs synchronously as a dispatcher observer.
        self._activity[transition.command.device_id] = DeviceActivity(
            command=transition.command.name,
            state=transition.state,
            attempt=transition.attempt,
            updated_at=transition.at,
            reason=transition.reason,
        )

    def busy_devices(self) -> List[str]:
        return sorted(
            device_id for device_id, activity in self._activity.items() if activity.busy
        )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._components.values()]

        healthy = all(item["healthy"] for item in components)
        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if self._activity:
            payload["devices"] = {
                device_id: activity.as_dict()
                for device_id, activity in self._activity.items()
            }
            payload["busy"] = self.busy_devices()
        return payload


class HealthServer:
    """Serves the reporter snapshot on `/healthz` (200 when ok, 503 otherwise)."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info("Health endpoint listening on %s", self.url)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        with contextlib.suppress(RuntimeError):
            await runner.cleanup()

    @property
    def url(self) -> str:
        port = self._port
        if self._runner is not None and self._runner.addresses:
            port = self._runner.addresses[0][1]
        return f"http://{self._host}:{port}/healthz"

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        return web.json_response(
            snapshot, status=200 if snapshot["status"] == "ok" else 503
        )
