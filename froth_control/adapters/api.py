"""REST client for the kiosk back office (machines, inventory, recipes, orders)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..config import ApiConfig

LOGGER = logging.getLogger(__name__)


class MachineApiError(RuntimeError):
    """Raised when the back office rejects a request."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class MachineApiClient:
    """Thin aiohttp wrapper returning the ``data`` member of API envelopes."""

    def __init__(
        self,
        config: ApiConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self._base_url = config.base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if config.token:
            self._headers["Authorization"] = f"Bearer {config.token}"

        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None

    async def aclose(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "MachineApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Machines
    # ------------------------------------------------------------------
    async def get_machine(self, machine_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/machines/{machine_id}")

    async def update_machine(
        self, machine_id: str, changes: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._request("PUT", f"/machines/{machine_id}", json=changes)

    async def get_inventory(self, machine_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/machines/{machine_id}/inventory")
        return list(data or [])

    async def update_inventory(
        self, machine_id: str, ingredient_id: str, quantity: float
    ) -> Dict[str, Any]:
        if quantity < 0:
            raise ValueError("Inventory quantity cannot be negative")
        return await self._request(
            "PUT",
            f"/machines/{machine_id}/inventory",
            json={"ingredient_id": ingredient_id, "quantity": quantity},
        )

    # ------------------------------------------------------------------
    # Recipes and orders
    # ------------------------------------------------------------------
    async def list_recipes(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/recipes")
        return list(data or [])

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/orders", json=order)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request(
        self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self._base_url}{path}"
        LOGGER.debug("%s %s", method, url)

        async with session.request(
            method, url, json=json, headers=self._headers
        ) as response:
            if response.status >= 400:
                detail = await response.text()
                raise MachineApiError(
                    f"{method} {path} failed with status {response.status}: {detail.strip()}",
                    status=response.status,
                )
            try:
                envelope = await response.json(content_type=None)
            except ValueError as exc:
                raise MachineApiError(
                    f"{method} {path} returned invalid JSON", status=response.status
                ) from exc

        if not isinstance(envelope, dict):
            raise MachineApiError(f"{method} {path} returned an unexpected payload")

        if not envelope.get("success", False):
            message = envelope.get("error") or envelope.get("message") or "request failed"
            raise MachineApiError(f"{method} {path}: {message}", status=response.status)

        return envelope.get("data")
