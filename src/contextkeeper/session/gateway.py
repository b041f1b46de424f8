"""
Client for the host gateway's session registry.

The gateway exposes an RPC endpoint; we use two methods:
- sessions.list  -> {"sessions": [{key, sessionId, totalTokens, updatedAt}, ...]}
- sessions.reset -> {"ok": true, "entry": {"sessionId": "..."}}
"""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from contextkeeper.errors import RegistryUnavailable
from contextkeeper.logger import get_logger
from contextkeeper.session.models import RotateResult, SessionDescriptor

logger = get_logger(__name__)

RPC_PATH = "/api/rpc"


class GatewayClient:
    """Async RPC client for the session registry. Every call carries a timeout."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Invoke a gateway RPC method and return its result payload.

        Raises:
            RegistryUnavailable: connection error, timeout, HTTP error or an
                error payload from the gateway
        """
        payload = {"method": method, "params": params or {}}
        try:
            resp = await self._client.post(RPC_PATH, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise RegistryUnavailable(f"{method} timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise RegistryUnavailable(
                f"{method} failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RegistryUnavailable(f"{method} failed: {e}") from e
        except ValueError as e:
            raise RegistryUnavailable(f"{method} returned invalid JSON") from e

        if isinstance(data, dict) and data.get("error"):
            raise RegistryUnavailable(f"{method} error: {data['error']}")

        # Accept both {"result": {...}} envelopes and bare results
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data

    async def list_sessions(self) -> List[SessionDescriptor]:
        """Return all sessions known to the registry."""
        result = await self.call("sessions.list")
        if not isinstance(result, dict):
            raise RegistryUnavailable("sessions.list returned an unexpected payload")
        raw_sessions = result.get("sessions") or []

        sessions = []
        for raw in raw_sessions:
            try:
                sessions.append(SessionDescriptor.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed session descriptor: {e}")
        return sessions

    async def rotate(self, key: str) -> RotateResult:
        """Reset a session by key; the host creates its successor."""
        result = await self.call("sessions.reset", {"key": key})
        if not isinstance(result, dict):
            return RotateResult(ok=False, detail=f"unexpected response: {str(result)[:200]}")

        entry = result.get("entry") if isinstance(result.get("entry"), dict) else None
        if result.get("ok") or entry:
            return RotateResult(ok=True, session_id=(entry or {}).get("sessionId"))

        return RotateResult(ok=False, detail=f"unexpected response: {str(result)[:200]}")
