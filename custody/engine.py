import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import aiohttp

from .errors import EngineError

log = logging.getLogger(__name__)

# Engine-side token state. The core only passes it back to the engine.
TokenState = Dict[str, Any]


@dataclass(frozen=True)
class TokenStatus:
    owned: bool
    unspent: bool

    @property
    def label(self) -> str:
        if not self.owned:
            return "NOT OWNED"
        return "SPENDABLE" if self.unspent else "SPENT"

    @property
    def spendable(self) -> bool:
        return self.owned and self.unspent


class TokenEngine(Protocol):
    """Capabilities the custody core needs from the token engine."""

    async def recipient_address(self, secret: str) -> str: ...

    async def sign(self, secret: str, digest: str) -> str: ...

    async def mint(
        self,
        *,
        token_id: str,
        token_class_id: str,
        token_value: str,
        secret: str,
        nonce: str,
        mint_salt: str,
        sign_alg: str,
        hash_alg: str,
    ) -> TokenState: ...

    async def import_flow(self, serialized: str, secret: Optional[str] = None) -> TokenState: ...

    async def export_flow(
        self,
        token: TokenState,
        transaction: Optional[Dict[str, Any]] = None,
        final: bool = False,
    ) -> str: ...

    async def get_token_status(self, token: TokenState, secret: str) -> TokenStatus: ...

    async def create_transaction(
        self,
        token: TokenState,
        destination: str,
        salt: str,
        secret: str,
    ) -> Dict[str, Any]: ...


class HttpTokenEngine:
    """JSON-over-HTTP client for the token engine gateway service."""

    def __init__(
        self,
        base_url: str,
        *,
        gateway_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.gateway_url = gateway_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _call(self, endpoint: str, payload: Dict[str, Any], field: str) -> Any:
        if self.gateway_url and endpoint in {"mint", "status", "transaction"}:
            payload = dict(payload, gateway=self.gateway_url)
        url = f"{self.base_url}/{endpoint}"
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as resp:
                if resp.status != 200:
                    detail = (await resp.text())[:200]
                    raise EngineError(f"engine {endpoint} returned {resp.status}: {detail}")
                data = await resp.json(content_type=None)
        except EngineError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise EngineError(f"engine {endpoint} request failed: {exc}") from exc
        if not isinstance(data, dict) or field not in data:
            raise EngineError(f"engine {endpoint} response missing {field!r}")
        return data[field]

    async def recipient_address(self, secret: str) -> str:
        return str(await self._call("address", {"secret": secret}, "address"))

    async def sign(self, secret: str, digest: str) -> str:
        return str(await self._call("sign", {"secret": secret, "hash": digest}, "signature"))

    async def mint(self, **params: Any) -> TokenState:
        return await self._call("mint", dict(params), "token")

    async def import_flow(self, serialized: str, secret: Optional[str] = None) -> TokenState:
        payload: Dict[str, Any] = {"txf": serialized}
        if secret is not None:
            payload["secret"] = secret
        return await self._call("import", payload, "token")

    async def export_flow(
        self,
        token: TokenState,
        transaction: Optional[Dict[str, Any]] = None,
        final: bool = False,
    ) -> str:
        payload = {"token": token, "transaction": transaction, "final": final}
        return str(await self._call("export", payload, "txf"))

    async def get_token_status(self, token: TokenState, secret: str) -> TokenStatus:
        data = await self._call("status", {"token": token, "secret": secret}, "status")
        if not isinstance(data, dict):
            raise EngineError("engine status response is not an object")
        return TokenStatus(owned=bool(data.get("owned")), unspent=bool(data.get("unspent")))

    async def create_transaction(
        self,
        token: TokenState,
        destination: str,
        salt: str,
        secret: str,
    ) -> Dict[str, Any]:
        payload = {"token": token, "destination": destination, "salt": salt, "secret": secret}
        return await self._call("transaction", payload, "transaction")
