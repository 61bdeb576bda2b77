import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp

from .errors import ResolutionError
from .handles import Handle, NumericHandle, PhoneHandle, UsernameHandle, classify_handle

log = logging.getLogger(__name__)

NativeLookup = Callable[[str], Awaitable[int]]


class ResolverServiceClient:
    """Client for the external handle resolution service (``GET url?request=<handle>``)."""

    def __init__(self, url: Optional[str], *, timeout: float = 15.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def lookup(self, handle: str) -> int:
        if not self.url:
            raise ResolutionError("resolution service is not configured")
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(self.url, params={"request": handle}) as resp:
                    if resp.status != 200:
                        raise ResolutionError(f"unexpected response status: {resp.status}")
                    data = await resp.json(content_type=None)
        except ResolutionError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.warning("Resolution service call failed for %s: %s", handle, exc)
            raise ResolutionError("failed to reach the resolution service") from exc
        user_id = data.get("userId") if isinstance(data, dict) else None
        try:
            return int(user_id)
        except (TypeError, ValueError) as exc:
            raise ResolutionError(f"resolution service returned no userId for {handle}") from exc


class IdentityResolutionClient:
    def __init__(
        self,
        service: ResolverServiceClient,
        native_lookup: Optional[NativeLookup] = None,
    ) -> None:
        self.service = service
        self.native_lookup = native_lookup

    async def resolve(self, text: str) -> int:
        return await self.resolve_handle(classify_handle(text))

    async def resolve_handle(self, handle: Handle) -> int:
        if isinstance(handle, NumericHandle):
            return handle.identity
        if isinstance(handle, UsernameHandle):
            if self.native_lookup is not None:
                try:
                    return await self.native_lookup(str(handle))
                except Exception as exc:
                    log.info("Native lookup failed for %s, falling back: %s", handle, exc)
            return await self._service_lookup(handle)
        if isinstance(handle, PhoneHandle):
            return await self._service_lookup(handle)
        raise ResolutionError(f"unsupported handle {handle!r}")

    async def _service_lookup(self, handle: Handle) -> int:
        try:
            return await self.service.lookup(str(handle))
        except ResolutionError as exc:
            log.warning("Could not resolve %s: %s", handle, exc)
            raise ResolutionError(f"could not resolve handle {handle}") from exc
