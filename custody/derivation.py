import hashlib
import logging

from .engine import TokenEngine
from .errors import ConfigError, CustodyError, DerivationError

log = logging.getLogger(__name__)


class SecretDeriver:
    """Derives per-identity signing secrets from the server-wide secret.

    The derived value is ``sha256(str(identity) + server_secret)`` as hex. It is
    recomputed on every call and must never be stored or logged.
    """

    def __init__(self, server_secret: str) -> None:
        if not server_secret:
            raise ConfigError("server secret must not be empty")
        self._server_secret = server_secret

    def derive(self, identity: int) -> str:
        material = f"{identity}{self._server_secret}".encode("utf-8")
        return hashlib.sha256(material).hexdigest()

    def __repr__(self) -> str:
        return "SecretDeriver(<redacted>)"


class AddressResolver:
    def __init__(self, deriver: SecretDeriver, engine: TokenEngine) -> None:
        self.deriver = deriver
        self.engine = engine

    async def address_for(self, secret: str) -> str:
        try:
            address = await self.engine.recipient_address(secret)
        except CustodyError as exc:
            log.error("Address generation rejected a derived secret: %s", exc)
            raise DerivationError("address generation failed") from exc
        if not address:
            log.error("Address generation returned an empty address")
            raise DerivationError("address generation returned nothing")
        return address

    async def address_for_identity(self, identity: int) -> str:
        """Receiving address of ``identity``; needs no action from its owner."""
        address = await self.address_for(self.deriver.derive(identity))
        log.debug("Derived address %s for identity %s", address, identity)
        return address
