import logging
import secrets
from dataclasses import dataclass
from typing import Tuple

from .derivation import SecretDeriver
from .engine import TokenEngine, TokenState, TokenStatus
from .errors import (
    CustodyError,
    MintError,
    PartialTransferError,
    SigningError,
    TokenImportError,
    TransferError,
)

log = logging.getLogger(__name__)

SIGN_ALG = "secp256k1"
HASH_ALG = "sha256"


def random_256bit_hex() -> str:
    return secrets.token_hex(32)


@dataclass(frozen=True)
class MintedToken:
    token_id: str
    content: str

    @property
    def filename(self) -> str:
        return f"{self.token_id}.txf"


class TokenLifecycleController:
    """Mint, inspect and rebind tokens through the engine.

    ``transfer`` is the only operation that changes ownership. It either returns
    the recipient's new token file or raises ``TransferError``. A plain
    ``TransferError`` leaves the caller's token untouched. Once the engine has
    accepted the transaction the source is spent, so later failures raise
    ``PartialTransferError`` carrying whatever handoff file could be exported.
    """

    def __init__(
        self,
        engine: TokenEngine,
        deriver: SecretDeriver,
        *,
        token_class_id: str,
        token_value: str,
    ) -> None:
        self.engine = engine
        self.deriver = deriver
        self.token_class_id = token_class_id
        self.token_value = token_value

    async def mint(self, identity: int) -> MintedToken:
        token_id = random_256bit_hex()
        try:
            token = await self.engine.mint(
                token_id=token_id,
                token_class_id=self.token_class_id,
                token_value=self.token_value,
                secret=self.deriver.derive(identity),
                nonce=random_256bit_hex(),
                mint_salt=random_256bit_hex(),
                sign_alg=SIGN_ALG,
                hash_alg=HASH_ALG,
            )
            content = await self.engine.export_flow(token, None, True)
        except CustodyError as exc:
            log.error("Mint of %s for %s failed: %s", token_id, identity, exc)
            raise MintError("mint failed") from exc
        log.info("Minted token %s for %s", token_id, identity)
        return MintedToken(token_id=token_id, content=content)

    async def status(self, content: str, secret: str) -> Tuple[TokenState, TokenStatus]:
        try:
            token = await self.engine.import_flow(content)
            status = await self.engine.get_token_status(token, secret)
        except CustodyError as exc:
            log.warning("Token import/status failed: %s", exc)
            raise TokenImportError("failed to process the token file") from exc
        return token, status

    async def transfer(
        self,
        token: TokenState,
        destination_address: str,
        secret: str,
        recipient_secret: str,
    ) -> str:
        salt = random_256bit_hex()
        try:
            transaction = await self.engine.create_transaction(token, destination_address, salt, secret)
        except CustodyError as exc:
            log.warning("Transfer to %s failed: %s", destination_address, exc)
            raise TransferError("failed to send the token") from exc
        # The source token is spent once the engine accepts the transaction.
        try:
            handoff = await self.engine.export_flow(token, transaction, True)
        except CustodyError as exc:
            log.error("Transfer to %s accepted but could not be exported: %s", destination_address, exc)
            raise PartialTransferError("transfer accepted but could not be exported") from exc
        try:
            rebound = await self.engine.import_flow(handoff, recipient_secret)
            content = await self.engine.export_flow(rebound)
        except CustodyError as exc:
            log.error("Transfer to %s accepted but re-import failed: %s", destination_address, exc)
            raise PartialTransferError("recipient re-import failed", handoff=handoff) from exc
        if not content:
            raise PartialTransferError("engine produced an empty token file", handoff=handoff)
        log.info("Token rebound to %s", destination_address)
        return content

    async def sign(self, secret: str, digest: str) -> str:
        try:
            return await self.engine.sign(secret, digest)
        except CustodyError as exc:
            log.warning("Signing failed: %s", exc)
            raise SigningError("signing failed") from exc
