import logging
import re
from typing import Optional

from .config import Settings
from .derivation import AddressResolver, SecretDeriver
from .engine import HttpTokenEngine, TokenEngine
from .errors import CustodyError, MintError, ResolutionError, SigningError, ValidationError
from .handles import classify_handle
from .protocol import Emitter, Reply, SessionProtocol, staged_file
from .resolution import IdentityResolutionClient, NativeLookup, ResolverServiceClient
from .sessions import SessionStore
from .tokens import TokenLifecycleController

log = logging.getLogger(__name__)

HASH_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

INVALID_HANDLE = "Error: Invalid argument. Use @username, +phonenumber or numeric userId."
INVALID_HASH = "Error: Input must be a 64-character hexadecimal string."
SIGN_USAGE = "Usage: /sign <64-character hexadecimal hash>"


def validate_hash(value: str) -> str:
    candidate = (value or "").strip()
    if not HASH_PATTERN.match(candidate):
        raise ValidationError(INVALID_HASH)
    return candidate


class CustodyService:
    """Chat-facing operations over the custody core."""

    def __init__(
        self,
        settings: Settings,
        engine: TokenEngine,
        *,
        resolver_service: Optional[ResolverServiceClient] = None,
        sessions: Optional[SessionStore] = None,
    ) -> None:
        self.settings = settings
        self.engine = engine
        self.deriver = SecretDeriver(settings.bot_secret)
        self.addresses = AddressResolver(self.deriver, engine)
        self.resolver = IdentityResolutionClient(
            resolver_service
            or ResolverServiceClient(settings.resolver_url, timeout=settings.resolver_timeout)
        )
        self.tokens = TokenLifecycleController(
            engine,
            self.deriver,
            token_class_id=settings.token_class_id,
            token_value=settings.token_value,
        )
        self.sessions = sessions or SessionStore()
        self.protocol = SessionProtocol(
            sessions=self.sessions,
            deriver=self.deriver,
            addresses=self.addresses,
            resolver=self.resolver,
            tokens=self.tokens,
            staging_dir=settings.staging_dir,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CustodyService":
        engine = HttpTokenEngine(
            settings.engine_url,
            gateway_url=settings.gateway_url,
            timeout=settings.engine_timeout,
        )
        return cls(settings, engine)

    def attach_native_lookup(self, lookup: NativeLookup) -> None:
        self.resolver.native_lookup = lookup

    async def close(self) -> None:
        close = getattr(self.engine, "close", None)
        if close is not None:
            await close()

    def start_text(self) -> str:
        text = (
            "Welcome! Available commands:\n\n"
            "/getaddr [<@userid|+phonenumber>] - Get your public address or public address "
            "for a user with @username or a +phonenumber\n"
            "/sign <hash> - Sign a 64-character hexadecimal hash\n"
            "/mint - mints new token for the caller\n"
            "/cancel - abandon a pending token transfer\n\n"
            "Upload a .txf token file to check its status and send it."
        )
        if self.settings.web_url:
            text += f"\n\nView token files in the browser: {self.settings.web_url}"
        return text

    async def get_address(self, identity: int, argument: Optional[str] = None) -> str:
        target = identity
        if argument and argument.strip():
            requested = argument.strip()
            log.info("resolve request: %s", requested)
            try:
                handle = classify_handle(requested)
            except ResolutionError:
                return INVALID_HANDLE
            try:
                target = await self.resolver.resolve_handle(handle)
            except ResolutionError:
                return f"Error: Unable to resolve {requested}"
        try:
            address = await self.addresses.address_for_identity(target)
        except CustodyError:
            return "Error: Unable to derive the address. Please try again later."
        log.info("userId: %s, address: %s", target, address)
        return address

    async def sign(self, identity: int, argument: Optional[str]) -> str:
        if not argument or not argument.strip():
            return SIGN_USAGE
        try:
            digest = validate_hash(argument)
        except ValidationError as exc:
            return str(exc)
        try:
            return await self.tokens.sign(self.deriver.derive(identity), digest)
        except SigningError:
            return "Error: Signing failed. Please try again later."

    async def mint(self, identity: int, emit: Emitter) -> Optional[Reply]:
        try:
            minted = await self.tokens.mint(identity)
        except MintError:
            return Reply("Failed to mint a token. Please try again later.")
        caption = f'Token "{minted.token_id}" minted successfully. Owner: {identity}'
        with staged_file(self.settings.staging_dir, identity, minted.filename, minted.content) as path:
            await emit(path, caption)
        return None
