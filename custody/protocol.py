import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, Optional

from .derivation import AddressResolver, SecretDeriver
from .engine import TokenState
from .errors import (
    CustodyError,
    PartialTransferError,
    ResolutionError,
    SessionStateError,
    TokenImportError,
)
from .resolution import IdentityResolutionClient
from .sessions import Session, SessionState, SessionStore, state_of
from .tokens import TokenLifecycleController

log = logging.getLogger(__name__)

TRANSFER_FILENAME = "token.txf"

FAILED_TO_PROCESS = "Failed to process the file. Please try again."
FAILED_TO_SEND = "Failed to send the token. Please ensure the destination is valid."
TRANSFER_IN_PROGRESS = "A transfer is already in progress. Wait for it to finish first."
NOTHING_TO_SEND = "There is no token waiting to be sent. Upload a .txf file first."
DESTINATION_PROMPT = (
    "Please enter the destination username (e.g., @exampleusername) "
    "or phone number (e.g., +1234567890):"
)

# Called with the staged file path and its caption; the file is removed once it returns.
Emitter = Callable[[Path, str], Awaitable[None]]


@dataclass
class Reply:
    text: str
    send_handle: Optional[str] = None
    force_reply: bool = False


@contextmanager
def staged_file(staging_dir: Path, identity: int, filename: str, content: str) -> Iterator[Path]:
    """Write ``content`` to a fresh per-operation directory, removed on exit."""
    staging_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f"txf-{identity}-", dir=staging_dir) as workdir:
        path = Path(workdir) / filename
        path.write_text(content, encoding="utf-8")
        yield path


class SessionProtocol:
    """Per-identity flow: upload, status, send, destination, rebind, emit.

    Session transitions happen under the store's per-identity lock. Network
    calls run outside it while the session sits in ``TRANSFERRING``, which
    rejects competing uploads and sends for the same identity.
    """

    def __init__(
        self,
        *,
        sessions: SessionStore,
        deriver: SecretDeriver,
        addresses: AddressResolver,
        resolver: IdentityResolutionClient,
        tokens: TokenLifecycleController,
        staging_dir: Path,
    ) -> None:
        self.sessions = sessions
        self.deriver = deriver
        self.addresses = addresses
        self.resolver = resolver
        self.tokens = tokens
        self.staging_dir = staging_dir

    async def receive_token_file(self, identity: int, file_handle: str, raw: bytes) -> Reply:
        if state_of(await self.sessions.get(identity)) is SessionState.TRANSFERRING:
            return Reply(TRANSFER_IN_PROGRESS)
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            log.warning("Token file from %s is not valid UTF-8", identity)
            return Reply(FAILED_TO_PROCESS)
        try:
            token, status = await self.tokens.status(content, self.deriver.derive(identity))
        except TokenImportError:
            return Reply(FAILED_TO_PROCESS)

        def hold(session: Optional[Session]) -> Optional[Session]:
            if state_of(session) is SessionState.TRANSFERRING:
                raise SessionStateError("transfer in progress")
            if status.spendable:
                return Session(token=token, file_handle=file_handle)
            return None

        try:
            await self.sessions.update(identity, hold)
        except SessionStateError:
            return Reply(TRANSFER_IN_PROGRESS)
        log.info("Token status for %s: %s", identity, status.label)
        return Reply(
            f"Token Status: {status.label}",
            send_handle=file_handle if status.spendable else None,
        )

    async def request_send(self, identity: int, file_handle: str) -> Reply:
        def await_destination(session: Optional[Session]) -> Optional[Session]:
            state = state_of(session)
            if state not in (SessionState.HOLDING_TOKEN, SessionState.AWAITING_DESTINATION):
                raise SessionStateError(f"cannot send from {state.value}")
            if session.file_handle != file_handle:
                raise SessionStateError("send action does not match the held token")
            session.state = SessionState.AWAITING_DESTINATION
            return session

        try:
            await self.sessions.update(identity, await_destination)
        except SessionStateError as exc:
            log.info("Rejected send for %s: %s", identity, exc)
            return Reply(NOTHING_TO_SEND)
        return Reply(DESTINATION_PROMPT, force_reply=True)

    async def receive_destination(self, identity: int, text: str, emit: Emitter) -> Optional[Reply]:
        """Treat ``text`` as a destination if one is awaited, otherwise ignore it.

        Whatever happens after the session enters ``TRANSFERRING``, it is
        deleted before this returns.
        """
        claimed: Dict[str, TokenState] = {}

        def begin(session: Optional[Session]) -> Optional[Session]:
            if state_of(session) is SessionState.AWAITING_DESTINATION:
                session.state = SessionState.TRANSFERRING
                claimed["token"] = session.token
            return session

        await self.sessions.update(identity, begin)
        if "token" not in claimed:
            return None
        try:
            return await self._transfer(identity, claimed["token"], (text or "").strip(), emit)
        finally:
            await self.sessions.delete(identity)

    async def _transfer(
        self, identity: int, token: TokenState, destination: str, emit: Emitter
    ) -> Optional[Reply]:
        try:
            recipient = await self.resolver.resolve(destination)
            address = await self.addresses.address_for_identity(recipient)
            content = await self.tokens.transfer(
                token,
                address,
                self.deriver.derive(identity),
                self.deriver.derive(recipient),
            )
        except ResolutionError:
            return Reply(
                f"Could not resolve {destination}. Upload the token file again "
                "and use @username, +phonenumber or a numeric userId."
            )
        except PartialTransferError as exc:
            log.error("Transfer from %s to %s accepted but not finished: %s", identity, destination, exc)
            if exc.handoff is None:
                return Reply(
                    f"The transfer to {destination} was accepted, but its token file "
                    "could not be exported. Your uploaded token is now spent."
                )
            content = exc.handoff
            caption = (
                f"Transfer to {destination} accepted, but re-importing it for the new owner "
                f"failed. This file holds the pending transfer to {address}; the recipient "
                "can import it."
            )
        except CustodyError as exc:
            log.error("Transfer from %s to %s failed: %s", identity, destination, exc)
            return Reply(FAILED_TO_SEND)
        else:
            caption = f"Token sent to {destination}. New owner: {address}"

        try:
            with staged_file(self.staging_dir, identity, TRANSFER_FILENAME, content) as path:
                await emit(path, caption)
        except Exception as exc:
            log.exception("Failed to deliver transferred token for %s: %s", identity, exc)
            return Reply(f"Token sent to {destination}, but the new token file could not be delivered.")
        return None

    async def abandon(self, identity: int) -> Reply:
        previous: Dict[str, SessionState] = {}

        def drop(session: Optional[Session]) -> Optional[Session]:
            state = state_of(session)
            if state is SessionState.TRANSFERRING:
                raise SessionStateError("transfer in progress")
            previous["state"] = state
            return None

        try:
            await self.sessions.update(identity, drop)
        except SessionStateError:
            return Reply(TRANSFER_IN_PROGRESS)
        if previous["state"] is SessionState.IDLE:
            return Reply("Nothing to cancel.")
        return Reply("Cancelled. Upload the token file again to start over.")
