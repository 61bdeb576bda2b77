from typing import Optional


class CustodyError(Exception):
    """Base class for every failure raised by the custody core."""


class ConfigError(CustodyError):
    pass


class ResolutionError(CustodyError):
    """A user-supplied handle could not be mapped to an identity."""


class DerivationError(CustodyError):
    """The engine rejected a derived secret while generating an address."""


class EngineError(CustodyError):
    """The token engine gateway failed or returned an unusable response."""


class TokenImportError(CustodyError):
    pass


class TransferError(CustodyError):
    pass


class MintError(CustodyError):
    pass


class SigningError(CustodyError):
    pass


class ValidationError(CustodyError):
    """A command argument is malformed."""


class SessionStateError(CustodyError):
    """An event arrived that is not valid in the session's current state."""


class PartialTransferError(TransferError):
    """The engine accepted a transfer but the recipient's file could not be finished.

    ``handoff`` is the exported pending transfer, which the recipient can still
    import, or ``None`` when that export failed as well.
    """

    def __init__(self, message: str, handoff: Optional[str] = None) -> None:
        super().__init__(message)
        self.handoff = handoff
