import re
from dataclasses import dataclass
from typing import Union

from .errors import ResolutionError

NUMERIC_PATTERN = re.compile(r"^\d+$")
USERNAME_PATTERN = re.compile(r"^@([A-Za-z0-9_]{1,64})$")
PHONE_PATTERN = re.compile(r"^\+(\d{4,20})$")


@dataclass(frozen=True)
class NumericHandle:
    identity: int

    def __str__(self) -> str:
        return str(self.identity)


@dataclass(frozen=True)
class UsernameHandle:
    username: str

    def __str__(self) -> str:
        return f"@{self.username}"


@dataclass(frozen=True)
class PhoneHandle:
    number: str

    def __str__(self) -> str:
        return f"+{self.number}"


Handle = Union[NumericHandle, UsernameHandle, PhoneHandle]


def classify_handle(text: str) -> Handle:
    """Classify a user-supplied destination as numeric id, @username or +phone."""
    value = (text or "").strip()
    if NUMERIC_PATTERN.match(value):
        return NumericHandle(int(value))
    match = USERNAME_PATTERN.match(value)
    if match:
        return UsernameHandle(match.group(1))
    match = PHONE_PATTERN.match(value)
    if match:
        return PhoneHandle(match.group(1))
    raise ResolutionError(f"unrecognised handle {value!r}")
