"""Tagged results returned by every collaborator call."""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure categories a collaborator may report."""

    UNAVAILABLE = "unavailable"  # network, auth or timeout
    NOT_FOUND = "not_found"
    REJECTED = "rejected"  # the remote side refused the request


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful collaborator result."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    """Failed collaborator result."""

    reason: str
    kind: ErrorKind = ErrorKind.UNAVAILABLE

    @property
    def ok(self) -> bool:
        return False

    @property
    def not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND


Result = Union[Ok[T], Err]
