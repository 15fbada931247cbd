"""
AI Coach Stream Events

Closed set of events that travel between the provider gateway and the
stream relay. Provider-specific payload shapes never get past the gateway;
everything downstream only sees TokenEvent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TokenKind(str, Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure taxonomy for a coach stream."""
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"  # connect / status failure upstream
    PROTOCOL_ERROR = "ProtocolError"              # malformed upstream data
    TIMEOUT = "Timeout"                           # wall-clock or stall budget exceeded
    CLIENT_DISCONNECTED = "ClientDisconnected"    # never written to the wire


@dataclass(frozen=True)
class TokenEvent:
    """One unit of model output, or the terminal completion/error signal."""
    kind: TokenKind
    text: str = ""
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    finish_reason: Optional[str] = None

    @classmethod
    def chunk(cls, text: str) -> "TokenEvent":
        return cls(kind=TokenKind.CHUNK, text=text)

    @classmethod
    def done(cls, finish_reason: Optional[str] = None) -> "TokenEvent":
        return cls(kind=TokenKind.DONE, finish_reason=finish_reason)

    @classmethod
    def error(cls, error_kind: ErrorKind, message: str) -> "TokenEvent":
        return cls(kind=TokenKind.ERROR, error_kind=error_kind, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (TokenKind.DONE, TokenKind.ERROR)


class CancellationToken:
    """
    Cooperative cancellation signal shared by a session and the work it spawned.

    Cancelling is idempotent; the first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[ErrorKind] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: ErrorKind = ErrorKind.CLIENT_DISCONNECTED) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
