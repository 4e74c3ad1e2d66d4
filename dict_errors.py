"""
Error types raised by the DICT client.

Every failure is a DictError, so callers can catch one type and still show
the server's own code and text. The subclasses only narrow the kind:

- HandshakeFailed: the greeting was not 220 or the connect failed.
- NotConnected: a request was made before connect() or after close().
- ProtocolViolation: the reply did not have the shape the command needs
  (bad count, missing 151 line, bad status line, stream closed early).
- ServerError: the server answered with an error code. The common codes
  have their own subclasses (550, 551, 554, 555).
"""

from __future__ import annotations

from typing import Optional


class DictError(Exception):
    """Base error. Carries the status code (if any) and the detail text."""

    def __init__(self, detail: str, code: Optional[int] = None):
        self.detail = detail
        self.code = code
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.code is not None:
            return f"{self.code} {self.detail}"
        return self.detail


class HandshakeFailed(DictError):
    pass


class NotConnected(DictError):
    pass


class ProtocolViolation(DictError):
    pass


class MalformedResponse(ProtocolViolation):
    pass


class UnexpectedEndOfStream(ProtocolViolation):
    pass


class ServerError(DictError):
    """The server replied with a code the command does not accept."""

    def __init__(self, code: int, detail: str):
        super().__init__(detail, code)


class InvalidDatabase(ServerError):
    pass


class InvalidStrategy(ServerError):
    pass


class NoDatabasesAvailable(ServerError):
    pass


class NoStrategiesAvailable(ServerError):
    pass
