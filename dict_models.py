"""
Plain value types returned by the DICT session.

They hold no reference to the session that built them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from dict_errors import ProtocolViolation


@dataclass(frozen=True)
class Database:
    name: str
    description: str = ""


@dataclass(frozen=True)
class MatchingStrategy:
    name: str
    description: str = ""


# Sent to the server as-is; the server decides what they mean.
ALL_DATABASES = Database("*", "All databases")
FIRST_MATCH = Database("!", "First database with a match")
DEFAULT_STRATEGY = MatchingStrategy(".", "Server default strategy")


@dataclass(frozen=True)
class Definition:
    """One definition of a word from one database.

    `body` keeps the server's lines in order, blank lines included. The
    block terminator (a lone '.') is never part of it.
    """
    word: str
    database: str
    body: Tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return "\n".join(self.body)


@dataclass(frozen=True)
class StatusReply:
    code: int
    details: str = ""

    def count(self) -> int:
        """Return the number at the start of the details (e.g. '2 databases present').

        Raise ProtocolViolation if there is no number there, since the
        caller cannot frame the rest of the reply without it.
        """
        tokens = self.details.split()
        if not tokens or not (tokens[0].isascii() and tokens[0].isdigit()):
            raise ProtocolViolation(f"expected a count in reply details: {self.details!r}", self.code)
        return int(tokens[0])
