"""Wildcard matcher for queue names.

Patterns use ``*`` (any run of characters, possibly empty) and ``?`` (exactly
one character) over ASCII identifier characters. A pattern is compiled once
into a token list and matched by simulating the corresponding finite
automaton, so matching never backtracks.
"""

from __future__ import annotations

import string
from dataclasses import dataclass

from lease_queue.errors import InvalidParameter

ANY_RUN = "*"
ANY_ONE = "?"
_WILDCARDS = frozenset({ANY_RUN, ANY_ONE})
_ALLOWED = frozenset(string.ascii_letters + string.digits + "_") | _WILDCARDS


@dataclass(frozen=True, slots=True)
class GlobPattern:
    """A compiled wildcard pattern."""

    text: str
    tokens: tuple[str, ...]

    @classmethod
    def compile(cls, text: str) -> GlobPattern:
        if not isinstance(text, str):
            raise InvalidParameter(f"Invalid pattern: expected string; found {text!r}")
        if not text:
            raise InvalidParameter("Invalid pattern: must be non-empty")
        if not text.isascii():
            raise InvalidParameter(f"Invalid pattern {text!r}: must be ASCII")
        previous = ""
        for char in text:
            if char not in _ALLOWED:
                raise InvalidParameter(f"Invalid pattern {text!r}: unsupported character {char!r}")
            if char in _WILDCARDS and previous in _WILDCARDS:
                raise InvalidParameter(
                    f"The pattern {text!r} contains consecutive wildcard symbols",
                )
            previous = char
        return cls(text=text, tokens=tuple(text))

    def matches(self, name: str) -> bool:
        """Return True if the whole of ``name`` matches this pattern."""

        final = len(self.tokens)
        states = self._closure({0})
        for char in name:
            advanced: set[int] = set()
            for state in states:
                if state == final:
                    continue
                token = self.tokens[state]
                if token == ANY_RUN:
                    advanced.add(state)
                elif token == ANY_ONE or token == char:
                    advanced.add(state + 1)
            if not advanced:
                return False
            states = self._closure(advanced)
        return final in states

    def _closure(self, states: set[int]) -> set[int]:
        # ANY_RUN may match the empty string, so it also moves to the next token.
        result = set(states)
        pending = list(states)
        while pending:
            state = pending.pop()
            if state < len(self.tokens) and self.tokens[state] == ANY_RUN:
                successor = state + 1
                if successor not in result:
                    result.add(successor)
                    pending.append(successor)
        return result

    def __str__(self) -> str:
        return self.text
