"""Forward-only JSON token reader over a binary stream.

The reader pulls the stream in fixed-size chunks and never holds more than
the unconsumed tail of the current chunk, so a log file of any size is
tokenized without materializing the whole document. Every token carries the
absolute byte offset where it starts (``token_start``) and the offset just
past it (``offset``), which is what record delivery info is built from.

String literals are unescaped with the standard ``json`` module; everything
else is lexed here.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import BinaryIO

from trailreader.exceptions import LogFormatError

DEFAULT_CHUNK_SIZE = 64 * 1024


class JsonToken(Enum):
    START_OBJECT = "{"
    END_OBJECT = "}"
    START_ARRAY = "["
    END_ARRAY = "]"
    FIELD_NAME = "name"
    VALUE_STRING = "string"
    VALUE_NUMBER = "number"
    VALUE_TRUE = "true"
    VALUE_FALSE = "false"
    VALUE_NULL = "null"


CONTAINER_STARTS = frozenset({JsonToken.START_OBJECT, JsonToken.START_ARRAY})
_TREE_VALUES = CONTAINER_STARTS | {
    JsonToken.VALUE_STRING, JsonToken.VALUE_NUMBER,
    JsonToken.VALUE_TRUE, JsonToken.VALUE_FALSE, JsonToken.VALUE_NULL,
}

_WHITESPACE = frozenset(b" \t\r\n")
_LBRACE, _RBRACE = ord("{"), ord("}")
_LBRACKET, _RBRACKET = ord("["), ord("]")
_COMMA, _COLON, _QUOTE, _BACKSLASH = ord(","), ord(":"), ord('"'), ord("\\")

_NUMBER_CHARS = re.compile(rb"[-+0-9.eE]+")
_NUMBER = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?\Z")

_LITERALS = {
    ord("t"): (b"true", JsonToken.VALUE_TRUE, True),
    ord("f"): (b"false", JsonToken.VALUE_FALSE, False),
    ord("n"): (b"null", JsonToken.VALUE_NULL, None),
}


class _Expect(Enum):
    """What the grammar allows at the current position."""

    VALUE = "value"
    VALUE_OR_END = "value or ']'"
    NAME = "field name"
    NAME_OR_END = "field name or '}'"
    COLON = "':'"
    SEPARATOR = "',' or closing bracket"
    DONE = "end of input"


_VALUE_STATES = frozenset({_Expect.VALUE, _Expect.VALUE_OR_END})
_NAME_STATES = frozenset({_Expect.NAME, _Expect.NAME_OR_END})


class TokenReader:
    """Pull-based tokenizer. Call ``next_token()`` until it returns None."""

    def __init__(self, stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._stream = stream
        self._chunk_size = chunk_size
        self._buf = b""
        self._pos = 0
        self._base = 0  # absolute offset of _buf[0]
        self._eof = False
        self._stack: list[JsonToken] = []
        self._expect = _Expect.VALUE
        self._closed = False
        self.token: JsonToken | None = None
        self.value = None
        self.token_start = 0

    # ------------------------------------------------------------------
    # Position
    # ------------------------------------------------------------------

    @property
    def offset(self) -> int:
        """Absolute byte offset just past the current token."""
        return self._base + self._pos

    @property
    def depth(self) -> int:
        """Number of containers currently open."""
        return len(self._stack)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def next_token(self) -> JsonToken | None:
        """Advance to the next token and return it, or None at end of input."""
        if self._closed:
            raise ValueError("I/O operation on closed token reader")

        while True:
            ch = self._peek()
            if ch is None:
                if self._stack:
                    raise self._error("unexpected end of input")
                return self._set(None, None, self.offset)
            if ch == _COMMA:
                if self._expect is not _Expect.SEPARATOR:
                    raise self._unexpected("','")
                self._pos += 1
                self._expect = _Expect.NAME if self._in_object() else _Expect.VALUE
                continue
            if ch == _COLON:
                if self._expect is not _Expect.COLON:
                    raise self._unexpected("':'")
                self._pos += 1
                self._expect = _Expect.VALUE
                continue
            break

        start = self.offset
        if ch == _RBRACE:
            if self._expect not in (_Expect.NAME_OR_END, _Expect.SEPARATOR):
                raise self._unexpected("'}'")
            self._close_container(JsonToken.START_OBJECT)
            return self._set(JsonToken.END_OBJECT, None, start)
        if ch == _RBRACKET:
            if self._expect not in (_Expect.VALUE_OR_END, _Expect.SEPARATOR):
                raise self._unexpected("']'")
            self._close_container(JsonToken.START_ARRAY)
            return self._set(JsonToken.END_ARRAY, None, start)
        if ch == _QUOTE and self._expect in _NAME_STATES:
            text = self._read_string()
            self._expect = _Expect.COLON
            return self._set(JsonToken.FIELD_NAME, text, start)

        if self._expect not in _VALUE_STATES:
            raise self._unexpected(repr(chr(ch)))
        if ch == _LBRACE:
            self._pos += 1
            self._stack.append(JsonToken.START_OBJECT)
            self._expect = _Expect.NAME_OR_END
            return self._set(JsonToken.START_OBJECT, None, start)
        if ch == _LBRACKET:
            self._pos += 1
            self._stack.append(JsonToken.START_ARRAY)
            self._expect = _Expect.VALUE_OR_END
            return self._set(JsonToken.START_ARRAY, None, start)
        if ch == _QUOTE:
            token, value = JsonToken.VALUE_STRING, self._read_string()
        elif ch in _LITERALS:
            literal, token, value = _LITERALS[ch]
            self._ensure(len(literal))
            if not self._buf.startswith(literal, self._pos):
                raise self._error("invalid literal")
            self._pos += len(literal)
        elif ch == ord("-") or ord("0") <= ch <= ord("9"):
            token, value = JsonToken.VALUE_NUMBER, self._read_number()
        else:
            raise self._error(f"unexpected character {chr(ch)!r}")
        self._expect = self._after_value()
        return self._set(token, value, start)

    @property
    def text(self) -> str | None:
        """String form of the current scalar or field name (None for null)."""
        if self.token in (JsonToken.FIELD_NAME, JsonToken.VALUE_STRING, JsonToken.VALUE_NUMBER):
            return self.value
        if self.token is JsonToken.VALUE_TRUE:
            return "true"
        if self.token is JsonToken.VALUE_FALSE:
            return "false"
        return None

    def skip_children(self) -> None:
        """If positioned on a container start, consume through its matching end."""
        if self.token not in CONTAINER_STARTS:
            return
        target = self.depth - 1
        while self.depth > target:
            self.require_next()

    def require_next(self) -> JsonToken:
        token = self.next_token()
        if token is None:
            raise self._error("unexpected end of input")
        return token

    def read_tree_text(self) -> str:
        """Consume the current value and return it as compact JSON text.

        Numbers keep their original text; key order is preserved. Works
        iteratively, so nesting depth is bounded only by memory.
        """
        if self.token not in _TREE_VALUES:
            raise self._error(f"expected a value, got {self.token}")

        parts: list[str] = []
        base = self.depth - (1 if self.token in CONTAINER_STARTS else 0)
        token = self.token
        need_comma = False
        while True:
            if token is JsonToken.END_OBJECT or token is JsonToken.END_ARRAY:
                parts.append(token.value)
                need_comma = True
            else:
                if need_comma:
                    parts.append(",")
                if token is JsonToken.FIELD_NAME:
                    parts.append(json.dumps(self.value, ensure_ascii=False))
                    parts.append(":")
                    need_comma = False
                elif token in CONTAINER_STARTS:
                    parts.append(token.value)
                    need_comma = False
                else:
                    parts.append(self._scalar_text())
                    need_comma = True
            if self.depth == base:
                return "".join(parts)
            token = self.require_next()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buf = b""
        self._stream.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set(self, token, value, start):
        self.token = token
        self.value = value
        self.token_start = start
        return token

    def _in_object(self) -> bool:
        return bool(self._stack) and self._stack[-1] is JsonToken.START_OBJECT

    def _close_container(self, opener: JsonToken) -> None:
        if not self._stack or self._stack[-1] is not opener:
            closer = "}" if opener is JsonToken.START_OBJECT else "]"
            raise self._error(f"unbalanced {closer!r}")
        self._stack.pop()
        self._pos += 1
        self._expect = self._after_value()

    def _after_value(self) -> _Expect:
        return _Expect.SEPARATOR if self._stack else _Expect.DONE

    def _unexpected(self, what: str) -> LogFormatError:
        return self._error(f"unexpected {what}, expected {self._expect.value}")

    def _more(self) -> bool:
        """Read another chunk, dropping consumed bytes. False at end of stream."""
        if self._eof:
            return False
        chunk = self._stream.read(self._chunk_size)
        if not chunk:
            self._eof = True
            return False
        if self._pos:
            self._base += self._pos
            self._buf = self._buf[self._pos:]
            self._pos = 0
        self._buf += chunk
        return True

    def _ensure(self, n: int) -> None:
        while len(self._buf) - self._pos < n and self._more():
            pass

    def _peek(self) -> int | None:
        while True:
            buf = self._buf
            pos = self._pos
            end = len(buf)
            while pos < end and buf[pos] in _WHITESPACE:
                pos += 1
            self._pos = pos
            if pos < end:
                return buf[pos]
            if not self._more():
                return None

    def _read_string(self) -> str:
        search = 1  # relative to _pos, past the opening quote
        while True:
            end = self._buf.find(b'"', self._pos + search)
            if end < 0:
                search = len(self._buf) - self._pos
                if not self._more():
                    raise self._error("unterminated string")
                continue
            backslashes = 0
            j = end - 1
            while self._buf[j] == _BACKSLASH:
                backslashes += 1
                j -= 1
            if backslashes % 2 == 0:
                break
            search = end - self._pos + 1

        raw = self._buf[self._pos:end + 1]
        try:
            text = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise self._error(f"invalid string literal: {exc}") from exc
        self._pos = end + 1
        return text

    def _read_number(self) -> str:
        while True:
            match = _NUMBER_CHARS.match(self._buf, self._pos)
            if match.end() < len(self._buf) or not self._more():
                break
        text = match.group().decode("ascii")
        if not _NUMBER.match(text):
            raise self._error(f"invalid number {text!r}")
        self._pos = match.end()
        return text

    def _scalar_text(self) -> str:
        if self.token is JsonToken.VALUE_STRING:
            return json.dumps(self.value, ensure_ascii=False)
        if self.token is JsonToken.VALUE_NULL:
            return "null"
        return self.text

    def _error(self, message: str) -> LogFormatError:
        return LogFormatError(message, offset=self.offset)
