"""Error taxonomy for fetching and decoding audit logs.

Two families live here:

* ``ProcessingException`` and its subclasses are what the pipeline hands to
  the user's exception handler. They carry the ``ProgressStatus`` captured at
  the moment of failure so the handler can tell which stage, source and log
  file went wrong.
* ``DecodeError`` and its subclasses are raised by the record decoder to its
  immediate caller. They derive from ``OSError`` so that a bad field value is
  reported the same way as a failed stream read.
"""

from __future__ import annotations


class ProcessingException(Exception):
    """A stage-local failure routed to the exception handler."""

    def __init__(self, message: str, cause: BaseException | None = None, status=None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.status = status
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} ({type(self.cause).__name__}: {self.cause})"


class CallbackException(ProcessingException):
    """Raised by (or on behalf of) a user-supplied callback."""


class MessageParsingError(ValueError):
    """A queue message could not be turned into a Source."""


class DecodeError(OSError):
    """Base class for failures while decoding an audit log stream."""

    def __init__(self, message: str, offset: int | None = None):
        super().__init__(message)
        self.message = message
        self.offset = offset

    def __str__(self) -> str:
        if self.offset is None:
            return self.message
        return f"{self.message} at byte {self.offset}"


class LogFormatError(DecodeError):
    """The stream is not a recognized audit log. Fatal for the whole file."""


class RecordFieldError(DecodeError):
    """A known field could not be coerced to its type. Fatal for one record only.

    The decoder has already skipped past the rest of the record when this is
    raised, so the caller may continue with ``has_next()``.
    """

    def __init__(self, message: str, field: str, value=None,
                 char_start: int | None = None, char_end: int | None = None):
        super().__init__(message, offset=char_start)
        self.field = field
        self.value = value
        self.char_start = char_start
        self.char_end = char_end

    def __str__(self) -> str:
        return f"{self.message} (field {self.field!r}, bytes {self.char_start}-{self.char_end})"
