"""Streaming decoder: audit log bytes -> DecodedRecord objects, one at a time.

The decoder walks the token stream once, front to back. Each record object
is decoded field by field through the case tables in ``trailreader.fields``;
fields not listed there are kept as JSON text. Nothing is buffered beyond the
record currently being decoded.

Typical use::

    with RecordDecoder(stream, provider) as decoder:
        while decoder.has_next():
            decoded = decoder.next_record()
"""

from __future__ import annotations

import io
import logging
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from types import MappingProxyType
from typing import BinaryIO, Iterator, Mapping

from trailreader.delivery import (
    DecodedRecord,
    DeliveryInfoProvider,
    OffsetDeliveryInfoProvider,
)
from trailreader.exceptions import LogFormatError, RecordFieldError
from trailreader.fields import (
    RECORD_FIELDS,
    RESOURCE_FIELDS,
    SESSION_CONTEXT_FIELDS,
    SESSION_ISSUER_FIELDS,
    USER_IDENTITY_FIELDS,
    WEB_IDENTITY_FIELDS,
    FieldKind,
    RecordField,
    field_kind,
)
from trailreader.records import (
    TIMESTAMP_FORMAT,
    FieldBag,
    Record,
    Resource,
    SessionContext,
    SessionIssuer,
    UserIdentity,
    WebIdentitySessionContext,
)
from trailreader.tokens import CONTAINER_STARTS, DEFAULT_CHUNK_SIZE, JsonToken, TokenReader

logger = logging.getLogger(__name__)

RECORDS = "Records"
SUPPORTED_EVENT_VERSION = Decimal("1.02")

_UUID_PATTERN = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\Z")


class DecoderState(Enum):
    UNOPENED = "unopened"
    HEADER_CONSUMED = "header-consumed"
    RECORDS_AVAILABLE = "records-available"
    RECORDS_EXHAUSTED = "records-exhausted"
    CLOSED = "closed"


class _FieldValueError(ValueError):
    """A value that cannot be coerced; turned into RecordFieldError by next_record."""

    def __init__(self, field: str, value, message: str):
        super().__init__(message)
        self.field = field
        self.value = value


class RecordDecoder:
    """Pull-based decoder over one audit log file.

    Not thread-safe: one decoder belongs to one caller for one file.
    """

    def __init__(
        self,
        stream: BinaryIO,
        delivery_info_provider: DeliveryInfoProvider | None = None,
        log: logging.Logger | None = None,
        supported_event_version: Decimal = SUPPORTED_EVENT_VERSION,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self._reader = TokenReader(stream, chunk_size)
        self._provider = delivery_info_provider or OffsetDeliveryInfoProvider()
        self._logger = log or logger
        self._supported_version = Decimal(supported_event_version)
        self._state = DecoderState.UNOPENED
        self.version_warnings = 0

        self._parsers = {
            FieldKind.DEFAULT: self._parse_default_value,
            FieldKind.TEXT: self._parse_text,
            FieldKind.VERSION: self._parse_event_version,
            FieldKind.TIMESTAMP: self._parse_timestamp,
            FieldKind.UUID: self._parse_uuid,
            FieldKind.BOOLEAN: self._parse_boolean,
            FieldKind.USER_IDENTITY: self._parse_user_identity,
            FieldKind.SESSION_CONTEXT: self._parse_session_context,
            FieldKind.SESSION_ISSUER: self._parse_session_issuer,
            FieldKind.WEB_IDENTITY: self._parse_web_identity_session_context,
            FieldKind.ATTRIBUTES: self._parse_attributes,
            FieldKind.RESOURCES: self._parse_resources,
        }

    @classmethod
    def from_bytes(cls, content: bytes, **kwargs) -> "RecordDecoder":
        return cls(io.BytesIO(content), **kwargs)

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def offset(self) -> int:
        """Current byte offset in the stream."""
        return self._reader.offset

    # ------------------------------------------------------------------
    # Stream protocol
    # ------------------------------------------------------------------

    def read_header(self) -> None:
        """Consume ``{"Records": [``. Raises LogFormatError on anything else."""
        self._check_open()
        if self._state is not DecoderState.UNOPENED:
            raise ValueError("header already consumed")

        reader = self._reader
        if reader.next_token() is not JsonToken.START_OBJECT:
            raise LogFormatError("Not a JSON object", reader.token_start)
        if reader.next_token() is not JsonToken.FIELD_NAME or reader.value != RECORDS:
            raise LogFormatError("Not a CloudTrail log", reader.token_start)
        if reader.next_token() is not JsonToken.START_ARRAY:
            raise LogFormatError("Not a CloudTrail log", reader.token_start)
        self._state = DecoderState.HEADER_CONSUMED

    def has_next(self) -> bool:
        """Advance to the next record. Safe to call repeatedly."""
        self._check_open()
        if self._state is DecoderState.UNOPENED:
            self.read_header()
        if self._state is DecoderState.RECORDS_AVAILABLE:
            return True
        if self._state is DecoderState.RECORDS_EXHAUSTED:
            return False

        token = self._reader.next_token()
        if token in CONTAINER_STARTS:
            self._state = DecoderState.RECORDS_AVAILABLE
            return True
        if token is JsonToken.END_ARRAY:
            self._state = DecoderState.RECORDS_EXHAUSTED
            return False
        raise LogFormatError(f"Unexpected {token} in {RECORDS} array", self._reader.token_start)

    def next_record(self) -> DecodedRecord:
        """Decode the record the stream is positioned on.

        Raises RecordFieldError for a value that cannot be coerced; the rest
        of that record has been skipped by then, so decoding can continue.
        Raises LogFormatError if the stream itself is malformed.
        """
        if not self.has_next():
            raise EOFError("no more records")

        reader = self._reader
        char_start = reader.token_start
        record_depth = reader.depth
        self._state = DecoderState.HEADER_CONSUMED

        try:
            if reader.token is not JsonToken.START_OBJECT:
                raise _FieldValueError(RECORDS, None, "record is not a JSON object")
            record = Record()
            self._read_fields(record, RECORD_FIELDS)
        except _FieldValueError as exc:
            while reader.depth >= record_depth:
                reader.require_next()
            raise RecordFieldError(
                str(exc), exc.field, exc.value, char_start, reader.offset,
            ) from exc

        self._set_account_id(record)
        record.freeze()

        # offset just past the record's closing brace
        char_end = reader.offset
        return DecodedRecord(record, self._provider.delivery_info(char_start, char_end))

    def __iter__(self) -> Iterator[DecodedRecord]:
        """Yield records until exhausted; stops at the first error raised."""
        while self.has_next():
            yield self.next_record()

    def close(self) -> None:
        """Release the token reader and its stream. Idempotent."""
        if self._state is DecoderState.CLOSED:
            return
        self._state = DecoderState.CLOSED
        self._reader.close()

    def __enter__(self) -> "RecordDecoder":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _check_open(self) -> None:
        if self._state is DecoderState.CLOSED:
            raise ValueError("decoder is closed")

    # ------------------------------------------------------------------
    # Structures
    # ------------------------------------------------------------------

    def _read_fields(self, bag: FieldBag, table: dict[str, FieldKind]) -> None:
        """Fill *bag* from the object the reader just opened, through its END_OBJECT."""
        reader = self._reader
        while reader.require_next() is not JsonToken.END_OBJECT:
            if reader.token is not JsonToken.FIELD_NAME:
                raise LogFormatError(f"Expected a field name, got {reader.token}", reader.token_start)
            name = reader.value
            bag.add(name, self._parsers[field_kind(table, name)](name))

    def _parse_struct(self, name: str, cls: type[FieldBag], table: dict[str, FieldKind]):
        token = self._reader.require_next()
        if token is JsonToken.VALUE_NULL:
            return None
        if token is not JsonToken.START_OBJECT:
            raise _FieldValueError(name, self._reader.text, f"{name} is not an object")
        bag = cls()
        self._read_fields(bag, table)
        return bag.freeze()

    def _parse_user_identity(self, name: str) -> UserIdentity | None:
        return self._parse_struct(name, UserIdentity, USER_IDENTITY_FIELDS)

    def _parse_session_context(self, name: str) -> SessionContext | None:
        return self._parse_struct(name, SessionContext, SESSION_CONTEXT_FIELDS)

    def _parse_session_issuer(self, name: str) -> SessionIssuer | None:
        # only present on role and federated sessions
        return self._parse_struct(name, SessionIssuer, SESSION_ISSUER_FIELDS)

    def _parse_web_identity_session_context(self, name: str) -> WebIdentitySessionContext | None:
        return self._parse_struct(name, WebIdentitySessionContext, WEB_IDENTITY_FIELDS)

    def _parse_resource(self) -> Resource:
        # START_OBJECT already consumed by _parse_resources
        resource = Resource()
        self._read_fields(resource, RESOURCE_FIELDS)
        return resource.freeze()

    def _parse_resources(self, name: str) -> tuple[Resource, ...] | None:
        reader = self._reader
        token = reader.require_next()
        if token is JsonToken.VALUE_NULL:
            return None
        if token is not JsonToken.START_ARRAY:
            raise _FieldValueError(name, reader.text, "resources is not a list")

        resources = []
        while reader.require_next() is not JsonToken.END_ARRAY:
            if reader.token is not JsonToken.START_OBJECT:
                raise _FieldValueError(name, reader.text, "resource is not an object")
            resources.append(self._parse_resource())
        return tuple(resources)

    def _parse_attributes(self, name: str) -> Mapping[str, str | None] | None:
        reader = self._reader
        token = reader.require_next()
        if token is JsonToken.VALUE_NULL:
            return None
        if token is not JsonToken.START_OBJECT:
            raise _FieldValueError(name, reader.text, "attributes is not an object")

        attributes = {}
        while reader.require_next() is not JsonToken.END_OBJECT:
            if reader.token is not JsonToken.FIELD_NAME:
                raise LogFormatError(f"Expected a field name, got {reader.token}", reader.token_start)
            key = reader.value
            attributes[key] = self._parse_default_value(key)
        return MappingProxyType(attributes)

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    def _parse_default_value(self, name: str) -> str | None:
        """Passthrough: null -> None, object/array -> JSON text, scalar -> text."""
        token = self._reader.require_next()
        if token is JsonToken.VALUE_NULL:
            return None
        if token in CONTAINER_STARTS:
            return self._reader.read_tree_text()
        return self._reader.text

    def _parse_text(self, name: str) -> str | None:
        token = self._reader.require_next()
        if token in CONTAINER_STARTS:
            raise _FieldValueError(name, None, f"{name} is not a scalar")
        return self._reader.text

    def _parse_event_version(self, name: str) -> str | None:
        version = self._parse_text(name)
        if version is not None:
            self._check_event_version(version)
        return version

    def _check_event_version(self, version: str) -> None:
        try:
            parsed = Decimal(version)
        except InvalidOperation:
            parsed = None
        if parsed is None or not parsed.is_finite():
            self.version_warnings += 1
            self._logger.warning("EventVersion %r is not a decimal number", version)
        elif parsed > self._supported_version:
            self.version_warnings += 1
            self._logger.warning(
                "EventVersion %s is newer than supported version %s; decoding anyway",
                version, self._supported_version,
            )

    def _parse_timestamp(self, name: str) -> datetime | None:
        text = self._parse_text(name)
        if text is None:
            return None
        try:
            return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise _FieldValueError(name, text, f"Cannot parse {text!r} as a date") from exc

    def _parse_uuid(self, name: str) -> uuid.UUID | None:
        text = self._parse_text(name)
        if text is None:
            return None
        if not _UUID_PATTERN.match(text):
            raise _FieldValueError(name, text, f"Cannot parse {text!r} as a UUID")
        return uuid.UUID(text)

    def _parse_boolean(self, name: str) -> bool | None:
        token = self._reader.require_next()
        if token is JsonToken.VALUE_NULL:
            return None
        if token in (JsonToken.VALUE_TRUE, JsonToken.VALUE_FALSE):
            return self._reader.value
        raise _FieldValueError(name, self._reader.text, f"{name} is not a boolean")

    # ------------------------------------------------------------------
    # Derived fields
    # ------------------------------------------------------------------

    @staticmethod
    def _set_account_id(record: Record) -> None:
        """Fill top-level accountId from the identity when the record lacks one.

        UserIdentity.accountId wins over SessionIssuer.accountId.
        """
        if RecordField.accountId.value in record:
            return
        identity = record.user_identity
        if identity is None:
            return

        account_id = identity.account_id
        if account_id is None:
            context = identity.session_context
            issuer = context.session_issuer if context is not None else None
            if issuer is not None:
                account_id = issuer.account_id
        if account_id is not None:
            record.add(RecordField.accountId.value, account_id)
