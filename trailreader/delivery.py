"""Delivery metadata attached to each decoded record.

The decoder only knows byte offsets. Which log file those offsets belong to,
and whether the raw JSON text of the record is attached, is decided by the
``DeliveryInfoProvider`` the decoder's owner passes in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from trailreader.models import LogFile, Source
from trailreader.records import Record


@dataclass(frozen=True)
class DeliveryInfo:
    char_start: int
    char_end: int
    log_file: LogFile | None = None
    source: Source | None = None
    raw_record: str | None = None


@dataclass(frozen=True)
class DecodedRecord:
    """A record paired with where it came from. The unit handed downstream."""

    record: Record
    delivery_info: DeliveryInfo


@runtime_checkable
class DeliveryInfoProvider(Protocol):
    def delivery_info(self, char_start: int, char_end: int) -> DeliveryInfo: ...


class OffsetDeliveryInfoProvider:
    """Offsets plus file identity."""

    def __init__(self, log_file: LogFile | None = None, source: Source | None = None):
        self._log_file = log_file
        self._source = source

    def delivery_info(self, char_start: int, char_end: int) -> DeliveryInfo:
        return DeliveryInfo(char_start, char_end, self._log_file, self._source)


class RawRecordDeliveryInfoProvider:
    """Also attaches the exact JSON text of the record, sliced from *content*.

    *content* must be the same (decompressed) bytes the decoder is reading.
    """

    def __init__(self, content: bytes, log_file: LogFile | None = None,
                 source: Source | None = None):
        self._content = content
        self._log_file = log_file
        self._source = source

    def delivery_info(self, char_start: int, char_end: int) -> DeliveryInfo:
        raw = self._content[char_start:char_end].decode("utf-8")
        return DeliveryInfo(char_start, char_end, self._log_file, self._source, raw)
