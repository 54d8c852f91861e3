"""User callback interfaces and their default implementations."""

from __future__ import annotations

import json
import logging
from typing import Protocol, runtime_checkable

from trailreader.delivery import DecodedRecord
from trailreader.exceptions import ProcessingException
from trailreader.models import Source
from trailreader.records import Record

logger = logging.getLogger(__name__)


@runtime_checkable
class ExceptionHandler(Protocol):
    def handle_exception(self, exception: ProcessingException) -> None: ...


@runtime_checkable
class SourceFilter(Protocol):
    """Decides whether a Source is processed at all.

    Called before any download. The Source is shared, not copied: do not
    modify it. Raise CallbackException to report a failure.
    """

    def filter_source(self, source: Source) -> bool: ...


@runtime_checkable
class RecordFilter(Protocol):
    def filter_record(self, record: DecodedRecord) -> bool: ...


@runtime_checkable
class RecordsProcessor(Protocol):
    def process(self, records: list[DecodedRecord]) -> None: ...


class DefaultExceptionHandler:
    """Logs the exception and its cause."""

    def handle_exception(self, exception: ProcessingException) -> None:
        state = exception.status.state.value if exception.status is not None else "unknown"
        logger.error("[%s] %s", state, exception.message, exc_info=exception.cause or exception)


class DefaultSourceFilter:
    def filter_source(self, source: Source) -> bool:
        return True


class DefaultRecordFilter:
    def filter_record(self, record: DecodedRecord) -> bool:
        return True


class LoggingRecordsProcessor:
    """Logs one line per record."""

    def process(self, records: list[DecodedRecord]) -> None:
        for decoded in records:
            logger.info("%s", record_to_json(decoded.record))


def record_to_json(record: Record) -> str:
    return json.dumps(record.to_dict(), sort_keys=True)


class GuardedExceptionHandler:
    """Wraps a user handler so that nothing it raises reaches the pipeline."""

    def __init__(self, handler: ExceptionHandler):
        self._handler = handler

    def handle_exception(self, exception: ProcessingException) -> None:
        try:
            self._handler.handle_exception(exception)
        except Exception:
            logger.exception("Exception handler raised while handling: %s", exception)
