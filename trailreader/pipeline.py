"""Fetch-and-decode pipeline: Source -> filter -> download -> decode -> emit.

Every stage is bracketed by the progress reporter, and every absorbed
failure reaches the exception handler with the ProgressStatus of the stage
it happened in. User callbacks are wrapped so that nothing they raise
escapes ``process_message`` or ``process_source``.
"""

from __future__ import annotations

import gzip
import io
import logging
import zlib
from decimal import Decimal
from enum import Enum

from trailreader.config import ProcessingConfig
from trailreader.decoder import RecordDecoder
from trailreader.delivery import DecodedRecord, OffsetDeliveryInfoProvider, RawRecordDeliveryInfoProvider
from trailreader.exceptions import (
    CallbackException,
    LogFormatError,
    MessageParsingError,
    ProcessingException,
    RecordFieldError,
)
from trailreader.fetcher import LogFetcher
from trailreader.handlers import (
    DefaultExceptionHandler,
    DefaultRecordFilter,
    DefaultSourceFilter,
    ExceptionHandler,
    GuardedExceptionHandler,
    LoggingRecordsProcessor,
    RecordFilter,
    RecordsProcessor,
    SourceFilter,
)
from trailreader.models import LogFile, Source, source_to_dict
from trailreader.notification import parse_message
from trailreader.progress import (
    GuardedProgressReporter,
    NullProgressReporter,
    ParseMessageInfo,
    ProcessLogInfo,
    ProcessSourceInfo,
    ProgressReporter,
    ProgressState,
    ProgressStatus,
    UncaughtExceptionInfo,
)

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"


class SourceOutcome(Enum):
    PROCESSED = "processed"  # every log file decoded without error
    FILTERED = "filtered"    # rejected by the source filter
    FAILED = "failed"        # at least one file or record failed

    @property
    def acknowledge(self) -> bool:
        """Whether the queue message may be deleted."""
        return self is not SourceOutcome.FAILED


class LogProcessor:
    def __init__(
        self,
        config: ProcessingConfig,
        s3_client=None,
        records_processor: RecordsProcessor | None = None,
        source_filter: SourceFilter | None = None,
        record_filter: RecordFilter | None = None,
        exception_handler: ExceptionHandler | None = None,
        progress_reporter: ProgressReporter | None = None,
        fetcher: LogFetcher | None = None,
    ):
        self._config = config
        self._records_processor = records_processor or LoggingRecordsProcessor()
        self._source_filter = source_filter or DefaultSourceFilter()
        self._record_filter = record_filter or DefaultRecordFilter()
        self._exception_handler = GuardedExceptionHandler(exception_handler or DefaultExceptionHandler())
        self._progress = GuardedProgressReporter(progress_reporter or NullProgressReporter())
        self._fetcher = fetcher or LogFetcher(s3_client, self._exception_handler, self._progress)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def process_message(self, message: dict) -> SourceOutcome:
        """Parse a queue message into a Source and process it."""
        start_status = ProgressStatus(ProgressState.PARSE_MESSAGE, ParseMessageInfo(message))
        token = self._progress.report_start(start_status)

        source = None
        try:
            source = parse_message(message)
        except MessageParsingError as exc:
            self._handle("Fail to parse message.", exc, start_status)
        finally:
            end_status = ProgressStatus(
                ProgressState.PARSE_MESSAGE, ParseMessageInfo(message, source is not None),
            )
            self._progress.report_end(end_status, token)

        if source is None:
            return SourceOutcome.FAILED
        return self.process_source(source)

    def process_source(self, source: Source) -> SourceOutcome:
        """Run every log file of *source* through download and decode, in order."""
        start_status = ProgressStatus(ProgressState.PROCESS_SOURCE, ProcessSourceInfo(source))
        token = self._progress.report_start(start_status)

        outcome = SourceOutcome.FAILED
        try:
            accepted = self._filter_source(source, start_status)
            if accepted is None:
                return outcome
            if not accepted:
                logger.info("Source filtered out: %s", source_to_dict(source))
                outcome = SourceOutcome.FILTERED
                return outcome

            all_ok = True
            for log_file in source.log_files:
                if not self.process_log(log_file, source):
                    all_ok = False
            outcome = SourceOutcome.PROCESSED if all_ok else SourceOutcome.FAILED
            return outcome
        except Exception as exc:
            self._report_uncaught(exc, source)
            outcome = SourceOutcome.FAILED
            return outcome
        finally:
            end_status = ProgressStatus(
                ProgressState.PROCESS_SOURCE,
                ProcessSourceInfo(source, outcome is not SourceOutcome.FAILED),
            )
            self._progress.report_end(end_status, token)

    def process_log(self, log_file: LogFile, source: Source) -> bool:
        """Download and decode one log file. True if every record decoded cleanly."""
        start_status = ProgressStatus(ProgressState.PROCESS_LOG, ProcessLogInfo(source, log_file))
        token = self._progress.report_start(start_status)

        success = False
        try:
            content = self._fetcher.download_log(log_file, source)
            if content is not None:
                success = self._decode_and_emit(content, log_file, source, start_status)
        finally:
            end_status = ProgressStatus(ProgressState.PROCESS_LOG, ProcessLogInfo(source, log_file, success))
            self._progress.report_end(end_status, token)
        return success

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _open_decoder(self, content: bytes, log_file: LogFile, source: Source) -> RecordDecoder:
        compressed = content[:2] == GZIP_MAGIC
        if self._config.enable_raw_record_info:
            # offsets index into the decompressed text, so decompress up front
            if compressed:
                content = gzip.decompress(content)
            provider = RawRecordDeliveryInfoProvider(content, log_file, source)
            stream = io.BytesIO(content)
        else:
            provider = OffsetDeliveryInfoProvider(log_file, source)
            stream = io.BytesIO(content)
            if compressed:
                stream = gzip.GzipFile(fileobj=stream, mode="rb")

        return RecordDecoder(
            stream,
            provider,
            supported_event_version=Decimal(self._config.supported_event_version),
            chunk_size=self._config.chunk_size,
        )

    def _decode_and_emit(self, content: bytes, log_file: LogFile, source: Source,
                         status: ProgressStatus) -> bool:
        try:
            decoder = self._open_decoder(content, log_file, source)
        except (OSError, EOFError, zlib.error) as exc:
            self._handle("Fail to decompress log file.", exc, status)
            return False

        success = True
        batch: list[DecodedRecord] = []
        try:
            while True:
                try:
                    if not decoder.has_next():
                        break
                    decoded = decoder.next_record()
                except RecordFieldError as exc:
                    success = False
                    self._handle(f"Fail to decode record in {log_file.key}.", exc, status)
                    if self._config.skip_invalid_records:
                        continue
                    break

                keep = self._filter_record(decoded, status)
                if keep is None:
                    success = False
                elif keep:
                    batch.append(decoded)
                    if len(batch) >= self._config.max_records_per_emit:
                        success = self._emit(batch, status) and success
                        batch = []
        except LogFormatError as exc:
            success = False
            self._handle(f"Log file {log_file.key} is not a valid CloudTrail log.", exc, status)
        except (OSError, EOFError, zlib.error) as exc:
            success = False
            self._handle(f"Fail to read log file {log_file.key}.", exc, status)
        finally:
            # runs on unexpected errors too; they propagate after cleanup
            if batch:
                success = self._emit(batch, status) and success
            try:
                decoder.close()
            except OSError as exc:
                self._handle(f"Fail to close log file {log_file.key}.", exc, status)

        logger.info("Processed log file %s from %s", log_file.key, log_file.bucket)
        return success

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _filter_source(self, source: Source, status: ProgressStatus) -> bool | None:
        """Run the source filter; None means it failed."""
        try:
            return bool(self._source_filter.filter_source(source))
        except Exception as exc:
            self._handle_callback("Source filter failed.", exc, status)
            return None

    def _filter_record(self, decoded: DecodedRecord, status: ProgressStatus) -> bool | None:
        try:
            return bool(self._record_filter.filter_record(decoded))
        except Exception as exc:
            self._handle_callback("Record filter failed.", exc, status)
            return None

    def _emit(self, batch: list[DecodedRecord], status: ProgressStatus) -> bool:
        try:
            self._records_processor.process(list(batch))
            return True
        except Exception as exc:
            self._handle_callback("Records processor failed.", exc, status)
            return False

    # ------------------------------------------------------------------
    # Error routing
    # ------------------------------------------------------------------

    def _handle(self, message: str, cause: BaseException, status: ProgressStatus) -> None:
        self._exception_handler.handle_exception(ProcessingException(message, cause, status))

    def _handle_callback(self, message: str, exc: Exception, status: ProgressStatus) -> None:
        if isinstance(exc, CallbackException):
            if exc.status is None:
                exc.status = status
            self._exception_handler.handle_exception(exc)
        else:
            self._exception_handler.handle_exception(CallbackException(message, exc, status))

    def _report_uncaught(self, exc: Exception, source: Source) -> None:
        status = ProgressStatus(ProgressState.UNCAUGHT_EXCEPTION, UncaughtExceptionInfo(exc, source))
        token = self._progress.report_start(status)
        try:
            self._handle("Uncaught exception while processing source.", exc, status)
        finally:
            self._progress.report_end(status, token)
