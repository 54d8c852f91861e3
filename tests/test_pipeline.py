"""Tests for LogProcessor: filtering, decoding, batching and error routing."""

import io
import json

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from trailreader import pipeline as pipeline_module
from trailreader.config import ProcessingConfig
from trailreader.decoder import DecoderState, RecordDecoder
from trailreader.delivery import DeliveryInfo
from trailreader.exceptions import (
    CallbackException,
    LogFormatError,
    MessageParsingError,
    ProcessingException,
    RecordFieldError,
)
from trailreader.models import LogFile, Source
from trailreader.pipeline import LogProcessor, SourceOutcome
from trailreader.progress import ProgressState


class StaticFetcher:
    """Serves log contents from a dict keyed by object key."""

    def __init__(self, contents: dict):
        self.contents = contents
        self.requested = []

    def download_log(self, log_file, source):
        self.requested.append(log_file.key)
        return self.contents.get(log_file.key)


def _source(*keys) -> Source:
    return Source(log_files=[LogFile("trail-bucket", key) for key in keys], message_id="m-1")


def _processor(contents, **kwargs) -> LogProcessor:
    config = kwargs.pop("config", ProcessingConfig())
    return LogProcessor(config, fetcher=StaticFetcher(contents), **kwargs)


class TestProcessSource:
    def test_all_records_emitted(self, log_bytes, collector, handler):
        pipeline = _processor({"a.json": log_bytes}, records_processor=collector,
                              exception_handler=handler)
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.PROCESSED
        assert len(collector.batches) == 2
        assert [len(b) for b in collector.batches] == [1, 1]
        assert handler.exceptions == []

    def test_log_files_processed_in_order(self, make_log, collector):
        contents = {
            "1.json": make_log([{"eventName": "one"}]),
            "2.json": make_log([{"eventName": "two"}]),
        }
        pipeline = _processor(contents, records_processor=collector)
        pipeline.process_source(_source("1.json", "2.json"))
        assert [r.event_name for r in collector.records] == ["one", "two"]

    def test_delivery_info_names_log_file(self, log_bytes, collector):
        source = _source("a.json")
        _processor({"a.json": log_bytes}, records_processor=collector).process_source(source)
        info = collector.batches[0][0].delivery_info
        assert info.log_file is source.log_files[0]
        assert info.source is source
        assert info.raw_record is None

    def test_batching(self, make_log, collector):
        data = make_log([{"eventName": str(i)} for i in range(5)])
        config = ProcessingConfig(max_records_per_emit=2)
        _processor({"a.json": data}, config=config,
                   records_processor=collector).process_source(_source("a.json"))
        assert [len(b) for b in collector.batches] == [2, 2, 1]
        assert [r.event_name for r in collector.records] == ["0", "1", "2", "3", "4"]

    def test_empty_log_emits_nothing(self, make_log, collector):
        outcome = _processor({"a.json": make_log([])},
                             records_processor=collector).process_source(_source("a.json"))
        assert outcome is SourceOutcome.PROCESSED
        assert collector.batches == []

    def test_download_failure_fails_source(self, log_bytes, collector):
        pipeline = _processor({"a.json": log_bytes}, records_processor=collector)
        outcome = pipeline.process_source(_source("missing.json", "a.json"))
        assert outcome is SourceOutcome.FAILED
        assert len(collector.records) == 2


class TestCompression:
    def test_gzip_detected_by_magic(self, gzipped_log, log_bytes, collector):
        _processor({"a.json": gzipped_log},
                   records_processor=collector).process_source(_source("a.json"))
        assert len(collector.records) == 2

    def test_raw_record_info_from_gzip(self, gzipped_log, sample_record, collector):
        config = ProcessingConfig(enable_raw_record_info=True)
        _processor({"a.json.gz": gzipped_log}, config=config,
                   records_processor=collector).process_source(_source("a.json.gz"))
        raw = collector.batches[0][0].delivery_info.raw_record
        assert json.loads(raw) == sample_record

    @pytest.mark.parametrize("raw_info", [False, True])
    def test_corrupt_gzip(self, raw_info, handler, collector):
        config = ProcessingConfig(enable_raw_record_info=raw_info)
        pipeline = _processor({"a.gz": b"\x1f\x8b" + b"garbage" * 10}, config=config,
                              records_processor=collector, exception_handler=handler)
        assert pipeline.process_source(_source("a.gz")) is SourceOutcome.FAILED
        assert collector.batches == []
        [exc] = handler.exceptions
        assert isinstance(exc.cause, OSError)
        assert exc.status.state is ProgressState.PROCESS_LOG


class TestInvalidRecords:
    RECORDS = [
        {"eventName": "first"},
        {"eventName": "bad", "eventID": "nope"},
        {"eventName": "third"},
    ]

    def test_skip_invalid_records(self, make_log, collector, handler):
        pipeline = _processor({"a.json": make_log(self.RECORDS)},
                              records_processor=collector, exception_handler=handler)
        outcome = pipeline.process_source(_source("a.json"))
        assert [r.event_name for r in collector.records] == ["first", "third"]
        assert outcome is SourceOutcome.FAILED
        [exc] = handler.exceptions
        assert isinstance(exc.cause, RecordFieldError)
        assert exc.cause.field == "eventID"

    def test_abort_on_invalid_record(self, make_log, collector, handler):
        config = ProcessingConfig(skip_invalid_records=False)
        pipeline = _processor({"a.json": make_log(self.RECORDS)}, config=config,
                              records_processor=collector, exception_handler=handler)
        pipeline.process_source(_source("a.json"))
        assert [r.event_name for r in collector.records] == ["first"]
        assert len(handler.exceptions) == 1

    def test_not_a_cloudtrail_log(self, collector, handler):
        pipeline = _processor({"a.json": b'{"Events": []}'},
                              records_processor=collector, exception_handler=handler)
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.FAILED
        assert isinstance(handler.exceptions[0].cause, LogFormatError)

    def test_records_before_truncation_are_emitted(self, collector, handler):
        data = b'{"Records": [{"eventName": "kept"}, {"eventName": '
        config = ProcessingConfig(max_records_per_emit=10)
        pipeline = _processor({"a.json": data}, config=config,
                              records_processor=collector, exception_handler=handler)
        pipeline.process_source(_source("a.json"))
        assert [r.event_name for r in collector.records] == ["kept"]
        assert isinstance(handler.exceptions[0].cause, LogFormatError)


class TestCallbacks:
    def test_source_filter_rejects(self, log_bytes, collector):
        class RejectAll:
            def filter_source(self, source):
                return False

        pipeline = _processor({"a.json": log_bytes}, records_processor=collector,
                              source_filter=RejectAll())
        outcome = pipeline.process_source(_source("a.json"))
        assert outcome is SourceOutcome.FILTERED
        assert outcome.acknowledge
        assert pipeline._fetcher.requested == []

    def test_source_filter_raises(self, log_bytes, handler):
        class Broken:
            def filter_source(self, source):
                raise KeyError("boom")

        pipeline = _processor({"a.json": log_bytes}, source_filter=Broken(),
                              exception_handler=handler)
        outcome = pipeline.process_source(_source("a.json"))
        assert outcome is SourceOutcome.FAILED
        assert not outcome.acknowledge
        [exc] = handler.exceptions
        assert isinstance(exc, CallbackException)
        assert isinstance(exc.cause, KeyError)
        assert exc.status.state is ProgressState.PROCESS_SOURCE

    def test_record_filter(self, make_log, collector):
        class OnlyWrites:
            def filter_record(self, decoded):
                return decoded.record.read_only is False

        data = make_log([{"readOnly": True}, {"readOnly": False}, {"readOnly": None}])
        _processor({"a.json": data}, records_processor=collector,
                   record_filter=OnlyWrites()).process_source(_source("a.json"))
        assert [r.read_only for r in collector.records] == [False]

    def test_callback_exception_keeps_identity(self, log_bytes, handler):
        raised = CallbackException("downstream is full")

        class Full:
            def process(self, records):
                raise raised

        pipeline = _processor({"a.json": log_bytes}, records_processor=Full(),
                              exception_handler=handler)
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.FAILED
        assert handler.exceptions[0] is raised
        assert raised.status.state is ProgressState.PROCESS_LOG

    def test_processor_error_is_wrapped(self, log_bytes, handler):
        class Broken:
            def process(self, records):
                raise RuntimeError("no")

        pipeline = _processor({"a.json": log_bytes}, records_processor=Broken(),
                              exception_handler=handler)
        pipeline.process_source(_source("a.json"))
        assert len(handler.exceptions) == 2
        assert all(isinstance(e, CallbackException) for e in handler.exceptions)

    def test_failing_handler_is_contained(self, make_log, caplog):
        class Raising:
            def handle_exception(self, exception):
                raise RuntimeError("handler broke")

        data = make_log([{"eventID": "bad"}, {"eventName": "ok"}])
        pipeline = _processor({"a.json": data}, exception_handler=Raising())
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.FAILED
        assert "Exception handler raised" in caplog.text

    def test_failing_reporter_is_contained(self, log_bytes, collector):
        class Raising:
            def report_start(self, status):
                raise RuntimeError("start")

            def report_end(self, status, token):
                raise RuntimeError("end")

        pipeline = _processor({"a.json": log_bytes}, records_processor=collector,
                              progress_reporter=Raising())
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.PROCESSED
        assert len(collector.records) == 2

    def test_uncaught_exception(self, handler, reporter):
        class Exploding:
            def download_log(self, log_file, source):
                raise RuntimeError("unexpected")

        source = _source("a.json")
        pipeline = LogProcessor(ProcessingConfig(), fetcher=Exploding(),
                                exception_handler=handler, progress_reporter=reporter)
        assert pipeline.process_source(source) is SourceOutcome.FAILED
        [exc] = handler.exceptions
        assert exc.status.state is ProgressState.UNCAUGHT_EXCEPTION
        assert exc.status.info.source is source
        assert isinstance(exc.status.info.exception, RuntimeError)

    def test_decoder_closed_and_batch_flushed_on_unexpected_error(
            self, monkeypatch, make_log, collector, handler):
        opened = []

        class TrackingDecoder(RecordDecoder):
            def __init__(self, stream, *args, **kwargs):
                super().__init__(stream, *args, **kwargs)
                self.stream = stream
                opened.append(self)

        class FailsOnSecondRecord:
            def __init__(self, log_file=None, source=None):
                self.calls = 0

            def delivery_info(self, char_start, char_end):
                self.calls += 1
                if self.calls > 1:
                    raise RuntimeError("delivery info unavailable")
                return DeliveryInfo(char_start, char_end)

        monkeypatch.setattr(pipeline_module, "RecordDecoder", TrackingDecoder)
        monkeypatch.setattr(pipeline_module, "OffsetDeliveryInfoProvider", FailsOnSecondRecord)

        data = make_log([{"eventName": "first"}, {"eventName": "second"}])
        pipeline = _processor({"a.json": data}, config=ProcessingConfig(max_records_per_emit=10),
                              records_processor=collector, exception_handler=handler)
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.FAILED

        [decoder] = opened
        assert decoder.state is DecoderState.CLOSED
        assert decoder.stream.closed
        assert [r.event_name for r in collector.records] == ["first"]
        [exc] = handler.exceptions
        assert exc.status.state is ProgressState.UNCAUGHT_EXCEPTION
        assert isinstance(exc.status.info.exception, RuntimeError)

    def test_deeply_nested_unknown_field_is_delivered(self, collector, handler):
        value = b"[" * 3000 + b"]" * 3000
        data = b'{"Records": [{"eventName": "a", "custom": ' + value + b'}]}'
        pipeline = _processor({"a.json": data}, records_processor=collector,
                              exception_handler=handler)
        assert pipeline.process_source(_source("a.json")) is SourceOutcome.PROCESSED
        assert collector.records[0]["custom"] == value.decode()
        assert handler.exceptions == []


class TestProgress:
    def test_brackets_are_nested_and_paired(self, log_bytes, reporter):
        pipeline = _processor({"a.json": log_bytes}, progress_reporter=reporter)
        pipeline.process_source(_source("a.json"))
        assert reporter.states() == [
            ("start", ProgressState.PROCESS_SOURCE),
            ("start", ProgressState.PROCESS_LOG),
            ("end", ProgressState.PROCESS_LOG),
            ("end", ProgressState.PROCESS_SOURCE),
        ]
        tokens = [token for _, _, token in reporter.events]
        assert tokens == [1, 2, 2, 1]
        assert all(status.success for kind, status, _ in reporter.events if kind == "end")

    def test_end_status_reports_failure(self, reporter):
        pipeline = _processor({"a.json": b"[]"}, progress_reporter=reporter)
        pipeline.process_source(_source("a.json"))
        ends = [status for kind, status, _ in reporter.events if kind == "end"]
        assert [s.success for s in ends] == [False, False]

    def test_with_s3_download(self, log_bytes, reporter, collector):
        client = boto3.client("s3", region_name="us-east-1",
                              aws_access_key_id="testing", aws_secret_access_key="testing")
        with Stubber(client) as stubber:
            stubber.add_response(
                "get_object",
                {"Body": StreamingBody(io.BytesIO(log_bytes), len(log_bytes)),
                 "ContentLength": len(log_bytes)},
                {"Bucket": "trail-bucket", "Key": "a.json"},
            )
            pipeline = LogProcessor(ProcessingConfig(), s3_client=client,
                                    records_processor=collector, progress_reporter=reporter)
            assert pipeline.process_source(_source("a.json")) is SourceOutcome.PROCESSED
        assert len(collector.records) == 2
        assert ("start", ProgressState.DOWNLOAD_LOG) in reporter.states()


class TestProcessMessage:
    def test_valid_message(self, log_bytes, collector):
        body = json.dumps({"Message": json.dumps({
            "s3Bucket": "trail-bucket", "s3ObjectKey": ["a.json"],
        })})
        pipeline = _processor({"a.json": log_bytes}, records_processor=collector)
        outcome = pipeline.process_message({"Body": body, "ReceiptHandle": "rh", "MessageId": "id"})
        assert outcome is SourceOutcome.PROCESSED
        source = collector.batches[0][0].delivery_info.source
        assert source.handle == "rh"
        assert source.message_id == "id"

    def test_unparseable_message(self, handler, reporter):
        pipeline = _processor({}, exception_handler=handler, progress_reporter=reporter)
        outcome = pipeline.process_message({"Body": "not json"})
        assert outcome is SourceOutcome.FAILED
        [exc] = handler.exceptions
        assert isinstance(exc, ProcessingException)
        assert isinstance(exc.cause, MessageParsingError)
        assert exc.status.state is ProgressState.PARSE_MESSAGE
        assert reporter.states() == [
            ("start", ProgressState.PARSE_MESSAGE),
            ("end", ProgressState.PARSE_MESSAGE),
        ]
        assert not reporter.events[-1][1].success


def test_uncompressed_content_with_gz_key(log_bytes, collector):
    # compression is decided by content, not by name
    _processor({"a.json.gz": log_bytes},
               records_processor=collector).process_source(_source("a.json.gz"))
    assert len(collector.records) == 2
