"""Shared pytest fixtures for the trailreader test suite."""

import gzip
import json

import pytest

from trailreader.config import ProcessingConfig


def _make_log(records: list[dict]) -> bytes:
    """Serialize *records* as a CloudTrail log file body."""
    return json.dumps({"Records": records}).encode("utf-8")


@pytest.fixture()
def sample_record() -> dict:
    """A realistic assumed-role record with a session issuer."""
    return {
        "eventVersion": "1.02",
        "userIdentity": {
            "type": "AssumedRole",
            "principalId": "AROAEXAMPLE:session",
            "arn": "arn:aws:sts::123456789012:assumed-role/Admin/session",
            "accessKeyId": "ASIAEXAMPLE",
            "sessionContext": {
                "attributes": {
                    "mfaAuthenticated": "false",
                    "creationDate": "2014-01-01T00:00:00Z",
                },
                "sessionIssuer": {
                    "type": "Role",
                    "principalId": "AROAEXAMPLE",
                    "arn": "arn:aws:iam::210987654321:role/Admin",
                    "accountId": "210987654321",
                    "userName": "Admin",
                },
            },
        },
        "eventTime": "2014-01-01T00:00:00Z",
        "eventSource": "ec2.amazonaws.com",
        "eventName": "DescribeInstances",
        "awsRegion": "us-east-1",
        "sourceIPAddress": "192.0.2.1",
        "userAgent": "aws-cli/1.3.0",
        "requestParameters": {"instancesSet": {"items": [{"instanceId": "i-1234"}]}},
        "responseElements": None,
        "requestID": "22222222-2222-2222-2222-222222222222",
        "eventID": "11111111-1111-1111-1111-111111111111",
        "eventType": "AwsApiCall",
        "recipientAccountId": "123456789012",
    }


@pytest.fixture()
def log_bytes(sample_record) -> bytes:
    second = dict(sample_record, eventID="33333333-3333-3333-3333-333333333333")
    return _make_log([sample_record, second])


@pytest.fixture()
def gzipped_log(log_bytes) -> bytes:
    return gzip.compress(log_bytes)


@pytest.fixture()
def config() -> ProcessingConfig:
    return ProcessingConfig()


@pytest.fixture()
def make_log():
    """Factory: list of record dicts -> log file bytes."""
    return _make_log


class RecordingHandler:
    def __init__(self):
        self.exceptions = []

    def handle_exception(self, exception):
        self.exceptions.append(exception)


class RecordingReporter:
    """Keeps every start/end call; tokens are sequential ints."""

    def __init__(self):
        self.events = []
        self._next_token = 0

    def report_start(self, status):
        self._next_token += 1
        self.events.append(("start", status, self._next_token))
        return self._next_token

    def report_end(self, status, token):
        self.events.append(("end", status, token))

    def states(self):
        return [(kind, status.state) for kind, status, _ in self.events]


class CollectingProcessor:
    def __init__(self):
        self.batches = []

    def process(self, records):
        self.batches.append(records)

    @property
    def records(self):
        return [decoded.record for batch in self.batches for decoded in batch]


@pytest.fixture()
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture()
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture()
def collector() -> CollectingProcessor:
    return CollectingProcessor()
