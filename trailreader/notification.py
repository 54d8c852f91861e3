"""Turns a queue message announcing new log files into a Source.

The message body is either an SNS envelope whose ``Message`` field holds the
notification as a JSON string, or (with raw message delivery) the
notification itself::

    {"s3Bucket": "my-trail-bucket", "s3ObjectKey": ["AWSLogs/.../x.json.gz"]}
"""

import json

import jsonschema

from trailreader.exceptions import MessageParsingError
from trailreader.models import LogFile, Source

NOTIFICATION_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["s3Bucket", "s3ObjectKey"],
    "properties": {
        "s3Bucket": {"type": "string", "minLength": 1},
        "s3ObjectKey": {
            "type": "array",
            "minItems": 1,
            "items": {"type": "string", "minLength": 1},
        },
    },
}

_validator = jsonschema.Draft202012Validator(NOTIFICATION_SCHEMA)


def _loads(text, what: str) -> dict:
    if not isinstance(text, str):
        raise MessageParsingError(f"{what} is not a string")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MessageParsingError(f"{what} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MessageParsingError(f"{what} is not a JSON object")
    return data


def parse_notification(body: str) -> dict:
    """Return the validated notification dict carried by a message body."""
    data = _loads(body, "Message body")
    if "Message" in data and "s3Bucket" not in data:
        data = _loads(data["Message"], "SNS Message")

    errors = sorted(_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        raise MessageParsingError(
            "Not a CloudTrail notification: " + "; ".join(e.message for e in errors)
        )
    return data


def parse_message(message: dict) -> Source:
    """Build a Source from a queue message as returned by SQS ``receive_message``."""
    if "Body" not in message:
        raise MessageParsingError("Message has no Body")
    notification = parse_notification(message["Body"])
    bucket = notification["s3Bucket"]
    return Source(
        log_files=[LogFile(bucket, key) for key in notification["s3ObjectKey"]],
        handle=message.get("ReceiptHandle"),
        message_id=message.get("MessageId"),
        attributes=dict(message.get("Attributes", {})),
    )
