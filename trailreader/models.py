"""Source and log-file entities handed to the pipeline by the queue poller."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class LogFile:
    bucket: str
    key: str
    size: int | None = None  # filled in by LogFetcher after download


@dataclass
class Source:
    """One queue notification: an ordered list of log files plus the receipt handle.

    The pipeline only reads a Source; callbacks must not mutate it.
    """

    log_files: list[LogFile] = field(default_factory=list)
    handle: Any = None
    message_id: str | None = None
    attributes: dict = field(default_factory=dict)


def source_to_dict(source: Source) -> dict:
    """Summarize a Source for logging."""
    return {
        "message_id": source.message_id,
        "log_files": [f"s3://{f.bucket}/{f.key}" for f in source.log_files],
    }
