"""Configuration: frozen dataclass built from defaults <- YAML file <- env vars."""

import os
from dataclasses import dataclass, fields

import yaml


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class ProcessingConfig:
    s3_region: str = "us-east-1"
    max_records_per_emit: int = 1
    enable_raw_record_info: bool = False
    skip_invalid_records: bool = True
    supported_event_version: str = "1.02"
    chunk_size: int = 64 * 1024

    def __post_init__(self):
        if self.max_records_per_emit < 1:
            raise ValueError("max_records_per_emit must be at least 1")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")

    @classmethod
    def from_dict(cls, d: dict) -> "ProcessingConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(d) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return cls(
            s3_region=str(d.get("s3_region", cls.s3_region)),
            max_records_per_emit=int(d.get("max_records_per_emit", cls.max_records_per_emit)),
            enable_raw_record_info=_parse_bool(d.get("enable_raw_record_info", cls.enable_raw_record_info)),
            skip_invalid_records=_parse_bool(d.get("skip_invalid_records", cls.skip_invalid_records)),
            supported_event_version=str(d.get("supported_event_version", cls.supported_event_version)),
            chunk_size=int(d.get("chunk_size", cls.chunk_size)),
        )


_ENV_KEYS = {
    "S3_REGION": "s3_region",
    "MAX_RECORDS_PER_EMIT": "max_records_per_emit",
    "ENABLE_RAW_RECORD_INFO": "enable_raw_record_info",
    "SKIP_INVALID_RECORDS": "skip_invalid_records",
    "SUPPORTED_EVENT_VERSION": "supported_event_version",
    "CHUNK_SIZE": "chunk_size",
}


def load_yaml(path: str) -> dict:
    """Load a YAML mapping from *path*; an empty file yields {}."""
    with open(path, "r") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data


def load_config(path: str | None = None) -> ProcessingConfig:
    """Build ProcessingConfig from defaults <- YAML file <- env vars (highest priority).

    The file path comes from *path* or the ``CONFIG_PATH`` environment
    variable; with neither set, only defaults and env vars apply.
    """
    path = path or os.environ.get("CONFIG_PATH")
    values: dict = {}
    if path:
        values.update(load_yaml(path))

    for env_key, name in _ENV_KEYS.items():
        if env_key in os.environ:
            values[name] = os.environ[env_key]

    return ProcessingConfig.from_dict(values)
