"""trailreader: decode CloudTrail log files from disk or S3 into JSON lines."""

import logging
import sys
from argparse import ArgumentParser

import boto3

from trailreader.config import load_config
from trailreader.handlers import record_to_json
from trailreader.models import LogFile, Source
from trailreader.pipeline import LogProcessor, SourceOutcome
from trailreader.progress import MetricsProgressReporter

logger = logging.getLogger(__name__)


class LocalFetcher:
    """Reads log files from the local filesystem; ``LogFile.key`` is the path."""

    def download_log(self, log_file: LogFile, source: Source) -> bytes | None:
        try:
            with open(log_file.key, "rb") as f:
                content = f.read()
        except OSError as exc:
            logger.error("Cannot read %s: %s", log_file.key, exc)
            return None
        log_file.size = len(content)
        return content


class JsonLinesProcessor:
    def __init__(self, out=None, with_offsets: bool = False):
        self._out = out or sys.stdout
        self._with_offsets = with_offsets

    def process(self, records) -> None:
        for decoded in records:
            line = record_to_json(decoded.record)
            if self._with_offsets:
                info = decoded.delivery_info
                line = f"{info.char_start}\t{info.char_end}\t{line}"
            self._out.write(line + "\n")
        self._out.flush()


def _parse_s3_url(url: str) -> LogFile:
    if not url.startswith("s3://") or "/" not in url[5:]:
        raise ValueError(f"Not an s3:// URL: {url}")
    bucket, key = url[5:].split("/", 1)
    return LogFile(bucket, key)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="trailreader",
        description="Decode CloudTrail log files into one JSON record per line.",
    )
    parser.add_argument("files", nargs="+", help="Local paths or s3://bucket/key URLs")
    parser.add_argument("--config", help="YAML config file (default: $CONFIG_PATH)")
    parser.add_argument("--offsets", action="store_true",
                        help="Prefix each line with the record's byte offsets")
    parser.add_argument("--stats", action="store_true",
                        help="Print per-stage progress metrics to stderr when done")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = load_config(args.config)
    metrics = MetricsProgressReporter()
    processor = JsonLinesProcessor(with_offsets=args.offsets)

    remote = [f for f in args.files if f.startswith("s3://")]
    local = [f for f in args.files if not f.startswith("s3://")]

    outcomes = []
    if local:
        pipeline = LogProcessor(config, records_processor=processor,
                                progress_reporter=metrics, fetcher=LocalFetcher())
        source = Source(log_files=[LogFile("file", path) for path in local])
        outcomes.append(pipeline.process_source(source))
    if remote:
        s3 = boto3.client("s3", region_name=config.s3_region)
        pipeline = LogProcessor(config, s3_client=s3, records_processor=processor,
                                progress_reporter=metrics)
        source = Source(log_files=[_parse_s3_url(url) for url in remote])
        outcomes.append(pipeline.process_source(source))

    if args.stats:
        for stage, counts in sorted(metrics.snapshot()["stages"].items()):
            print(f"{stage}: {counts}", file=sys.stderr)

    return 0 if all(o is SourceOutcome.PROCESSED for o in outcomes) else 1


if __name__ == "__main__":
    sys.exit(main())
