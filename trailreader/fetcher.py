"""Downloads audit log files from S3, bracketed by progress and exception reporting."""

import logging
from contextlib import closing

from botocore.exceptions import BotoCoreError, ClientError

from trailreader.exceptions import ProcessingException
from trailreader.handlers import ExceptionHandler
from trailreader.models import LogFile, Source
from trailreader.progress import ProcessLogInfo, ProgressReporter, ProgressState, ProgressStatus

logger = logging.getLogger(__name__)


class LogFetcher:
    """Fetches one log file at a time. Never retries; that is the S3 client's job."""

    def __init__(self, s3_client, exception_handler: ExceptionHandler,
                 progress_reporter: ProgressReporter):
        if s3_client is None:
            raise ValueError("s3 client is None")
        if exception_handler is None:
            raise ValueError("exception handler is None")
        if progress_reporter is None:
            raise ValueError("progress reporter is None")
        self._s3 = s3_client
        self._exception_handler = exception_handler
        self._progress_reporter = progress_reporter

    def download_log(self, log_file: LogFile, source: Source) -> bytes | None:
        """Return the file's bytes, or None if the download failed.

        A failure has already been handed to the exception handler when None
        is returned; the caller just skips the file.
        """
        success = False
        start_status = ProgressStatus(ProgressState.DOWNLOAD_LOG, ProcessLogInfo(source, log_file, success))
        token = self._progress_reporter.report_start(start_status)

        content = None
        try:
            response = self.get_object(log_file.bucket, log_file.key)
            with closing(response["Body"]) as body:
                content = body.read()
            log_file.size = response.get("ContentLength", len(content))
            success = True
            logger.info("Downloaded log file %s from %s", log_file.key, log_file.bucket)
        except (ClientError, BotoCoreError, OSError) as exc:
            content = None
            self._exception_handler.handle_exception(
                ProcessingException("Fail to download log file.", exc, start_status)
            )
        finally:
            end_status = ProgressStatus(ProgressState.DOWNLOAD_LOG, ProcessLogInfo(source, log_file, success))
            self._progress_reporter.report_end(end_status, token)

        return content

    def get_object(self, bucket: str, key: str) -> dict:
        """Single S3 GetObject call."""
        try:
            return self._s3.get_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError):
            logger.error("Failed to get object %s from s3 bucket %s", key, bucket)
            raise
