import logging
import sys
import threading
import time
from datetime import timedelta
from typing import Optional, TextIO

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from cdtool import config
from cdtool.errors import ClusterError
from cdtool.k8s_client import get_job_status
from cdtool.models import PollState

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def _is_transient(error: Exception) -> bool:
    if isinstance(error, ApiException):
        return error.status in TRANSIENT_STATUS_CODES
    # connection refused, timeouts and dropped connections all land here
    return isinstance(error, Urllib3HTTPError)


def _fetch_status(
    api: client.BatchV1Api,
    namespace: str,
    job_name: str,
    retry_attempts: int,
    retry_backoff_seconds: float,
    cancel: threading.Event,
) -> Optional[client.V1JobStatus]:
    attempt = 0
    while True:
        attempt += 1
        try:
            return get_job_status(api, namespace, job_name)
        except (ApiException, Urllib3HTTPError) as e:
            if not _is_transient(e) or attempt >= retry_attempts:
                reason = e.reason if isinstance(e, ApiException) else e
                raise ClusterError(f"failed to get job {namespace}/{job_name}: {reason}") from e
            logger.warning(
                "transient error reading job %s/%s (attempt %d/%d): %s",
                namespace, job_name, attempt, retry_attempts, e,
            )
            if cancel.wait(retry_backoff_seconds * attempt):
                return None


def wait_for_job(
    api: client.BatchV1Api,
    namespace: str,
    job_name: str,
    *,
    interval: float = config.POLL_INTERVAL_SECONDS,
    cancel: Optional[threading.Event] = None,
    retry_attempts: int = config.POLL_RETRY_ATTEMPTS,
    retry_backoff_seconds: float = 1.0,
    out: Optional[TextIO] = None,
) -> PollState:
    """Poll a job until it has succeeded once or ``cancel`` is set.

    Pod failures are only reported; the job keeps running from our point of
    view until ``succeeded`` reaches 1. Transient API errors are retried up to
    ``retry_attempts`` times, anything else raises ClusterError.
    """
    cancel = cancel or threading.Event()
    out = out or sys.stdout
    state = PollState.RUNNING
    out.write("waiting for completion...\n")
    out.flush()
    started = time.monotonic()

    while not cancel.is_set():
        status = _fetch_status(api, namespace, job_name, retry_attempts, retry_backoff_seconds, cancel)
        if status is None:
            break
        if status.succeeded == 1:
            out.write("\ndone\n")
            out.flush()
            logger.info("job %s/%s succeeded", namespace, job_name)
            return PollState.SUCCEEDED

        failed = status.failed or 0
        if failed and state is PollState.RUNNING:
            state = PollState.FAILED_RUNNING
            logger.warning("job %s/%s has failed pods, still waiting", namespace, job_name)
        elapsed = timedelta(seconds=round(time.monotonic() - started))
        out.write(f"\rfailed {failed} times, time elapsed {elapsed}...")
        out.flush()
        if cancel.wait(interval):
            break

    out.write("\naborted\n")
    out.flush()
    logger.info("stopped waiting for job %s/%s", namespace, job_name)
    return PollState.ABORTED
