"""The operations behind the CLI and the HTTP control plane."""

import logging
import threading
from typing import List, Optional

from kubernetes import client
from pydantic import ValidationError

from cdtool import config
from cdtool.config import OwnerLabel
from cdtool.errors import JobConfigError
from cdtool.k8s_client import create_job, generate_job_name, job_row, list_jobs
from cdtool.models import JobRequest, JobRow, UploadResult
from cdtool.poller import wait_for_job
from cdtool.source_server import SourceServer
from cdtool.sources import resolve_source_url

logger = logging.getLogger(__name__)


def new_job_request(**fields) -> JobRequest:
    try:
        return JobRequest(**fields)
    except ValidationError as e:
        missing = ", ".join(str(err["loc"][0]) for err in e.errors())
        raise JobConfigError(f"{missing} is not specified") from e


def list_job_rows(
    api: client.BatchV1Api,
    include_succeeded: bool = False,
    owner_label: OwnerLabel = config.OWNER_LABEL,
) -> List[JobRow]:
    rows = [job_row(job) for job in list_jobs(api, owner_label)]
    if include_succeeded:
        return rows
    return [row for row in rows if not row.succeeded]


def show_job_rows(
    api: client.BatchV1Api,
    namespace: Optional[str] = config.DEFAULT_NAMESPACE,
    job_name: Optional[str] = None,
    owner_label: OwnerLabel = config.OWNER_LABEL,
) -> List[JobRow]:
    return [job_row(job) for job in list_jobs(api, owner_label, namespace=namespace, job_name=job_name)]


def check_remote_input(src: str, tag: str) -> None:
    if not (tag or "").strip():
        raise JobConfigError("tag is not specified")
    if not (src or "").strip():
        raise JobConfigError("src is not specified")


def check_local_input(file_path: str, tag: str, listen_addr: str) -> None:
    if not (file_path or "").strip():
        raise JobConfigError("local image file not specified")
    if not (tag or "").strip():
        raise JobConfigError("tag is not specified")
    if not listen_addr:
        raise JobConfigError("listen address not specified")


def upload_remote(
    api: client.BatchV1Api,
    src: str,
    tag: str,
    *,
    namespace: str = config.DEFAULT_NAMESPACE,
    download_image: str = config.DEFAULT_DOWNLOAD_IMAGE,
    build_image: str = config.DEFAULT_BUILD_IMAGE,
    wait: bool = False,
    cancel: Optional[threading.Event] = None,
    owner_label: OwnerLabel = config.OWNER_LABEL,
) -> UploadResult:
    check_remote_input(src, tag)
    request = new_job_request(
        source_url=resolve_source_url(src),
        tag=tag,
        namespace=namespace,
        download_image=download_image,
        build_image=build_image,
    )
    manifest = create_job(api, request, owner_label)
    result = UploadResult(
        job_name=manifest["metadata"]["name"],
        namespace=request.namespace,
        source_url=request.source_url,
    )
    if wait:
        result.state = wait_for_job(api, result.namespace, result.job_name, cancel=cancel)
    return result


def upload_local(
    api: client.BatchV1Api,
    file_path: str,
    tag: str,
    *,
    listen_addr: str,
    listen_port: int = config.DEFAULT_HTTP_PORT,
    namespace: str = config.DEFAULT_NAMESPACE,
    download_image: str = config.DEFAULT_DOWNLOAD_IMAGE,
    build_image: str = config.DEFAULT_BUILD_IMAGE,
    cancel: Optional[threading.Event] = None,
    owner_label: OwnerLabel = config.OWNER_LABEL,
) -> UploadResult:
    """Serve a local image to the cluster and wait until it has been pushed.

    The file server is bound and running before the job is created, and it is
    stopped again (temporary copy included) once the job succeeds, polling is
    cancelled, or anything in between fails.
    """
    check_local_input(file_path, tag, listen_addr)

    job_name = generate_job_name()
    with SourceServer.stage(file_path, listen_addr, listen_port, prefix=job_name) as server:
        request = new_job_request(
            source_url=server.url,
            tag=tag,
            namespace=namespace,
            download_image=download_image,
            build_image=build_image,
        )
        create_job(api, request, owner_label, job_name=job_name)
        state = wait_for_job(api, request.namespace, job_name, cancel=cancel)

    return UploadResult(
        job_name=job_name,
        namespace=request.namespace,
        source_url=request.source_url,
        state=state,
    )
