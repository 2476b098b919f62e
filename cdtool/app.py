import asyncio
import logging
import os
import shutil
import threading
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional, Set

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from kubernetes import client

from cdtool import commands, config
from cdtool.errors import CdtoolError, ClusterError, JobConfigError
from cdtool.k8s_client import create_job, generate_job_name, load_batch_api
from cdtool.models import JobRequest
from cdtool.poller import wait_for_job
from cdtool.source_server import SourceServer

logger = logging.getLogger(__name__)

# set on shutdown so waiters give up and release their served images
shutdown_event = threading.Event()

_state_lock = threading.Lock()
_source_server: Optional[SourceServer] = None
waiters: Set[threading.Thread] = set()


def _shared_source_server() -> SourceServer:
    global _source_server
    with _state_lock:
        if _source_server is None:
            _source_server = SourceServer.open(config.LISTEN_ADDR, config.LISTEN_PORT).start()
        return _source_server


def _shutdown_waiters() -> None:
    global _source_server
    shutdown_event.set()
    with _state_lock:
        pending = list(waiters)
    for waiter in pending:
        waiter.join()
    with _state_lock:
        server, _source_server = _source_server, None
    if server is not None:
        server.stop()


@asynccontextmanager
async def lifespan(app: FastAPI):
    shutdown_event.clear()
    yield
    await asyncio.to_thread(_shutdown_waiters)


app = FastAPI(title="cdtool control plane", lifespan=lifespan)


@lru_cache(maxsize=1)
def get_batch_api() -> client.BatchV1Api:
    return load_batch_api(os.getenv("KUBECONFIG") or None)


def _http_error(e: CdtoolError) -> HTTPException:
    if isinstance(e, JobConfigError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ClusterError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _serve_until_done(api: client.BatchV1Api, server: SourceServer, namespace: str, job_name: str) -> None:
    try:
        wait_for_job(api, namespace, job_name, cancel=shutdown_event)
    except CdtoolError:
        logger.exception("stopped watching job %s/%s", namespace, job_name)
    finally:
        server.remove(job_name)
        with _state_lock:
            waiters.discard(threading.current_thread())


def _start_waiter(api: client.BatchV1Api, server: SourceServer, namespace: str, job_name: str) -> None:
    waiter = threading.Thread(
        target=_serve_until_done,
        args=(api, server, namespace, job_name),
        name=f"wait-{job_name}",
        daemon=True,
    )
    with _state_lock:
        waiters.add(waiter)
    waiter.start()


@app.post("/images/upload")
def upload_image(
    file: UploadFile = File(...),
    tag: str = Form(...),
    namespace: str = Form(config.DEFAULT_NAMESPACE),
    api: client.BatchV1Api = Depends(get_batch_api),
):
    """
    Upload a disk image and convert it in the cluster.

    Every upload lands in its own directory on the shared image server and is
    served from there until the job has pushed it.
    """
    if not config.LISTEN_ADDR:
        raise HTTPException(status_code=500, detail="CDTOOL_LISTEN_ADDR env not configured")

    try:
        server = _shared_source_server()
    except CdtoolError as e:
        raise _http_error(e)

    job_name = generate_job_name()
    file_name = os.path.basename(file.filename or "") or "disk.img"
    try:
        with open(os.path.join(server.job_dir(job_name), file_name), "wb") as f:
            shutil.copyfileobj(file.file, f)
        request = commands.new_job_request(
            source_url=server.url_for(f"{job_name}/{file_name}"), tag=tag, namespace=namespace
        )
        create_job(api, request, config.OWNER_LABEL, job_name=job_name)
    except Exception as e:
        server.remove(job_name)
        if isinstance(e, CdtoolError):
            raise _http_error(e)
        raise

    _start_waiter(api, server, request.namespace, job_name)
    return {"job_name": job_name, "namespace": request.namespace, "source_url": request.source_url}


@app.post("/jobs")
def submit_job(req: JobRequest, api: client.BatchV1Api = Depends(get_batch_api)):
    try:
        result = commands.upload_remote(
            api,
            req.source_url,
            req.tag,
            namespace=req.namespace,
            download_image=req.download_image,
            build_image=req.build_image,
        )
    except CdtoolError as e:
        raise _http_error(e)
    return {"message": "Job created", "job_name": result.job_name, "namespace": result.namespace}


@app.get("/jobs")
def jobs(all: bool = False, api: client.BatchV1Api = Depends(get_batch_api)):
    try:
        rows = commands.list_job_rows(api, include_succeeded=all)
    except CdtoolError as e:
        raise _http_error(e)
    return [
        {
            "namespace": row.namespace,
            "name": row.name,
            "failed": row.failed,
            "succeeded": row.succeeded,
            "completion_time": row.completion_time,
        }
        for row in rows
    ]


@app.get("/jobs/{namespace}/{job_name}")
def status(namespace: str, job_name: str, api: client.BatchV1Api = Depends(get_batch_api)):
    try:
        rows = commands.show_job_rows(api, namespace=namespace, job_name=job_name)
    except CdtoolError as e:
        raise _http_error(e)
    if not rows:
        raise HTTPException(status_code=404, detail=f"job {namespace}/{job_name} not found")
    return rows[0].model_dump()
