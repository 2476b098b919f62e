import logging
import secrets
from datetime import datetime, timezone
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from cdtool.config import OwnerLabel
from cdtool.errors import ClusterError
from cdtool.models import JobRequest, JobRow

logger = logging.getLogger(__name__)

JOB_NAME_PREFIX = "cdtool"
# same alphabet as k8s.io/apimachinery rand.String, keeps names DNS-1123 safe
NAME_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
NAME_SUFFIX_LENGTH = 4

SAVE_VOLUME = "saveplace"
SAVE_PATH = "/save"
CONTAINER_STORAGE_VOLUME = "varlibcontainers"
CONTAINER_STORAGE_PATH = "/var/lib/containers"
DISK_IMAGE_PATH = f"{SAVE_PATH}/disk.img"


def load_batch_api(kubeconfig: Optional[str] = None) -> client.BatchV1Api:
    """Build a BatchV1Api from a kubeconfig file.

    Without an explicit path the kubernetes client looks at ``KUBECONFIG`` and
    then ``~/.kube/config``; if neither exists the in-cluster service account
    is tried, so the control plane also works from inside a pod.
    """
    try:
        config.load_kube_config(config_file=kubeconfig)
    except (ConfigException, FileNotFoundError) as e:
        if kubeconfig:
            raise ClusterError(f"error building kubeconfig from {kubeconfig}: {e}") from e
        try:
            config.load_incluster_config()
        except ConfigException as incluster_error:
            raise ClusterError(f"no usable kubeconfig found: {e}") from incluster_error
    return client.BatchV1Api()


def generate_job_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(NAME_SUFFIX_ALPHABET) for _ in range(NAME_SUFFIX_LENGTH))
    return f"{JOB_NAME_PREFIX}-{now.strftime('%y%m%d-%H%M%S')}-{suffix}"


def build_job_manifest(job_name: str, request: JobRequest, owner_label: OwnerLabel) -> Dict:
    save_mount = {"name": SAVE_VOLUME, "mountPath": SAVE_PATH}

    download_container = {
        "name": "download",
        "image": request.download_image,
        # URL only ever reaches wget through the environment
        "command": ["sh", "-c", f'wget "$URL" -O {DISK_IMAGE_PATH}'],
        "env": [{"name": "URL", "value": request.source_url}],
        "volumeMounts": [save_mount],
    }
    build_container = {
        "name": "buildandpush",
        "image": request.build_image,
        "command": ["sh", "-c", "/buildandpush.sh"],
        "env": [
            {"name": "TAG", "value": request.tag},
            {"name": "INSECURE", "value": "true"},
        ],
        "volumeMounts": [
            dict(save_mount),
            {"name": CONTAINER_STORAGE_VOLUME, "mountPath": CONTAINER_STORAGE_PATH},
        ],
        "securityContext": {"privileged": True},
    }

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": job_name,
            "namespace": request.namespace,
            "labels": owner_label.as_dict(),
        },
        "spec": {
            "template": {
                "spec": {
                    "initContainers": [download_container],
                    "containers": [build_container],
                    "volumes": [
                        {"name": CONTAINER_STORAGE_VOLUME, "emptyDir": {}},
                        {"name": SAVE_VOLUME, "emptyDir": {}},
                    ],
                    "restartPolicy": "Never",
                }
            }
        },
    }


def create_job(
    api: client.BatchV1Api,
    request: JobRequest,
    owner_label: OwnerLabel,
    job_name: Optional[str] = None,
) -> Dict:
    manifest = build_job_manifest(job_name or generate_job_name(), request, owner_label)
    name = manifest["metadata"]["name"]
    try:
        api.create_namespaced_job(namespace=request.namespace, body=manifest)
    except ApiException as e:
        raise ClusterError(f"failed to create job {name}: {e.reason}") from e
    except Urllib3HTTPError as e:
        raise ClusterError(f"failed to create job {name}: {e}") from e
    logger.info("job %s created in namespace %s", name, request.namespace)
    return manifest


def get_job_status(api: client.BatchV1Api, namespace: str, job_name: str) -> client.V1JobStatus:
    job = api.read_namespaced_job_status(job_name, namespace=namespace)
    return job.status or client.V1JobStatus()


def list_jobs(
    api: client.BatchV1Api,
    owner_label: OwnerLabel,
    namespace: Optional[str] = None,
    job_name: Optional[str] = None,
) -> List[client.V1Job]:
    kwargs = {"label_selector": owner_label.selector}
    if job_name:
        kwargs["field_selector"] = f"metadata.name={job_name}"
    try:
        if namespace:
            jobs = api.list_namespaced_job(namespace, **kwargs)
        else:
            jobs = api.list_job_for_all_namespaces(**kwargs)
    except ApiException as e:
        raise ClusterError(f"failed to list jobs: {e.reason}") from e
    except Urllib3HTTPError as e:
        raise ClusterError(f"failed to list jobs: {e}") from e
    return list(jobs.items or [])


def _first_env_value(containers: Optional[List[client.V1Container]]) -> str:
    if not containers or not containers[0].env:
        return ""
    return containers[0].env[0].value or ""


def job_row(job: client.V1Job) -> JobRow:
    pod_spec = job.spec.template.spec if job.spec and job.spec.template else None
    status = job.status or client.V1JobStatus()
    return JobRow(
        namespace=job.metadata.namespace,
        name=job.metadata.name,
        source=_first_env_value(pod_spec.init_containers if pod_spec else None),
        tag=_first_env_value(pod_spec.containers if pod_spec else None),
        failed=status.failed or 0,
        succeeded=status.succeeded == 1,
        completion_time=status.completion_time,
    )
