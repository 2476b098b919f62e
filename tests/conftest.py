"""Shared fixtures: an in-memory stand-in for the Kubernetes batch API."""

from __future__ import annotations

import copy
import threading
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from cdtool.models import JobRequest


def to_v1_job(manifest: dict) -> client.V1Job:
    """Deserialize a manifest dict with the client's own model decoder."""

    return client.ApiClient()._ApiClient__deserialize(copy.deepcopy(manifest), "V1Job")


class FakeBatchApi:
    """Records created jobs and answers reads and lists from memory."""

    def __init__(self) -> None:
        self.jobs: Dict[Tuple[str, str], dict] = {}
        self.created: List[dict] = []
        self.list_calls: List[dict] = []
        self.status_reads = 0
        # consumed one entry per status read: a status dict or an exception to raise
        self.status_sequence: List[object] = []
        self.auto_succeed = False
        self.create_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None

    def add_job(self, manifest: dict, **status: object) -> None:
        manifest = copy.deepcopy(manifest)
        if status:
            manifest["status"] = status
        self.jobs[(manifest["metadata"]["namespace"], manifest["metadata"]["name"])] = manifest

    def create_namespaced_job(self, namespace: str, body: dict) -> client.V1Job:
        if self.create_error is not None:
            raise self.create_error
        key = (namespace, body["metadata"]["name"])
        if key in self.jobs:
            raise ApiException(status=409, reason="AlreadyExists")
        self.created.append(copy.deepcopy(body))
        self.add_job(body)
        return to_v1_job(body)

    def read_namespaced_job_status(self, name: str, namespace: str) -> client.V1Job:
        self.status_reads += 1
        key = (namespace, name)
        if key not in self.jobs:
            raise ApiException(status=404, reason="NotFound")
        if self.status_sequence:
            item = self.status_sequence.pop(0)
            if isinstance(item, Exception):
                raise item
            self.jobs[key]["status"] = item
        elif self.auto_succeed:
            self.jobs[key]["status"] = {"succeeded": 1, "completionTime": "2026-10-19T10:00:00Z"}
        return to_v1_job(self.jobs[key])

    def _select(self, namespace: Optional[str], label_selector: str, field_selector: Optional[str]) -> client.V1JobList:
        if self.list_error is not None:
            raise self.list_error
        self.list_calls.append(
            {"namespace": namespace, "label_selector": label_selector, "field_selector": field_selector}
        )
        label_key, label_value = label_selector.split("=", 1)
        items = []
        for (job_namespace, job_name), manifest in sorted(self.jobs.items()):
            if namespace and job_namespace != namespace:
                continue
            if manifest["metadata"].get("labels", {}).get(label_key) != label_value:
                continue
            if field_selector and field_selector != f"metadata.name={job_name}":
                continue
            items.append(to_v1_job(manifest))
        return client.V1JobList(items=items)

    def list_namespaced_job(self, namespace: str, label_selector: str = "", field_selector: Optional[str] = None):
        return self._select(namespace, label_selector, field_selector)

    def list_job_for_all_namespaces(self, label_selector: str = "", field_selector: Optional[str] = None):
        return self._select(None, label_selector, field_selector)


class RecordingEvent(threading.Event):
    """Cancellation event whose waits return immediately and are recorded."""

    def __init__(self, cancel_after: Optional[int] = None) -> None:
        super().__init__()
        self.waits: List[float] = []
        self.cancel_after = cancel_after

    def wait(self, timeout: Optional[float] = None) -> bool:
        self.waits.append(timeout)
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            self.set()
        return self.is_set()


@pytest.fixture
def batch_api() -> FakeBatchApi:
    return FakeBatchApi()


@pytest.fixture
def job_request() -> JobRequest:
    return JobRequest(source_url="http://x/y", tag="registry/img:v1", namespace="ns1")
