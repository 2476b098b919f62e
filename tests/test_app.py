"""Tests for the HTTP control plane."""

from __future__ import annotations

import os

import httpx
import pytest
from fastapi.testclient import TestClient
from kubernetes.client.exceptions import ApiException

import cdtool.app as app_module
from cdtool.app import app, get_batch_api
from cdtool.config import OWNER_LABEL
from cdtool.k8s_client import build_job_manifest
from cdtool.models import JobRequest

from conftest import FakeBatchApi


@pytest.fixture
def api_client(batch_api: FakeBatchApi):
    app.dependency_overrides[get_batch_api] = lambda: batch_api
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_submit_job_creates_remote_upload(api_client: TestClient, batch_api: FakeBatchApi) -> None:
    response = api_client.post(
        "/jobs",
        json={"source_url": "https://example.com/disk.img", "tag": "myreg/img:v1", "namespace": "build"},
    )

    assert response.status_code == 200
    body = response.json()
    [job] = batch_api.created
    assert body == {"message": "Job created", "job_name": job["metadata"]["name"], "namespace": "build"}


def test_submit_job_rejects_blank_tag(api_client: TestClient, batch_api: FakeBatchApi) -> None:
    response = api_client.post("/jobs", json={"source_url": "https://example.com/disk.img", "tag": " "})

    assert response.status_code == 422
    assert batch_api.created == []


def test_submit_job_maps_cluster_errors_to_bad_gateway(api_client: TestClient, batch_api: FakeBatchApi) -> None:
    batch_api.create_error = ApiException(status=403, reason="Forbidden")

    response = api_client.post("/jobs", json={"source_url": "https://example.com/disk.img", "tag": "myreg/img:v1"})

    assert response.status_code == 502
    assert "Forbidden" in response.json()["detail"]


def test_list_and_show_jobs(api_client: TestClient, batch_api: FakeBatchApi, job_request: JobRequest) -> None:
    batch_api.add_job(build_job_manifest("cdtool-a", job_request, OWNER_LABEL), failed=1)
    batch_api.add_job(build_job_manifest("cdtool-b", job_request, OWNER_LABEL), succeeded=1)

    assert [row["name"] for row in api_client.get("/jobs").json()] == ["cdtool-a"]
    assert [row["name"] for row in api_client.get("/jobs", params={"all": "true"}).json()] == ["cdtool-a", "cdtool-b"]

    detail = api_client.get("/jobs/ns1/cdtool-a").json()
    assert (detail["source"], detail["tag"], detail["failed"]) == ("http://x/y", "registry/img:v1", 1)
    assert api_client.get("/jobs/ns2/cdtool-a").status_code == 404


def _upload(api_client: TestClient, content: bytes, file_name: str = "disk.img"):
    return api_client.post(
        "/images/upload",
        files={"file": (file_name, content, "application/octet-stream")},
        data={"tag": "myreg/img:v1", "namespace": "build"},
    )


def _join_waiters() -> None:
    for waiter in list(app_module.waiters):
        waiter.join(timeout=10)


@pytest.fixture
def listen_locally(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_module.config, "LISTEN_ADDR", "127.0.0.1")
    monkeypatch.setattr(app_module.config, "LISTEN_PORT", 0)


def test_upload_image_serves_until_job_succeeds(
    api_client: TestClient, batch_api: FakeBatchApi, listen_locally: None
) -> None:
    batch_api.auto_succeed = True

    response = _upload(api_client, b"disk bytes")

    assert response.status_code == 200
    body = response.json()
    [job] = batch_api.created
    url = job["spec"]["template"]["spec"]["initContainers"][0]["env"][0]["value"]
    assert url == body["source_url"]
    assert url.startswith("http://127.0.0.1:") and url.endswith(f"/{body['job_name']}/disk.img")
    assert body["namespace"] == "build"

    _join_waiters()
    assert batch_api.status_reads >= 1
    assert app_module.waiters == set()
    assert not os.path.exists(os.path.join(app_module._source_server.root_dir, body["job_name"]))


def test_consecutive_uploads_share_one_image_server(
    api_client: TestClient, batch_api: FakeBatchApi, listen_locally: None
) -> None:
    first = _upload(api_client, b"first image")
    second = _upload(api_client, b"second image", file_name="other.img")

    assert (first.status_code, second.status_code) == (200, 200)
    first_url, second_url = first.json()["source_url"], second.json()["source_url"]
    assert first_url != second_url
    assert first_url.rsplit("/", 2)[0] == second_url.rsplit("/", 2)[0]
    assert len(batch_api.created) == 2

    # jobs never finish, so both images stay available
    assert httpx.get(first_url, trust_env=False).content == b"first image"
    assert httpx.get(second_url, trust_env=False).content == b"second image"


def test_shutdown_releases_pending_waiters(batch_api: FakeBatchApi, listen_locally: None) -> None:
    app.dependency_overrides[get_batch_api] = lambda: batch_api
    try:
        with TestClient(app) as test_client:
            response = _upload(test_client, b"disk bytes")
            assert response.status_code == 200
            server = app_module._source_server
            pending = list(app_module.waiters)
            assert len(pending) == 1 and pending[0].is_alive()
    finally:
        app.dependency_overrides.clear()

    assert app_module.shutdown_event.is_set()
    assert not pending[0].is_alive()
    assert app_module.waiters == set()
    assert app_module._source_server is None
    assert not os.path.exists(server.root_dir)


def test_upload_image_requires_listen_address(
    api_client: TestClient, batch_api: FakeBatchApi, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(app_module.config, "LISTEN_ADDR", "")

    response = api_client.post(
        "/images/upload",
        files={"file": ("disk.img", b"disk bytes", "application/octet-stream")},
        data={"tag": "myreg/img:v1"},
    )

    assert response.status_code == 500
    assert batch_api.created == []
