"""Tests for the HTTP and websocket surface."""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from reelforge.api import create_app
from reelforge.models import JobStatus, PipelineRun
from reelforge.runtime import build_runtime


class NullExtractor:
    async def extract(self, url):
        return ""


@pytest.fixture
def runtime(settings, registry, session_store):
    return build_runtime(settings, registry=registry, session_store=session_store, extractor=NullExtractor())


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime, start_workers=False)) as c:
        yield c


@pytest.fixture
def token(runtime):
    return runtime.token_auth.generate_token("u1", name="test")


@pytest.fixture
def headers(token):
    return {"Authorization": f"Bearer {token}"}


# ===================================================================
# Health and auth
# ===================================================================

class TestHealthAndAuth:

    @pytest.mark.unit
    def test_health_is_public(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["workers_running"] is False
        assert body["queue"]["queued"] == 0

    @pytest.mark.unit
    def test_missing_token(self, client):
        resp = client.post("/api/operations/topic", json={"topic": "x"})
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    @pytest.mark.unit
    def test_bad_token(self, client):
        resp = client.get("/api/jobs", headers={"Authorization": "Bearer rf_nope"})
        assert resp.status_code == 401


# ===================================================================
# Triggers
# ===================================================================

class TestTriggers:

    @pytest.mark.unit
    def test_topic_acknowledged_and_queued(self, client, headers, runtime):
        resp = client.post("/api/operations/topic", headers=headers,
                           json={"topic": "space travel", "params": {"aspectRatio": "9:16"}})
        assert resp.status_code == 202
        ack = resp.json()
        job = runtime.queue.get(ack["jobId"])
        assert job.operation_id == ack["operationId"]
        assert job.status == JobStatus.QUEUED.value
        assert job.payload == {"topic": "space travel", "params": {"aspectRatio": "9:16"}, "userId": "u1"}
        [entry] = runtime.activity.recent(action="operation_queued")
        assert entry.user_id == "u1"

    @pytest.mark.unit
    def test_url_trigger(self, client, headers, runtime):
        resp = client.post("/api/operations/url", headers=headers, json={"url": "https://example.com/post"})
        assert resp.status_code == 202
        assert runtime.queue.get(resp.json()["jobId"]).job_type == "create_from_url"

    @pytest.mark.unit
    @pytest.mark.parametrize("path,body", [
        ("/api/operations/url", {"url": "ftp://example.com/file"}),
        ("/api/operations/topic", {"topic": "   "}),
        ("/api/operations/topic", {}),
    ])
    def test_invalid_payload(self, client, headers, runtime, path, body):
        resp = client.post(path, headers=headers, json=body)
        assert resp.status_code == 422
        assert runtime.queue.list_jobs() == []


# ===================================================================
# Jobs and runs
# ===================================================================

class TestJobsAndRuns:

    @pytest.mark.unit
    def test_users_see_only_their_jobs(self, client, headers, runtime):
        mine = runtime.queue.enqueue("create_from_topic", {"topic": "a", "userId": "u1"})
        theirs = runtime.queue.enqueue("create_from_topic", {"topic": "b", "userId": "u2"})

        listed = client.get("/api/jobs", headers=headers).json()["jobs"]
        assert [j["job_id"] for j in listed] == [mine.job_id]
        assert client.get(f"/api/jobs/{mine.job_id}", headers=headers).status_code == 200
        assert client.get(f"/api/jobs/{theirs.job_id}", headers=headers).status_code == 404
        assert client.get("/api/jobs/missing", headers=headers).status_code == 404

    @pytest.mark.unit
    def test_run_lookup(self, client, headers, runtime):
        runtime.orchestrator.store.save_run(PipelineRun(operation_id="op-mine", user_id="u1", subject="x"))
        runtime.orchestrator.store.save_run(PipelineRun(operation_id="op-other", user_id="u2", subject="y"))
        resp = client.get("/api/runs/op-mine", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["subject"] == "x"
        assert client.get("/api/runs/op-other", headers=headers).status_code == 404

    @pytest.mark.unit
    def test_run_attempts(self, client, headers, runtime):
        store = runtime.orchestrator.store
        store.save_run(PipelineRun(operation_id="op-r", user_id="u1", status="failed", error="down"))
        store.save_run(PipelineRun(operation_id="op-r", attempt=2, user_id="u1", status="completed"))
        assert client.get("/api/runs/op-r", headers=headers).json()["attempt"] == 2
        attempts = client.get("/api/runs/op-r/attempts", headers=headers).json()["attempts"]
        assert [(a["attempt"], a["status"]) for a in attempts] == [(1, "failed"), (2, "completed")]
        assert client.get("/api/runs/op-other/attempts", headers=headers).status_code == 404


# ===================================================================
# Registry and preferences
# ===================================================================

class TestRegistryRoutes:

    @pytest.mark.unit
    def test_registry(self, client, headers):
        rows = client.get("/api/registry", headers=headers).json()["adapters"]
        assert {"capability_key": "image", "adapter_id": "artist"}.items() <= next(
            r for r in rows if r["capability_key"] == "image").items()

    @pytest.mark.unit
    def test_set_preference(self, client, headers, runtime):
        resp = client.put("/api/preferences/distribution:youtube", headers=headers, json={"adapterIds": ["yt"]})
        assert resp.status_code == 200
        assert runtime.preferences.get("u1", "distribution:youtube").ordered_adapter_ids == ("yt",)

    @pytest.mark.unit
    @pytest.mark.parametrize("key,ids", [("painting", ["yt"]), ("image", ["nobody"])])
    def test_rejected_preference(self, client, headers, key, ids):
        resp = client.put(f"/api/preferences/{key}", headers=headers, json={"adapterIds": ids})
        assert resp.status_code == 422


# ===================================================================
# Websocket
# ===================================================================

class TestOperationsSocket:

    @pytest.mark.unit
    def test_ack_then_queued_event(self, client, headers, token, runtime):
        with client.websocket_connect(f"/ws/operations?token={token}") as ws:
            ack = ws.receive_json()
            assert ack["type"] == "connection_ack"
            assert ack["data"]["userId"] == "u1"
            resp = client.post("/api/operations/topic", headers=headers, json={"topic": "volcanoes"})
            event = ws.receive_json()
            assert event["type"] == "task_queued"
            assert event["data"]["operationId"] == resp.json()["operationId"]

    @pytest.mark.unit
    @pytest.mark.parametrize("query", ["", "?token=rf_wrong"])
    def test_rejected_without_valid_token(self, client, query):
        with pytest.raises(WebSocketDisconnect) as info:
            with client.websocket_connect(f"/ws/operations{query}"):
                pass
        assert info.value.code == 1008
