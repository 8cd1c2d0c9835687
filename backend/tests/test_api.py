# tests/test_api.py - HTTP surface and live progress channel
import asyncio
import io
import zipfile

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from packager.main import create_app

from conftest import ScriptedPackager, make_tar, make_zip, options

TERMINAL = ("completed", "failed", "cancelled")


async def upload(client: AsyncClient, data: bytes = None, filename: str = "build.zip") -> dict:
    resp = await client.post("/upload", files={"file": (filename, data or make_zip(), "application/octet-stream")})
    assert resp.status_code == 200, resp.text
    return resp.json()


async def wait_job(client: AsyncClient, job_id: str, timeout: float = 15.0) -> dict:
    for _ in range(int(timeout / 0.05)):
        data = (await client.get(f"/jobs/{job_id}")).json()
        if data["status"] in TERMINAL:
            return data
        await asyncio.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


async def submit(client: AsyncClient, session_id: str, platforms, **opts) -> dict:
    resp = await client.post("/jobs", json={"session_id": session_id, "platforms": platforms, "options": options(**opts)})
    assert resp.status_code == 202, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["jobs"]["workers"] == 2


@pytest.mark.asyncio
async def test_platforms(client: AsyncClient):
    data = (await client.get("/platforms")).json()
    tags = {p["platform"] for p in data["platforms"]}
    assert tags == {"linux", "pwa", "windows", "android"}
    assert data["versions"]["linux"] == "1.0.0"


@pytest.mark.asyncio
async def test_upload_and_session_lookup(client: AsyncClient):
    session = await upload(client)
    assert session["file_count"] == 4
    resp = await client.get(f"/sessions/{session['session_id']}")
    assert resp.status_code == 200
    listed = (await client.get("/sessions")).json()
    assert [s["session_id"] for s in listed] == [session["session_id"]]


@pytest.mark.asyncio
async def test_upload_tarball(client: AsyncClient):
    session = await upload(client, make_tar(), "build.tgz")
    assert session["file_count"] == 4


@pytest.mark.asyncio
async def test_upload_rejects_unknown_format(client: AsyncClient):
    resp = await client.post("/upload", files={"file": ("build.7z", b"data", "application/octet-stream")})
    assert resp.status_code == 400
    assert resp.json()["error"] == "UploadError"


@pytest.mark.asyncio
async def test_delete_session(client: AsyncClient):
    session = await upload(client)
    assert (await client.delete(f"/sessions/{session['session_id']}")).status_code == 200
    assert (await client.get(f"/sessions/{session['session_id']}")).status_code == 404


@pytest.mark.asyncio
async def test_job_lifecycle(client: AsyncClient):
    session = await upload(client)
    created = await submit(client, session["session_id"], ["linux", "pwa"])
    assert created["status"] in ("queued", "running", "completed")
    job = await wait_job(client, created["job_id"])
    assert job["status"] == "completed"
    assert job["partial"] is False
    assert job["progress"] == 100

    status = (await client.get(f"/status/{created['job_id']}")).json()
    assert status["status"] == "completed"

    results = (await client.get(f"/jobs/{created['job_id']}/results")).json()
    assert {r["platform"] for r in results} == {"linux", "pwa"}
    linux = next(r for r in results if r["platform"] == "linux")
    resp = await client.get(linux["download_url"])
    assert resp.status_code == 200
    assert resp.content == b"artifact"

    logs = await client.get(f"/logs/{created['job_id']}")
    assert logs.status_code == 200
    assert "=== completed" in logs.text

    bundle = await client.get(f"/download/{created['job_id']}/all.zip")
    assert bundle.status_code == 200
    with zipfile.ZipFile(io.BytesIO(bundle.content)) as zf:
        names = set(zf.namelist())
    assert {"linux/Demo-App-1.2.3.linux", "pwa/Demo-App-1.2.3.pwa", "job.log"} <= names


@pytest.mark.asyncio
async def test_partial_failure_is_completed(client: AsyncClient):
    session = await upload(client)
    created = await submit(client, session["session_id"], ["linux", "android"])
    job = await wait_job(client, created["job_id"])
    assert job["status"] == "completed"
    assert job["partial"] is True
    assert job["results"]["android"]["outcome"] == "failure"

    retry = await client.post(f"/jobs/{created['job_id']}/retry")
    assert retry.status_code == 202
    assert retry.json()["retry_of"] == created["job_id"]
    assert retry.json()["job_id"] != created["job_id"]


@pytest.mark.asyncio
async def test_invalid_submission(client: AsyncClient):
    resp = await client.post("/jobs", json={"session_id": "nope", "platforms": ["symbian"], "options": {}})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "ValidationError"
    assert len(body["errors"]) >= 3


@pytest.mark.asyncio
async def test_bulk_submission(client: AsyncClient):
    session = await upload(client)
    resp = await client.post("/jobs/bulk", json={"session_id": session["session_id"], "jobs": [
        {"platforms": ["linux"], "options": options()},
        {"platforms": ["pwa"], "options": options(app_version="2.0"), "priority": 2},
    ]})
    assert resp.status_code == 202, resp.text
    body = resp.json()
    assert body["total_jobs"] == 2
    assert [j["platforms"] for j in body["jobs"]] == [["linux"], ["pwa"]]
    for created in body["jobs"]:
        assert (await wait_job(client, created["job_id"]))["status"] == "completed"


@pytest.mark.asyncio
async def test_bulk_submission_rejects_all_or_nothing(client: AsyncClient):
    session = await upload(client)
    resp = await client.post("/jobs/bulk", json={"session_id": session["session_id"], "jobs": [
        {"platforms": ["linux"], "options": options()},
        {"platforms": ["linux"], "options": options(app_name="../escaped")},
    ]})
    assert resp.status_code == 422
    assert all(e.startswith("jobs[1]: ") for e in resp.json()["errors"])
    assert (await client.get("/jobs")).json() == []


@pytest.mark.asyncio
async def test_unknown_job(client: AsyncClient):
    assert (await client.get("/jobs/unknown")).status_code == 404
    assert (await client.post("/jobs/unknown/cancel")).status_code == 404
    assert (await client.get("/download/unknown/linux/x.AppImage")).status_code == 404


@pytest.mark.asyncio
async def test_conflicts(client: AsyncClient):
    session = await upload(client)
    created = await submit(client, session["session_id"], ["linux"])
    await wait_job(client, created["job_id"])
    assert (await client.post(f"/jobs/{created['job_id']}/cancel")).status_code == 409
    assert (await client.post(f"/jobs/{created['job_id']}/retry")).status_code == 409
    assert (await client.get(f"/download/{created['job_id']}/linux/missing.bin")).status_code == 404
    assert (await client.delete(f"/jobs/{created['job_id']}")).status_code == 200
    assert (await client.get(f"/jobs/{created['job_id']}")).status_code == 404


@pytest.mark.asyncio
async def test_history_and_reprocess(client: AsyncClient):
    session = await upload(client)
    created = await submit(client, session["session_id"], ["pwa"], app_version="3.1")
    await wait_job(client, created["job_id"])
    history = (await client.get("/jobs/history")).json()
    assert history[0]["job_id"] == created["job_id"]
    draft = (await client.get("/jobs/history/0/reprocess")).json()
    assert draft["options"]["app_version"] == "3.1"
    assert draft["platforms"] == ["pwa"]
    by_id = (await client.get(f"/jobs/{created['job_id']}/reprocess")).json()
    assert by_id == draft
    assert (await client.get("/jobs/history/7/reprocess")).status_code == 404
    listed = (await client.get("/jobs", params={"status": "completed"})).json()
    assert [j["job_id"] for j in listed] == [created["job_id"]]


def test_websocket_streams_job_events(settings):
    packagers = {p: ScriptedPackager(settings, p) for p in ("linux", "pwa")}
    with TestClient(create_app(settings, packagers)) as client:
        session = client.post("/upload", files={"file": ("build.zip", make_zip(), "application/zip")}).json()
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            job = client.post("/jobs", json={
                "session_id": session["session_id"], "platforms": ["linux", "pwa"], "options": options(),
            }).json()
            events = []
            while True:
                event = ws.receive_json()
                if event.get("job_id") != job["job_id"]:
                    continue
                events.append(event)
                if event["type"] in ("packaging-completed", "packaging-failed", "packaging-cancelled"):
                    break
    types = [e["type"] for e in events]
    assert types[0] == "packaging-queued"
    assert "packaging-started" in types
    assert types.count("packaging-platform-completed") == 2
    assert types[-1] == "packaging-completed"
    assert events[-1]["results"]["linux"]["outcome"] == "success"


def test_websocket_job_filter(settings):
    packagers = {"pwa": ScriptedPackager(settings, "pwa", "block")}
    with TestClient(create_app(settings, packagers)) as client:
        session = client.post("/upload", files={"file": ("build.zip", make_zip(), "application/zip")}).json()
        body = {"session_id": session["session_id"], "platforms": ["pwa"], "options": options()}
        watched = client.post("/jobs", json=body).json()["job_id"]
        with client.websocket_connect(f"/ws?job_id={watched}") as ws:
            assert ws.receive_json() == {"type": "connected", "job_id": watched}
            other = client.post("/jobs", json=body).json()["job_id"]
            client.post(f"/jobs/{other}/cancel")
            assert client.post(f"/jobs/{watched}/cancel").status_code == 202
            while True:
                event = ws.receive_json()
                assert event["job_id"] == watched
                if event["type"] == "packaging-cancelled":
                    break
