from __future__ import annotations
import asyncio
import os
import httpx
import pytest
from fastapi.testclient import TestClient
from stlbridge.main import create_app
from stlbridge.services.import_service import ImportService
from stlbridge.services.job_tracker import JobRegistry
from stlbridge.utils.sse import parse_sse_lines
from tests.conftest import NO_RETRY, REMOTE_MODEL_URL, RemoteModels
from tests.helpers import make_binary_stl

def sse_events(text: str):
    return list(parse_sse_lines(text.split("\n")))

async def start_import(http, **body):
    payload = {"stlUrl": REMOTE_MODEL_URL, "fileName": "part.stl",
               "source": "https://allowed.example", **body}
    response = await http.post("/api/import-stl", json=payload)
    assert response.status_code == 200, response.text
    return response.json()

@pytest.mark.asyncio
async def test_url_import_end_to_end(http, import_service, remote):
    body = await start_import(http, metadata={"author": "ada"})

    assert body["success"] is True
    assert body["message"] == "Import started successfully"
    assert body["job"]["fileName"] == "part.stl"
    assert body["job"]["metadata"] == {"author": "ada"}
    import_id = body["importId"]

    await import_service.drain()

    status = (await http.get(f"/api/import-status/{import_id}")).json()
    assert status["success"] is True
    assert status["job"]["status"] == "completed"
    assert status["progress"] == 100

    model = await http.get(f"/api/models/{import_id}")
    assert model.status_code == 200
    assert model.headers["content-type"] == "model/stl"
    assert "part.stl" in model.headers["content-disposition"]
    assert model.content == remote.files[REMOTE_MODEL_URL]

@pytest.mark.asyncio
async def test_import_requires_url(http):
    response = await http.post("/api/import-stl", json={"fileName": "a.stl"})
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Missing stlUrl parameter"}

@pytest.mark.asyncio
async def test_error_body_is_documented(http):
    schema = (await http.get("/openapi.json")).json()

    declared = schema["paths"]["/api/import-stl"]["post"]["responses"]["400"]
    assert declared["content"]["application/json"]["schema"]["$ref"].endswith("/ErrorResponse")
    assert set(schema["components"]["schemas"]["ErrorResponse"]["properties"]) == {"success", "error"}

@pytest.mark.asyncio
async def test_import_rejects_private_url(http):
    response = await http.post("/api/import-stl", json={"stlUrl": "http://192.168.1.10/a.stl"})
    assert response.status_code == 400
    assert response.json()["error"] == "Private IP addresses not allowed"

@pytest.mark.asyncio
async def test_failed_import_is_reported(http, import_service):
    body = await start_import(http, stlUrl="https://cdn.example/missing.stl")
    await import_service.drain()

    status = (await http.get(f"/api/import-status/{body['importId']}")).json()
    assert status["job"]["status"] == "failed"
    assert status["job"]["error"] == "Remote server returned 404"

    model = await http.get(f"/api/models/{body['importId']}")
    assert model.status_code == 400
    assert model.json()["error"] == "Import not completed"

@pytest.mark.asyncio
async def test_unknown_import_is_404(http):
    for response in (
        await http.get("/api/import-status/nope"),
        await http.get("/api/import-status/nope/stream"),
        await http.post("/api/import-status/nope/cancel"),
        await http.get("/api/models/nope"),
    ):
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Import job not found"}

@pytest.mark.asyncio
async def test_upload_end_to_end(http, import_service):
    data = make_binary_stl(3)
    response = await http.post(
        "/api/upload",
        files={"file": ("bracket.stl", data, "application/octet-stream")},
        data={"source": "https://allowed.example", "metadata": '{"tags": ["a"]}'}
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["message"] == "File uploaded successfully"
    assert body["job"]["fileName"] == "bracket.stl"
    assert body["job"]["metadata"] == {"tags": ["a"]}

    await import_service.drain()
    model = await http.get(f"/api/models/{body['importId']}")
    assert model.content == data

@pytest.mark.asyncio
async def test_upload_file_name_field_overrides_part_name(http, import_service):
    response = await http.post(
        "/api/upload",
        files={"file": ("blob", make_binary_stl(1), "model/stl")},
        data={"fileName": "named.stl"}
    )
    assert response.json()["job"]["fileName"] == "named.stl"
    assert response.json()["job"]["source"] == "direct-upload"

@pytest.mark.asyncio
async def test_upload_validation(http, monkeypatch):
    missing = await http.post("/api/upload", data={"source": "x"})
    assert missing.status_code == 400
    assert missing.json()["error"] == "No file uploaded"

    wrong_type = await http.post("/api/upload", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert wrong_type.status_code == 400
    assert wrong_type.json()["error"] == "Only STL files are allowed"

    bad_metadata = await http.post(
        "/api/upload",
        files={"file": ("a.stl", make_binary_stl(1), "model/stl")},
        data={"metadata": "[1, 2]"}
    )
    assert bad_metadata.status_code == 400

    empty = await http.post("/api/upload", files={"file": ("a.stl", b"", "model/stl")})
    assert empty.status_code == 400

    monkeypatch.setattr("stlbridge.routers.imports.MAX_UPLOAD_BYTES", 100)
    too_large = await http.post("/api/upload", files={"file": ("a.stl", make_binary_stl(4), "model/stl")})
    assert too_large.status_code == 413

@pytest.mark.asyncio
async def test_stream_of_finished_job_replays_current_state(http, import_service):
    body = await start_import(http)
    await import_service.drain()

    response = await http.get(f"/api/import-status/{body['importId']}/stream")

    assert response.headers["content-type"].startswith("text/event-stream")
    events = sse_events(response.text)
    assert [event for event, _ in events] == ["import-status-update", "import-completed", "close"]
    assert events[0][1]["status"] == "completed"
    assert events[1][1]["job"]["id"] == body["importId"]

@pytest.mark.asyncio
async def test_stream_follows_a_running_job(http, import_service, remote):
    remote.gate = asyncio.Event()
    body = await start_import(http)

    stream = asyncio.create_task(http.get(f"/api/import-status/{body['importId']}/stream"))
    await asyncio.sleep(0.05)
    remote.gate.set()
    response = await asyncio.wait_for(stream, timeout=5)

    events = sse_events(response.text)
    statuses = [data["status"] for event, data in events if event == "import-status-update"]
    assert statuses[-2:] == ["processing", "completed"]
    assert events[-2][0] == "import-completed"
    assert events[-1][0] == "close"

@pytest.mark.asyncio
async def test_cancel_endpoint(http, import_service, remote):
    remote.gate = asyncio.Event()
    body = await start_import(http)

    response = await http.post(f"/api/import-status/{body['importId']}/cancel")
    assert response.status_code == 200
    assert response.json()["cancelled"] is True
    assert response.json()["job"]["error"] == "cancelled"

    await import_service.drain()
    status = (await http.get(f"/api/import-status/{body['importId']}")).json()
    assert status["job"]["status"] == "failed"

@pytest.mark.asyncio
async def test_cancel_completed_import_conflicts(http, import_service):
    body = await start_import(http)
    await import_service.drain()

    response = await http.post(f"/api/import-status/{body['importId']}/cancel")
    assert response.status_code == 409
    assert response.json()["job"]["status"] == "completed"

@pytest.mark.asyncio
async def test_missing_artifact_is_404(http, import_service, registry):
    body = await start_import(http)
    await import_service.drain()
    os.remove(registry.require(body["importId"]).file_path)

    response = await http.get(f"/api/models/{body['importId']}")
    assert response.status_code == 404
    assert response.json()["error"] == "Model file not found"

@pytest.mark.asyncio
async def test_service_endpoints(http):
    health = await http.get("/health")
    assert health.json()["status"] == "ok"
    assert health.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Request-ID" in health.headers

    live = await http.get("/live")
    assert live.json()["status"] == "alive"

    ready = await http.get("/ready")
    assert ready.status_code in (200, 503)
    assert ready.json()["checks"]["registry"]["status"] == "healthy"
    assert ready.json()["checks"]["store"]["status"] == "healthy"

    root = (await http.get("/")).json()
    assert root["endpoints"]["import"].startswith("/api/import-stl")

    prometheus = await http.get("/metrics/prometheus")
    assert prometheus.status_code == 200
    assert "stl_import_jobs_total" in prometheus.text

@pytest.mark.asyncio
async def test_json_metrics_count_jobs(http, import_service):
    await start_import(http)
    await start_import(http, stlUrl="https://cdn.example/missing.stl")
    await import_service.drain()

    metrics = (await http.get("/metrics")).json()
    assert metrics["jobs"]["by_status"] == {"completed": 1, "failed": 1}
    assert metrics["jobs"]["active"] == 0
    assert metrics["jobs"]["running_tasks"] == 0

@pytest.mark.asyncio
async def test_rate_limit(registry, import_service, monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_REQUESTS", "2")
    app = create_app(registry=registry, import_service=import_service)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        codes = [(await client.get("/health")).status_code for _ in range(3)]
    assert codes == [200, 200, 429]

def make_live_app(tmp_path):
    remote = RemoteModels()
    registry = JobRegistry()
    service = ImportService(registry, uploads_dir=str(tmp_path / "uploads"),
                            retry_config=NO_RETRY, transport=remote.transport)
    return create_app(registry=registry, import_service=service)

def test_websocket_room_delivers_job_events(tmp_path):
    with TestClient(make_live_app(tmp_path)) as client:
        import_id = client.post("/api/import-stl", json={"stlUrl": REMOTE_MODEL_URL}).json()["importId"]

        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-import-room", "data": {"importId": import_id}})
            frames = []
            while not frames or frames[-1]["event"] not in ("import-completed", "import-failed"):
                frames.append(ws.receive_json())

        assert frames[-1]["event"] == "import-completed"
        assert frames[-1]["data"]["importId"] == import_id
        assert all(frame["event"] == "import-status-update" for frame in frames[:-1])
        assert frames[-2]["data"]["status"] == "completed"

def test_websocket_unknown_room_and_malformed_messages(tmp_path):
    with TestClient(make_live_app(tmp_path)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            ws.send_json({"event": "leave-import-room", "data": "missing"})
            ws.send_json({"event": "join-import-room", "data": "missing"})
            frame = ws.receive_json()

    assert frame == {"event": "channel-error",
                     "data": {"importId": "missing", "error": "Import job not found"}}
