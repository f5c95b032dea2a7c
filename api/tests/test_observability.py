from __future__ import annotations
import json
import logging
import pytest
from stlbridge.obs.decorators import traced
from stlbridge.obs.logging_setup import StructuredFormatter, get_logger, request_id_var

class Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)

@pytest.fixture
def captured():
    handler = Capture()
    target = logging.getLogger("stlbridge.test")
    target.addHandler(handler)
    target.setLevel(logging.INFO)
    yield handler.records
    target.removeHandler(handler)

def test_context_logger_binds_request_id_and_fields(captured):
    token = request_id_var.set("req_abc123")
    try:
        get_logger("stlbridge.test").info("Import job created", job_id="j1", name="clashes")
    finally:
        request_id_var.reset(token)

    [record] = captured
    assert record.request_id == "req_abc123"
    assert record.job_id == "j1"
    assert record.ctx_name == "clashes"

    entry = json.loads(StructuredFormatter().format(record))
    assert entry["message"] == "Import job created"
    assert entry["extra"]["job_id"] == "j1"

def test_no_request_id_outside_requests(captured):
    get_logger("stlbridge.test").info("Sweep finished")
    assert not hasattr(captured[0], "request_id")

@pytest.mark.asyncio
async def test_traced_passes_results_and_errors_through():
    class Job:
        id = "j1"

    @traced(record=("source",))
    async def create(source):
        return Job()

    @traced()
    async def explode():
        raise ValueError("bad geometry")

    assert (await create(source="https://allowed.example")).id == "j1"
    with pytest.raises(ValueError):
        await explode()

def test_traced_rejects_plain_functions():
    with pytest.raises(TypeError):
        traced()(lambda: None)

@pytest.mark.asyncio
async def test_request_id_header_is_echoed(http):
    response = await http.get("/health", headers={"X-Request-ID": "req_from_client"})
    assert response.headers["X-Request-ID"] == "req_from_client"
