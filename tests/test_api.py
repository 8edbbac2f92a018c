"""
Tests for the FastAPI backend using an injected AppState.
"""
import csv
import io

import pytest
from fastapi.testclient import TestClient

from app.api import app, get_state
from medscan.extractors.base import ExtractionError
from medscan.ir import ExtractionResult
from medscan.pipeline import AppState


@pytest.fixture
def state_factory(store, make_bridge, scripted_extractor, success_response):
    def _build(outcomes=(), respond=success_response):
        bridge, recorder = make_bridge(respond)
        state = AppState(store, extractor=scripted_extractor(list(outcomes)), bridge=bridge, display_delay=60)
        return state, recorder

    return _build


@pytest.fixture
def client_for():
    clients = []

    def _client(state):
        app.dependency_overrides[get_state] = lambda: state
        client = TestClient(app)
        clients.append(client)
        return client

    yield _client
    app.dependency_overrides.clear()


def _files(*names):
    return [("files", (name, b"fake-image", "image/jpeg")) for name in names]


class TestScanEndpoint:

    def test_batch_with_one_failure(self, state_factory, client_for, jane_doe):
        state, _ = state_factory([jane_doe, ExtractionError("unreadable")])
        client = client_for(state)

        response = client.post("/scan", files=_files("label.jpg", "blurry.jpg"))

        assert response.status_code == 200
        body = response.json()
        assert body["completed"] == 1
        assert body["failed"] == 1
        assert body["warning"]
        assert body["records"][0]["patient_name"] == "Jane Doe"
        assert [e["status"] for e in body["entries"]] == ["completed", "error"]
        assert "payload" not in body["entries"][0]

    def test_queue_listing_and_error_removal(self, state_factory, client_for):
        state, _ = state_factory([ExtractionError("unreadable")])
        client = client_for(state)
        client.post("/scan", files=_files("blurry.jpg"))

        entries = client.get("/queue").json()
        assert len(entries) == 1
        entry_id = entries[0]["entry_id"]

        assert client.delete(f"/queue/{entry_id}").status_code == 200
        assert client.get("/queue").json() == []
        assert client.delete(f"/queue/{entry_id}").status_code == 404


class TestRecordEndpoints:

    def test_search_and_stats(self, state_factory, client_for):
        state, _ = state_factory()
        state.ledger.insert(ExtractionResult(patient_name="A", attending_doctor="Dr. Fernandes", source_type="label"))
        state.ledger.insert(ExtractionResult(patient_name="B", attending_doctor="Dr. Iyer", source_type="whiteboard"))
        client = client_for(state)

        hits = client.get("/records", params={"q": "fernandes"}).json()
        assert [r["patient_name"] for r in hits] == ["A"]
        assert len(client.get("/records").json()) == 2

        stats = client.get("/stats").json()
        assert stats["labels"] == 1 and stats["whiteboards"] == 1

    def test_delete_requires_confirm(self, state_factory, client_for, jane_doe):
        state, _ = state_factory()
        record = state.ledger.insert(jane_doe)
        client = client_for(state)

        assert client.delete(f"/records/{record.id}").status_code == 400
        assert len(state.ledger) == 1
        assert client.delete(f"/records/{record.id}", params={"confirm": "true"}).status_code == 200
        assert len(state.ledger) == 0
        assert client.delete(f"/records/{record.id}", params={"confirm": "true"}).status_code == 404


class TestSyncEndpoints:

    def test_sync_without_config_is_conflict(self, state_factory, client_for, jane_doe):
        state, _ = state_factory()
        state.ledger.insert(jane_doe)
        client = client_for(state)

        assert client.post("/sync").status_code == 409
        assert client.post("/sync/test").status_code == 409

    def test_config_then_sync(self, state_factory, client_for, jane_doe, webhook_url):
        state, recorder = state_factory()
        state.ledger.insert(jane_doe)
        client = client_for(state)

        bad = client.put("/sync/config", json={"webhook_url": "https://example.com/hook"})
        assert bad.status_code == 422

        ok = client.put("/sync/config", json={"webhook_url": webhook_url, "auto_sync": False})
        assert ok.json()["configured"] is True

        body = client.post("/sync").json()
        assert body == {"outcome": "confirmed", "delivered": True, "unsynced": 0}
        assert len(recorder.requests) == 1

    def test_failed_sync_leaves_records_unsynced(self, state_factory, client_for, network_error, jane_doe, webhook_url):
        state, _ = state_factory(respond=network_error)
        state.update_sync_config(webhook_url=webhook_url)
        state.ledger.insert(jane_doe)
        client = client_for(state)

        body = client.post("/sync", json={"record_ids": [state.ledger.records[0].id]}).json()
        assert body["outcome"] == "failed"
        assert body["unsynced"] == 1


class TestExportEndpoint:

    def test_csv_download(self, state_factory, client_for, jane_doe):
        state, _ = state_factory()
        state.ledger.insert(jane_doe)
        client = client_for(state)

        response = client.get("/export/csv")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[1][1] == "Jane Doe"

    def test_empty_csv_has_no_content(self, state_factory, client_for):
        state, _ = state_factory()
        assert client_for(state).get("/export/csv").status_code == 204

    def test_empty_json_is_array(self, state_factory, client_for):
        state, _ = state_factory()
        assert client_for(state).get("/export/json").json() == []

    def test_unknown_format(self, state_factory, client_for):
        state, _ = state_factory()
        assert client_for(state).get("/export/xml").status_code == 404
