import json

import pytest
from fastapi.testclient import TestClient

from plagiarism_service import clients
from plagiarism_service.config import Settings
from plagiarism_service.main import Services, app, get_services

from samples import BUBBLE_SORT, FIZZBUZZ, UNRELATED


@pytest.fixture
def services(session_factory):
    services = Services(session_factory, Settings(similarity_threshold=60))
    yield services
    services.runner.shutdown(wait=True)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _submit(client, student_id, code, assignment_id=7, submitted_at="2024-03-01T12:00:00"):
    resp = client.post(
        "/submissions",
        json={
            "student_id": student_id,
            "assignment_id": assignment_id,
            "code_content": code,
            "submitted_at": submitted_at,
        },
    )
    assert resp.status_code == 200
    return resp.json()


def _seed(client):
    return [_submit(client, 1, BUBBLE_SORT), _submit(client, 2, BUBBLE_SORT), _submit(client, 3, UNRELATED)]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_algorithm_settings(client):
    assert client.get("/settings/algorithm").json() == {"similarity_threshold": 60, "fast_compare_mode": False}


def test_submission_roundtrip(client):
    created = _submit(client, 1, BUBBLE_SORT)

    assert len(created["code_hash"]) == 64
    assert client.get(f"/submissions/{created['id']}").json() == created
    assert [s["id"] for s in client.get("/assignments/7/submissions").json()] == [created["id"]]
    assert client.get("/submissions/999").status_code == 404


def test_generate_report_and_read_it_back(client):
    a, b, c = _seed(client)

    resp = client.post("/assignments/7/reports", json={"mode": "latest_only", "executor_id": 100})
    assert resp.status_code == 200
    report = resp.json()
    assert report["status"] == "COMPLETED"
    assert report["total_pairs"] == 3

    assert client.get(f"/reports/{report['id']}").json() == report
    assert [r["id"] for r in client.get("/assignments/7/reports").json()] == [report["id"]]

    similarities = client.get(f"/reports/{report['id']}/similarities").json()
    assert len(similarities) == 3

    high = client.get(f"/reports/{report['id']}/high-similarity").json()
    assert len(high) == 1
    assert {high[0]["submission1_id"], high[0]["submission2_id"]} == {a["id"], b["id"]}
    assert high[0]["similarity_score"] == 100.0
    assert len(client.get(f"/reports/{report['id']}/high-similarity", params={"threshold": 0}).json()) == 3


def test_generate_report_with_one_student(client):
    _submit(client, 1, BUBBLE_SORT)

    resp = client.post("/assignments/7/reports", json={"executor_id": 100})

    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "insufficient_submissions"
    assert client.get("/assignments/7/reports").json() == []


def test_student_target_without_peers(client):
    _submit(client, 1, BUBBLE_SORT)

    resp = client.post("/assignments/7/reports", json={"mode": "student_target", "executor_id": 1, "student_id": 1})

    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "no_comparison_target"


def test_generate_report_stream(client):
    _seed(client)

    resp = client.post("/assignments/7/reports/stream", json={"mode": "full_history", "executor_id": 100})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in resp.text.splitlines() if line]
    assert events[0]["kind"] == "started"
    assert events[-1]["kind"] == "completed"
    assert events[-1]["report"]["mode"] == "full_history"
    progress = [e["progress"] for e in events if e["kind"] == "progress"]
    assert progress == sorted(progress)


def test_generate_report_stream_failure(client):
    resp = client.post("/assignments/7/reports/stream", json={"executor_id": 100})

    events = [json.loads(line) for line in resp.text.splitlines() if line]
    assert [e["kind"] for e in events] == ["started", "failed"]
    assert events[-1]["error_code"] == "insufficient_submissions"


def test_missing_report(client):
    assert client.get("/reports/404").status_code == 404
    assert client.get("/reports/404/similarities").status_code == 404
    assert client.get("/reports/404/high-similarity").status_code == 404


def test_compare_new_submission(client):
    _submit(client, 1, BUBBLE_SORT)
    _submit(client, 2, FIZZBUZZ)
    new = _submit(client, 3, BUBBLE_SORT, submitted_at="2024-03-01T13:00:00")

    everything = client.post(f"/assignments/7/submissions/{new['id']}/compare").json()
    high = client.post(f"/assignments/7/submissions/{new['id']}/compare", params={"threshold": 90}).json()

    assert len(everything) == 2
    assert len(high) == 1
    assert client.get("/assignments/7/reports").json() == []


def test_ai_analysis_without_key(client, monkeypatch):
    monkeypatch.setattr(clients.settings, "ai_api_key", "")
    _seed(client)
    report = client.post("/assignments/7/reports", json={"executor_id": 100}).json()
    similarity = client.get(f"/reports/{report['id']}/similarities").json()[0]

    assert client.post(f"/similarities/{similarity['id']}/ai-analysis").status_code == 503
    assert client.post("/similarities/999/ai-analysis").status_code == 404
