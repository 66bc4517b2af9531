"""Tests for the HTTP API."""
import pytest
from fastapi.testclient import TestClient

from dashboard import create_app


@pytest.fixture
def app(settings):
    return create_app(settings, start_runner=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def test_routes_registered(app):
    paths = {r.path for r in app.routes}
    for ep in ("/run", "/list/{page_no}", "/cancel/{job_id}", "/reset/{job_id}", "/available",
               "/events", "/jobs/{job_id}", "/logs/{job_id}", "/output/{job_id}", "/"):
        assert ep in paths, f"Missing route: {ep}"


def test_submit_and_list(client):
    resp = client.post("/run", json={"name": "build", "command": "compile release", "output": "out/app.bin"})
    assert resp.status_code == 200
    job = resp.json()
    assert job["status"] == "Pending"
    assert job["created_at"] == job["updated_at"]

    resp = client.get("/list/1")
    assert resp.status_code == 200
    jobs, pages = resp.json()
    assert pages == 1
    assert [j["id"] for j in jobs] == [job["id"]]


@pytest.mark.parametrize("payload", [{"command": "noop"}, {"name": "build"}, {}])
def test_submit_missing_fields(client, payload):
    resp = client.post("/run", json=payload)
    assert resp.status_code == 400
    assert "required" in resp.json()["error"]


def test_list_rejects_page_zero(client):
    resp = client.get("/list/0")
    assert resp.status_code == 400


def test_cancel(client):
    job = client.post("/run", json={"name": "build", "command": "noop"}).json()
    assert client.post(f"/cancel/{job['id']}").json() is True
    assert client.post(f"/cancel/{job['id']}").json() is False
    assert client.get(f"/jobs/{job['id']}").status_code == 404


def test_reset_unknown_job(client):
    assert client.post("/reset/99").status_code == 404


def test_reset_pending_job_rejected(client):
    job = client.post("/run", json={"name": "build", "command": "noop"}).json()
    assert client.post(f"/reset/{job['id']}").status_code == 400


def test_run_then_fetch_log_and_artifact(client, app):
    job = client.post("/run", json={"name": "build", "command": "compile release", "output": "out/app.bin"}).json()
    assert client.get(f"/logs/{job['id']}").status_code == 404

    app.state.runner.run_once()

    assert client.get(f"/jobs/{job['id']}").json()["status"] == "Success"
    log = client.get(f"/logs/{job['id']}")
    assert log.status_code == 200
    assert "compiling release" in log.text
    artifact = client.get(f"/output/{job['id']}")
    assert artifact.status_code == 200
    assert artifact.content == b"binary"


def test_failed_job_reset(client, app):
    job = client.post("/run", json={"name": "build", "command": "fail"}).json()
    app.state.runner.run_once()
    assert client.get(f"/jobs/{job['id']}").json()["status"] == "Failed"
    assert client.get(f"/output/{job['id']}").status_code == 404

    resp = client.post(f"/reset/{job['id']}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "Pending"


def test_available(client):
    resp = client.get("/available")
    assert resp.status_code == 200
    assert resp.json() == ["clean", "compile target  # build a target"]


def test_available_failure(settings):
    broken = settings.model_copy(update={"runner_command": "/nonexistent/just"})
    with TestClient(create_app(broken, start_runner=False)) as c:
        assert c.get("/available").status_code == 500


def test_home_page(client):
    client.post("/run", json={"name": "<b>build</b>", "command": "noop"})
    resp = client.get("/")
    assert resp.status_code == 200
    assert "&lt;b&gt;build&lt;/b&gt;" in resp.text
    assert "⏳" in resp.text


def test_home_page_links_artifact_only_on_success(client, app):
    ok = client.post("/run", json={"name": "ok", "command": "compile release", "output": "out/app.bin"}).json()
    bad = client.post("/run", json={"name": "bad", "command": "noop", "output": "out/none.bin"}).json()
    app.state.runner.run_once()
    text = client.get("/").text
    assert f"href='/output/{ok['id']}'" in text
    assert f"href='/output/{bad['id']}'" not in text
