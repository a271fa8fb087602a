import pytest
from fastapi.testclient import TestClient

from server import create_app
from tests.conftest import settle


@pytest.fixture
def client(scheduler):
    return TestClient(create_app(scheduler, run_loop=False))


def test_ping(client):
    r = client.get("/ping")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_machines(client):
    r = client.post("/machines", json={"addr": "10.0.0.1:22", "classes": ["cpu", "gpu"]})
    assert r.status_code == 200
    assert r.json()["state"] == "idle"
    client.post("/machines", json={"addr": "10.0.0.2:22", "classes": ["cpu"]})

    assert [m["addr"] for m in client.get("/machines").json()] == ["10.0.0.1:22", "10.0.0.2:22"]
    assert [m["addr"] for m in client.get("/machines", params={"cls": "gpu"}).json()] == ["10.0.0.1:22"]

    assert client.delete("/machines/10.0.0.2:22").status_code == 200
    r = client.delete("/machines/10.0.0.2:22")
    assert r.status_code == 404
    assert r.json()["error"] == "NoSuchMachine"


def test_remove_busy_machine_conflicts(client, scheduler, transport):
    transport.release.clear()
    client.post("/machines", json={"addr": "m1", "classes": ["cpu"]})
    client.post("/jobs", json={"cls": "cpu", "cmd": "exp"})
    scheduler.tick()
    r = client.delete("/machines/m1")
    assert r.status_code == 409
    assert r.json()["error"] == "MachineBusy"
    assert client.delete("/machines/m1", params={"force": "true"}).status_code == 200
    transport.release.set()
    scheduler.join(timeout=5)


def test_variables(client):
    assert client.put("/vars/ROOT", json={"value": "/data"}).status_code == 200
    assert client.get("/vars").json() == {"ROOT": "/data"}


def test_job_lifecycle(client, scheduler, transport):
    transport.script("exp", ["hello"])
    client.post("/machines", json={"addr": "m1", "classes": ["cpu"]})
    jid = client.post("/jobs", json={"cls": "cpu", "cmd": "exp"}).json()["jid"]
    assert client.get(f"/jobs/{jid}").json()["state"] == "waiting"

    settle(scheduler)
    status = client.get(f"/jobs/{jid}").json()
    assert status["state"] == "done"
    assert status["machine"] == "m1"

    r = client.get(f"/jobs/{jid}/output")
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "hello\n"

    clone = client.post(f"/jobs/{jid}/clone").json()["jid"]
    assert clone != jid
    assert [j["jid"] for j in client.get("/jobs", params={"state": "waiting"}).json()] == [clone]

    assert client.delete(f"/jobs/{jid}").status_code == 200
    assert client.get(f"/jobs/{jid}").status_code == 404


def test_cancel(client):
    jid = client.post("/jobs", json={"cls": "cpu", "cmd": "exp"}).json()["jid"]
    r = client.post(f"/jobs/{jid}/cancel")
    assert r.json()["state"] == "canceled"
    r = client.post(f"/jobs/{jid}/cancel")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"


def test_delete_waiting_job_conflicts(client):
    jid = client.post("/jobs", json={"cls": "cpu", "cmd": "exp"}).json()["jid"]
    assert client.delete(f"/jobs/{jid}").status_code == 409


def test_unknown_state_filter(client):
    assert client.get("/jobs", params={"state": "bogus"}).status_code == 409


def test_matrix(client, scheduler):
    client.post("/machines", json={"addr": "m1", "classes": ["cpu"]})
    r = client.post("/matrices", json={"cls": "cpu", "cmd": "exp {a} {b}", "params": {"a": [1, 2], "b": "x"}})
    assert r.status_code == 200
    body = r.json()
    assert len(body["jobs"]) == 2

    settle(scheduler)
    m = client.get(f"/matrices/{body['id']}").json()
    assert m["params"] == {"a": ["1", "2"], "b": ["x"]}
    assert [j["cmd"] for j in m["jobs"]] == ["exp {a} {b}"] * 2
    assert [j["state"] for j in m["jobs"]] == ["done", "done"]


def test_bad_matrix_is_rejected(client):
    r = client.post("/matrices", json={"cls": "cpu", "cmd": "exp", "params": {"a": []}})
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidRequest"
    assert client.get("/jobs").json() == []


def test_unknown_matrix(client):
    assert client.get("/matrices/7").status_code == 404


def test_setup(client, scheduler):
    r = client.post("/machines/m9/setup", json={"cmds": ["install"], "classes": ["gpu"]})
    pid = r.json()["jid"]
    settle(scheduler)
    assert client.get(f"/jobs/{pid}").json()["state"] == "done"
    assert client.get("/machines", params={"cls": "gpu"}).json()[0]["addr"] == "m9"


def test_setup_without_commands(client):
    r = client.post("/machines/m9/setup", json={"cmds": []})
    assert r.status_code == 400


def test_overview_page(client):
    client.post("/machines", json={"addr": "m1", "classes": ["cpu"]})
    client.post("/jobs", json={"cls": "cpu", "cmd": "exp <big>"})
    r = client.get("/")
    assert r.status_code == 200
    assert "Job Server" in r.text
    assert "m1" in r.text
    assert "exp &lt;big&gt;" in r.text
