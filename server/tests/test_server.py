import json
import tempfile

import pytest
from conftest import FakeSandbox, marker, stderr, stdout
from fastapi.testclient import TestClient

from workerbox.api import API
from workerbox.extract import NO_EXPORTS_MESSAGE
from workerbox.session import get_sandbox
from workerbox.utils import SQL, get_conn_ctx, get_settings

SRC = """
interface Payload {
  a: number;
  b: number;
}

export async function add(payload: Payload): Promise<{ sum: number }> {
  console.log("adding");
  return { sum: payload.a + payload.b };
}

export const echo = async (payload: unknown) => payload;

export function boom(): never {
  throw new Error("boom");
}
"""


@pytest.fixture(scope="module")
def fake() -> FakeSandbox:
    fake = FakeSandbox()
    fake.responses["boom"] = (
        [
            stderr("Function error: boom\n"),
            stdout(marker({"__error": True, "message": "boom"})),
        ],
        1,
    )
    return fake


@pytest.fixture(scope="module")
def client(fake: FakeSandbox):
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = get_settings()
        settings.sqlite_url = f"{tmpdir}/db.test.sqlite3"
        API.dependency_overrides[get_sandbox] = lambda: fake
        with TestClient(API) as client:
            yield client
        API.dependency_overrides.clear()


@pytest.fixture(scope="module")
def worker(client: TestClient) -> dict:
    res = client.post("/workers", json={"name": "math", "code": SRC})
    assert res.status_code == 201, res.text
    return res.json()["worker"]


def _sse(text: str) -> list[tuple[str, dict]]:
    events = []
    for block in text.strip().split("\n\n"):
        name, data = block.split("\n")
        events.append((name.removeprefix("event: "), json.loads(data.removeprefix("data: "))))
    return events


def test_root(client: TestClient):
    res = client.get("/")
    assert res.status_code == 200
    assert res.text == "workerbox"
    assert "X-Process-Time" in res.headers


def test_create_worker(worker: dict, fake: FakeSandbox):
    assert worker["id"].startswith("wk-")
    assert worker["name"] == "math"
    assert worker["functions"] == ["add", "boom", "echo"]
    assert worker["status"] == "ready"
    assert worker["expires_in_days"] == 7
    assert worker["last_invoked_at"] is None
    assert worker["snapshot_id"] in fake.snapshots


def test_create_worker_default_name(client: TestClient):
    res = client.post("/workers", json={"code": "export function f() {}"})
    assert res.status_code == 201, res.text
    assert res.json()["worker"]["name"]


def test_create_worker_without_exports(client: TestClient):
    res = client.post("/workers", json={"code": "const x = 1;"})
    assert res.status_code == 400
    assert res.json()["detail"] == NO_EXPORTS_MESSAGE


def test_create_worker_empty_code(client: TestClient):
    res = client.post("/workers", json={"code": ""})
    assert res.status_code == 422


def test_create_worker_sandbox_down(client: TestClient, fake: FakeSandbox):
    fake.create_error = True
    try:
        res = client.post("/workers", json={"code": SRC})
    finally:
        fake.create_error = False
    assert res.status_code == 502
    assert res.json()["detail"] == "sandbox unavailable"


def test_get_worker(client: TestClient, worker: dict):
    res = client.get(f"/workers/{worker['id']}")
    assert res.status_code == 200
    assert res.json()["worker"]["id"] == worker["id"]


def test_get_missing_worker(client: TestClient):
    res = client.get("/workers/wk-missing")
    assert res.status_code == 404
    assert res.json()["detail"] == "Worker not found"


def test_list_workers(client: TestClient, worker: dict):
    res = client.get("/workers")
    assert res.status_code == 200
    assert worker["id"] in [w["id"] for w in res.json()["workers"]]


def test_invoke(client: TestClient, worker: dict):
    res = client.post(f"/workers/{worker['id']}/invoke/echo", json={"a": 1})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["success"] is True
    assert body["function"] == "echo"
    assert body["result"] == {"a": 1}
    assert isinstance(body["duration"], int)
    assert [(log["level"], log["message"]) for log in body["logs"]] == [
        ("info", "called echo")
    ]
    assert "error" not in body

    res = client.get(f"/workers/{worker['id']}")
    assert res.json()["worker"]["last_invoked_at"] is not None


def test_invoke_without_payload(client: TestClient, worker: dict):
    res = client.post(f"/workers/{worker['id']}/invoke/echo")
    assert res.status_code == 200, res.text
    assert res.json()["result"] == {}


def test_invoke_error(client: TestClient, worker: dict):
    res = client.post(f"/workers/{worker['id']}/invoke/boom", json={})
    assert res.status_code == 500
    body = res.json()
    assert body["success"] is False
    assert body["error"] == "boom"
    assert body["logs"][0]["level"] == "error"
    assert body["logs"][0]["message"] == "Function error: boom"
    assert "result" not in body


def test_invoke_unknown_function(client: TestClient, worker: dict):
    res = client.post(f"/workers/{worker['id']}/invoke/nope", json={})
    assert res.status_code == 404
    assert res.json()["detail"] == "Function 'nope' not found. Available: add, boom, echo"


def test_invoke_unknown_worker(client: TestClient):
    res = client.post("/workers/wk-missing/invoke/echo", json={})
    assert res.status_code == 404


def test_invoke_stream(client: TestClient, worker: dict):
    res = client.post(
        f"/workers/{worker['id']}/invoke/echo",
        json={"hello": "world"},
        headers={"Accept": "text/event-stream"},
    )
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    events = _sse(res.text)
    assert events[0][0] == "log"
    assert events[0][1]["stream"] == "stdout"
    assert events[0][1]["message"] == "called echo"
    assert events[-1][0] == "result"
    assert events[-1][1]["success"] is True
    assert events[-1][1]["result"] == {"hello": "world"}


def test_invoke_stream_error(client: TestClient, worker: dict):
    res = client.post(
        f"/workers/{worker['id']}/invoke/boom",
        json={},
        headers={"Accept": "text/event-stream"},
    )
    assert res.status_code == 200
    events = _sse(res.text)
    assert events[0] == (
        "log",
        {"stream": "stderr", "message": "Function error: boom", "timestamp": events[0][1]["timestamp"]},
    )
    assert events[-1] == ("error", {"error": "boom"})


def test_invoke_source(client: TestClient, fake: FakeSandbox):
    res = client.post(
        "/invoke", json={"code": SRC, "function": "add", "payload": {"a": 2, "b": 3}}
    )
    assert res.status_code == 200, res.text
    # the fake echoes payloads
    assert res.json()["result"] == {"a": 2, "b": 3}
    assert "worker.js" in fake.runtimes[-1].files
    assert fake.runtimes[-1].stopped


def test_invoke_source_errors(client: TestClient):
    res = client.post("/invoke", json={"code": "const x = 1;", "function": "x"})
    assert res.status_code == 400
    res = client.post("/invoke", json={"code": SRC, "function": "nope"})
    assert res.status_code == 404


def test_expired_worker(client: TestClient):
    res = client.post("/workers", json={"code": SRC})
    worker_id = res.json()["worker"]["id"]
    with get_conn_ctx(get_settings()) as conn:
        conn.execute(
            "UPDATE worker SET snapshot_expires_at = '2000-01-01 00:00:00' WHERE id = ?",
            (worker_id,),
        )

    res = client.get(f"/workers/{worker_id}")
    assert res.status_code == 200
    assert res.json()["worker"]["status"] == "expired"
    assert res.json()["worker"]["expires_in_days"] == 0

    res = client.post(f"/workers/{worker_id}/invoke/echo", json={})
    assert res.status_code == 410
    assert res.json()["detail"] == "Worker snapshot has expired. Please redeploy."


def test_delete_worker(client: TestClient, fake: FakeSandbox):
    res = client.post("/workers", json={"code": SRC})
    created = res.json()["worker"]

    res = client.delete(f"/workers/{created['id']}")
    assert res.status_code == 200
    assert res.json() == {"success": True}
    assert created["snapshot_id"] in fake.deleted

    assert client.get(f"/workers/{created['id']}").status_code == 404
    assert client.delete(f"/workers/{created['id']}").status_code == 404


def test_queries_loaded():
    assert SQL["get_worker"].startswith("SELECT")
    assert "-- query" not in SQL["migrate"]
