import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from workerbox.errors import SessionError
from workerbox.sandbox import LogChunk, Snapshot
from workerbox.script import RESULT_END, RESULT_START
from workerbox.utils import new_primary_key


def marker(value) -> str:
    return f"{RESULT_START}{json.dumps(value)}{RESULT_END}\n"


def stdout(data: str) -> LogChunk:
    return LogChunk("stdout", data)


def stderr(data: str) -> LogChunk:
    return LogChunk("stderr", data)


class FakeCommand:
    def __init__(self, chunks: list[LogChunk], exit_code: int):
        self.chunks = chunks
        self.exit_code = exit_code

    async def logs(self):
        for chunk in self.chunks:
            await asyncio.sleep(0)
            yield chunk

    async def wait(self) -> int:
        return self.exit_code


class FakeRuntime:
    def __init__(self, sandbox: "FakeSandbox", files: dict[str, str]):
        self.sandbox = sandbox
        self.files = dict(files)
        self.commands: list[tuple[str, list[str]]] = []
        self.stopped = False

    async def write_files(self, files: dict[str, str]) -> None:
        self.files.update(files)

    async def run_command(self, cmd: str, args: list[str]) -> FakeCommand:
        if self.sandbox.launch_error:
            raise SessionError(f"failed to launch {cmd}")
        self.commands.append((cmd, args))
        _, function_name, payload = args
        return FakeCommand(*self.sandbox.output(function_name, json.loads(payload)))

    async def snapshot(self) -> Snapshot:
        snapshot = Snapshot(
            snapshot_id=new_primary_key("sn"),
            expires_at=datetime.now(timezone.utc) + timedelta(days=7),
        )
        self.sandbox.snapshots[snapshot.snapshot_id] = dict(self.files)
        return snapshot

    async def stop(self) -> None:
        self.stopped = True


class FakeSandbox:
    """
    in-memory sandbox replaying scripted output

    functions without a scripted response log one line and echo their payload
    """

    def __init__(self):
        self.runtimes: list[FakeRuntime] = []
        self.snapshots: dict[str, dict[str, str]] = {}
        self.deleted: list[str] = []
        self.responses: dict[str, tuple[list[LogChunk], int]] = {}
        self.launch_error = False
        self.create_error = False

    def output(self, function_name: str, payload) -> tuple[list[LogChunk], int]:
        if function_name in self.responses:
            return self.responses[function_name]
        return [stdout(f"called {function_name}\n"), stdout(marker(payload))], 0

    async def create(self, snapshot_id: str | None = None) -> FakeRuntime:
        if self.create_error:
            raise SessionError("sandbox unavailable")
        if snapshot_id is not None and snapshot_id not in self.snapshots:
            raise SessionError(f"snapshot {snapshot_id} not found or expired")
        runtime = FakeRuntime(self, self.snapshots.get(snapshot_id, {}))
        self.runtimes.append(runtime)
        return runtime

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return None

    async def delete_snapshot(self, snapshot_id: str) -> None:
        self.deleted.append(snapshot_id)
        self.snapshots.pop(snapshot_id, None)


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()
