"""
execution provider for generated worker scripts

the interface is what a hosted sandbox offers: create a runtime (fresh or
from a snapshot), write files into it, run a command whose output can be
streamed while it runs, snapshot it, stop it. LocalSandbox implements it
on this machine with a working directory per runtime, directory copies for
snapshots, and asyncio subprocesses for commands. it does not isolate
anything beyond that
"""

import asyncio
import codecs
import contextlib
import json
import logging
import re
import shutil
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from workerbox.errors import SessionError
from workerbox.utils import Settings, new_primary_key

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096
SNAPSHOT_ID_RE = re.compile(r"sn-[0-9a-z]{26}")


@dataclass(frozen=True)
class LogChunk:
    """raw output as the provider delivers it, with no line boundaries implied"""

    stream: str
    data: str


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    expires_at: datetime


class Command(Protocol):
    def logs(self) -> AsyncIterator[LogChunk]:
        """chunks from both channels in arrival order, until both are closed"""
        ...

    async def wait(self) -> int:
        """exit code once the process has terminated"""
        ...


class Runtime(Protocol):
    async def write_files(self, files: dict[str, str]) -> None: ...

    async def run_command(self, cmd: str, args: list[str]) -> Command: ...

    async def snapshot(self) -> Snapshot: ...

    async def stop(self) -> None:
        """release the runtime. safe to call more than once"""
        ...


class Sandbox(Protocol):
    async def create(self, snapshot_id: str | None = None) -> Runtime: ...

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None: ...

    async def delete_snapshot(self, snapshot_id: str) -> None: ...


class LocalCommand:
    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process

    async def logs(self) -> AsyncIterator[LogChunk]:
        queue: asyncio.Queue[LogChunk | None] = asyncio.Queue()
        pumps = [
            asyncio.create_task(self._pump("stdout", self.process.stdout, queue)),
            asyncio.create_task(self._pump("stderr", self.process.stderr, queue)),
        ]
        open_streams = len(pumps)
        try:
            while open_streams:
                chunk = await queue.get()
                if chunk is None:
                    open_streams -= 1
                else:
                    yield chunk
        finally:
            for pump in pumps:
                pump.cancel()

    async def wait(self) -> int:
        return await self.process.wait()

    @staticmethod
    async def _pump(
        stream: str,
        reader: asyncio.StreamReader,
        queue: "asyncio.Queue[LogChunk | None]",
    ):
        # multi-byte characters can be split across reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = await reader.read(CHUNK_SIZE)
                text = decoder.decode(data, final=not data)
                if text:
                    await queue.put(LogChunk(stream, text))
                if not data:
                    break
        finally:
            await queue.put(None)


class LocalRuntime:
    def __init__(self, workdir: Path, sandbox: "LocalSandbox"):
        self.workdir = workdir
        self.stopped = False
        self._sandbox = sandbox
        self._processes: list[asyncio.subprocess.Process] = []

    async def write_files(self, files: dict[str, str]) -> None:
        root = self.workdir.resolve()
        for name, content in files.items():
            path = (self.workdir / name).resolve()
            if not path.is_relative_to(root):
                raise SessionError(f"refusing to write outside the runtime: {name}")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)
            except OSError as e:
                raise SessionError(f"failed to write {name}: {e}") from e

    async def run_command(self, cmd: str, args: list[str]) -> LocalCommand:
        if self.stopped:
            raise SessionError("runtime is stopped")
        try:
            process = await asyncio.create_subprocess_exec(
                cmd,
                *args,
                cwd=self.workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SessionError(f"failed to launch {cmd}: {e}") from e
        logger.debug("launched %s pid=%s in %s", cmd, process.pid, self.workdir.name)
        self._processes.append(process)
        return LocalCommand(process)

    async def snapshot(self) -> Snapshot:
        return await self._sandbox.store_snapshot(self.workdir)

    async def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for process in self._processes:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        await asyncio.to_thread(shutil.rmtree, self.workdir, True)
        logger.debug("stopped runtime %s", self.workdir.name)


class LocalSandbox:
    def __init__(
        self,
        runtime_root: Path,
        snapshot_root: Path,
        snapshot_ttl: timedelta = timedelta(days=7),
    ):
        self.runtime_root = Path(runtime_root)
        self.snapshot_root = Path(snapshot_root)
        self.snapshot_ttl = snapshot_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalSandbox":
        return cls(
            runtime_root=settings.runtime_root,
            snapshot_root=settings.snapshot_root,
            snapshot_ttl=timedelta(days=settings.snapshot_ttl_days),
        )

    async def create(self, snapshot_id: str | None = None) -> LocalRuntime:
        workdir = self.runtime_root / new_primary_key("rt")
        try:
            if snapshot_id is None:
                workdir.mkdir(parents=True)
            else:
                if await self.get_snapshot(snapshot_id) is None:
                    raise SessionError(f"snapshot {snapshot_id} not found or expired")
                files = self._snapshot_dir(snapshot_id) / "files"
                await asyncio.to_thread(shutil.copytree, files, workdir)
        except OSError as e:
            raise SessionError(f"failed to create runtime: {e}") from e
        logger.debug("created runtime %s from %s", workdir.name, snapshot_id or "scratch")
        return LocalRuntime(workdir, self)

    async def store_snapshot(self, workdir: Path) -> Snapshot:
        snapshot = Snapshot(
            snapshot_id=new_primary_key("sn"),
            expires_at=datetime.now(timezone.utc) + self.snapshot_ttl,
        )
        target = self._snapshot_dir(snapshot.snapshot_id)
        try:
            await asyncio.to_thread(shutil.copytree, workdir, target / "files")
            (target / "snapshot.json").write_text(
                json.dumps(
                    {
                        "snapshot_id": snapshot.snapshot_id,
                        "expires_at": snapshot.expires_at.isoformat(),
                    }
                )
            )
        except OSError as e:
            await asyncio.to_thread(shutil.rmtree, target, True)
            raise SessionError(f"failed to snapshot runtime: {e}") from e
        logger.info("created snapshot %s", snapshot.snapshot_id)
        return snapshot

    async def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        """
        snapshot metadata, None if it doesn't exist or has expired
        """
        if not SNAPSHOT_ID_RE.fullmatch(snapshot_id):
            return None
        try:
            meta = json.loads((self._snapshot_dir(snapshot_id) / "snapshot.json").read_text())
        except (OSError, ValueError):
            return None
        snapshot = Snapshot(
            snapshot_id=meta["snapshot_id"],
            expires_at=datetime.fromisoformat(meta["expires_at"]),
        )
        if snapshot.expires_at <= datetime.now(timezone.utc):
            return None
        return snapshot

    async def delete_snapshot(self, snapshot_id: str) -> None:
        if SNAPSHOT_ID_RE.fullmatch(snapshot_id):
            await asyncio.to_thread(shutil.rmtree, self._snapshot_dir(snapshot_id), True)
            logger.info("deleted snapshot %s", snapshot_id)

    def _snapshot_dir(self, snapshot_id: str) -> Path:
        return self.snapshot_root / snapshot_id
