import logging
from collections.abc import AsyncIterator
from contextlib import aclosing, asynccontextmanager
from functools import cache
from typing import Annotated, Any

from fastapi import Depends

from workerbox.errors import SessionError, TransportError, UserFunctionError
from workerbox.models import (
    DeployedWorker,
    ErrorEvent,
    InvocationEvent,
    InvocationLog,
    InvocationOutcome,
    LogEvent,
    LogLine,
    ResultEvent,
)
from workerbox.sandbox import LocalSandbox, Runtime, Sandbox
from workerbox.script import WorkerScript, generate_worker_script
from workerbox.transport import NO_RESULT, invoke
from workerbox.utils import Settings, get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_runtime(
    sandbox: Sandbox, snapshot_id: str | None = None
) -> AsyncIterator[Runtime]:
    """
    create a runtime and make sure it is stopped however the block exits,
    including cancellation when the caller goes away mid-stream
    """
    runtime = await sandbox.create(snapshot_id)
    try:
        yield runtime
    finally:
        try:
            await runtime.stop()
        except Exception:
            logger.exception("failed to stop runtime")


class WorkerClient:
    def __init__(self, sandbox: Sandbox, node_binary: str = "node"):
        self.sandbox = sandbox
        self.node_binary = node_binary

    async def create_worker_snapshot(self, source: str) -> DeployedWorker:
        """
        build the worker script and snapshot a runtime holding it
        nothing is created if the source exports no functions
        """
        worker = generate_worker_script(source)
        async with open_runtime(self.sandbox) as runtime:
            await runtime.write_files(worker.files())
            snapshot = await runtime.snapshot()
        return DeployedWorker(
            snapshot_id=snapshot.snapshot_id,
            functions=worker.functions,
            expires_at=snapshot.expires_at,
        )

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self.sandbox.delete_snapshot(snapshot_id)

    def stream_invocation(
        self, snapshot_id: str, function_name: str, payload: Any
    ) -> AsyncIterator[InvocationEvent]:
        """
        invoke a deployed worker in a fresh runtime made from its snapshot
        """
        return self._events(function_name, payload, snapshot_id=snapshot_id)

    def run_script(
        self, worker: WorkerScript, function_name: str, payload: Any
    ) -> AsyncIterator[InvocationEvent]:
        """
        invoke a function of a script that was never deployed
        """
        return self._events(function_name, payload, files=worker.files())

    async def invoke_function(
        self, snapshot_id: str, function_name: str, payload: Any
    ) -> InvocationOutcome:
        return await collect_outcome(
            function_name, self.stream_invocation(snapshot_id, function_name, payload)
        )

    async def _events(
        self,
        function_name: str,
        payload: Any,
        snapshot_id: str | None = None,
        files: dict[str, str] | None = None,
    ) -> AsyncIterator[InvocationEvent]:
        # the terminal event goes out only after the runtime is stopped
        terminal: InvocationEvent = ErrorEvent(error=NO_RESULT)
        try:
            async with open_runtime(self.sandbox, snapshot_id) as runtime:
                if files:
                    await runtime.write_files(files)
                async for item in invoke(
                    runtime, function_name, payload, node_binary=self.node_binary
                ):
                    if isinstance(item, LogLine):
                        yield LogEvent(
                            stream=item.stream,
                            message=item.data,
                            timestamp=item.timestamp,
                        )
                    else:
                        terminal = ResultEvent(
                            result=item.unwrap(), duration=item.duration
                        )
        except UserFunctionError as e:
            terminal = ErrorEvent(error=e.message)
        except (TransportError, SessionError) as e:
            logger.warning("invocation of %s failed: %s", function_name, e)
            terminal = ErrorEvent(error=str(e))
        yield terminal


async def collect_outcome(
    function_name: str, events: AsyncIterator[InvocationEvent]
) -> InvocationOutcome:
    logs: list[InvocationLog] = []
    async with aclosing(events):
        async for event in events:
            if isinstance(event, LogEvent):
                logs.append(
                    InvocationLog(
                        level="error" if event.stream == "stderr" else "info",
                        message=event.message,
                        timestamp=event.timestamp,
                    )
                )
            elif isinstance(event, ResultEvent):
                return InvocationOutcome(
                    success=True,
                    function=function_name,
                    result=event.result,
                    duration=event.duration,
                    logs=logs,
                )
            else:
                return InvocationOutcome(
                    success=False, function=function_name, error=event.error, logs=logs
                )
    raise TransportError(NO_RESULT)


@cache
def get_sandbox() -> Sandbox:
    """
    one sandbox per process, created when first needed
    """
    return LocalSandbox.from_settings(get_settings())


def get_client(
    sandbox: Annotated[Sandbox, Depends(get_sandbox)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> WorkerClient:
    return WorkerClient(sandbox, node_binary=settings.node_binary)
