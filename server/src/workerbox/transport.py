"""
run a worker function inside a runtime and demultiplex its output

the generated script shares stdout between whatever user code prints and
a single result marker line:

    __RESULT__<json>__END_RESULT__

output arrives as chunks tagged with their channel, with no guarantee a
chunk ends on a line boundary. chunks are put back together into lines
per channel and complete lines are forwarded right away. once the process
has exited the last marker anywhere in the accumulated stdout is decoded
into the result

only a marker that closes on its line is framing. it is cut out of the
line and whatever user text surrounds it is still forwarded. a line that
opens a marker without closing it is plain user output
"""

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator
from typing import Any

from workerbox.errors import TransportError
from workerbox.models import LogLine, ResultEnvelope
from workerbox.sandbox import LogChunk, Runtime
from workerbox.script import RESULT_END, RESULT_START, WORKER_FILENAME

logger = logging.getLogger(__name__)

NO_RESULT = "function did not return a result"
BAD_RESULT = "function returned an unreadable result"

# a closed marker within one stdout line
MARKER_RE = re.compile(rf"{RESULT_START}.*{RESULT_END}")
RESULT_START_RE = re.compile(RESULT_START)


def now_ms() -> int:
    return int(time.time() * 1000)


class OutputDemultiplexer:
    """
    turns raw chunks into caller-visible log lines and keeps the full stdout
    """

    def __init__(self):
        self._chunks: list[str] = []
        self._pending = {"stdout": "", "stderr": ""}

    @property
    def stdout(self) -> str:
        return "".join(self._chunks)

    def feed(self, chunk: LogChunk) -> list[LogLine]:
        if chunk.stream == "stdout":
            self._chunks.append(chunk.data)
        *lines, self._pending[chunk.stream] = (
            self._pending[chunk.stream] + chunk.data
        ).split("\n")
        return self._visible(chunk.stream, lines)

    def flush(self) -> list[LogLine]:
        """lines left without a trailing newline once the streams are closed"""
        lines = []
        for stream, rest in self._pending.items():
            self._pending[stream] = ""
            if rest:
                lines.extend(self._visible(stream, [rest]))
        return lines

    def _visible(self, stream: str, lines: list[str]) -> list[LogLine]:
        visible = []
        for line in lines:
            if stream == "stdout":
                line, framed = MARKER_RE.subn("", line)
                if framed and not line.strip():
                    continue
            visible.append(
                LogLine(stream=stream, data=line.rstrip(), timestamp=now_ms())
            )
        return visible


def decode_result(stdout: str) -> Any:
    """
    value carried by the last marker in the output

    the marker may open after user text on the same line, and user text
    may mention the prefix before it, so every prefix between the previous
    closing tag and the last one is tried in order
    """
    end = stdout.rfind(RESULT_END)
    if end < 0:
        raise TransportError(NO_RESULT)
    floor = stdout.rfind(RESULT_END, 0, end)
    floor = 0 if floor < 0 else floor + len(RESULT_END)
    starts = [m.end() for m in RESULT_START_RE.finditer(stdout, floor, end)]
    if not starts:
        raise TransportError(NO_RESULT)
    for start in starts:
        try:
            return json.loads(stdout[start:end])
        except ValueError:
            continue
    raise TransportError(BAD_RESULT)


async def invoke(
    runtime: Runtime,
    function_name: str,
    payload: Any,
    *,
    node_binary: str = "node",
) -> AsyncIterator[LogLine | ResultEnvelope]:
    """
    run one function of the worker script written into `runtime`

    yields LogLines as the process produces them and then exactly one
    ResultEnvelope, only after the process has exited. raises SessionError
    if the process can't be launched and TransportError if it exits without
    a readable result
    """
    args = [WORKER_FILENAME, function_name, json.dumps(payload)]
    started = time.perf_counter()
    command = await runtime.run_command(node_binary, args)
    waiter = asyncio.ensure_future(command.wait())
    demux = OutputDemultiplexer()
    try:
        async for chunk in command.logs():
            for line in demux.feed(chunk):
                yield line
        for line in demux.flush():
            yield line
        exit_code = await waiter
    finally:
        if not waiter.done():
            waiter.cancel()
    duration = round((time.perf_counter() - started) * 1000)
    logger.info("%s exited with %s after %sms", function_name, exit_code, duration)
    try:
        value = decode_result(demux.stdout)
    except TransportError as e:
        e.exit_code = exit_code
        logger.warning("%s: %s (exit code %s)", function_name, e, exit_code)
        raise
    yield ResultEnvelope.from_value(value, duration, exit_code)
