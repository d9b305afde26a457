import asyncio
import json
import sys
from pathlib import Path
from typing import Annotated, Any, Iterator

import requests
import typer
from rich import print
from rich.console import Console

from workerbox.errors import ExtractionError
from workerbox.models import ErrorEvent, LogEvent, ResultEvent
from workerbox.sandbox import LocalSandbox
from workerbox.script import generate_worker_script
from workerbox.session import WorkerClient
from workerbox.utils import get_settings

CLI = typer.Typer()
WORKERS_CLI = typer.Typer()
CLI.add_typer(WORKERS_CLI, name="workers", help="manage deployed workers")
DEFAULT_BASE_URL = "http://localhost:8000"

STDOUT = Console()
STDERR = Console(stderr=True)


Source = Annotated[
    typer.FileText,
    typer.Argument(help="path to the worker source. must export at least one function."),
]
FunctionName = Annotated[
    str,
    typer.Argument(help="exported function to call"),
]
BaseURL = Annotated[
    str,
    typer.Option(..., help="base url of the workerbox server", envvar="BASE_URL"),
]
WorkerId = Annotated[
    str,
    typer.Argument(help="worker id"),
]
InvocationPayload = Annotated[
    str,
    typer.Option(..., help="json payload to pass to the function"),
]


"""

local commands, no server involved

"""


@CLI.command(name="build", help="generate the worker script for a source file")
def build(
    source: Source = sys.stdin,
    out: Annotated[
        Path, typer.Option(..., help="directory to write the script into")
    ] = Path("."),
):
    worker = _generate(source.read())
    out.mkdir(parents=True, exist_ok=True)
    for name, content in worker.files().items():
        (out / name).write_text(content)
        print(f"[green]wrote[/green] {out / name}")
    print(f"functions: {', '.join(worker.functions)}")


@CLI.command(name="run", help="run a function locally")
def run(
    source: Source,
    function_name: FunctionName,
    payload: InvocationPayload | None = None,
):
    worker = _generate(source.read())
    if function_name not in worker.functions:
        print(
            f"[red]Function '{function_name}' not found. Available: {', '.join(worker.functions)}[/red]"
        )
        raise typer.Exit(code=1)
    settings = get_settings()
    client = WorkerClient(
        LocalSandbox.from_settings(settings), node_binary=settings.node_binary
    )

    async def _run() -> bool:
        ok = False
        async for event in client.run_script(
            worker, function_name, _parse_payload(payload)
        ):
            ok = _show_event(event)
        return ok

    if not asyncio.run(_run()):
        raise typer.Exit(code=1)


"""

remote commands

"""


@CLI.command(name="invoke", help="run a function of a source file on the server")
def invoke(
    source: Source,
    function_name: FunctionName,
    payload: InvocationPayload | None = None,
    base_url: BaseURL = DEFAULT_BASE_URL,
):
    _stream_invocation(
        url=f"{base_url}/invoke",
        body={
            "code": source.read(),
            "function": function_name,
            "payload": _parse_payload(payload),
        },
    )


@WORKERS_CLI.command(name="create", help="deploy a worker")
def create_worker(
    source: Source = sys.stdin,
    name: Annotated[
        str,
        typer.Option(..., help="worker name"),
    ]
    | None = None,
    base_url: BaseURL = DEFAULT_BASE_URL,
):
    body = {"code": source.read()}
    if name:
        body["name"] = name
    res = _api_request(method="POST", url=f"{base_url}/workers", body=body)
    print(json.dumps(res, indent=2))


@WORKERS_CLI.command(name="list", help="list workers")
def list_workers(base_url: BaseURL = DEFAULT_BASE_URL):
    res = _api_request(method="GET", url=f"{base_url}/workers")
    print(json.dumps(res, indent=2))


@WORKERS_CLI.command(name="get", help="fetch a worker")
def get_worker(worker_id: WorkerId, base_url: BaseURL = DEFAULT_BASE_URL):
    res = _api_request(method="GET", url=f"{base_url}/workers/{worker_id}")
    print(json.dumps(res, indent=2))


@WORKERS_CLI.command(name="delete", help="delete a worker and its snapshot")
def delete_worker(worker_id: WorkerId, base_url: BaseURL = DEFAULT_BASE_URL):
    res = _api_request(method="DELETE", url=f"{base_url}/workers/{worker_id}")
    print(json.dumps(res, indent=2))


@WORKERS_CLI.command(name="invoke", help="invoke a function of a deployed worker")
def invoke_worker(
    worker_id: WorkerId,
    function_name: FunctionName,
    payload: InvocationPayload | None = None,
    base_url: BaseURL = DEFAULT_BASE_URL,
):
    _stream_invocation(
        url=f"{base_url}/workers/{worker_id}/invoke/{function_name}",
        body=_parse_payload(payload),
    )


def _generate(source: str):
    try:
        return generate_worker_script(source)
    except ExtractionError as e:
        print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


def _parse_payload(payload: str | None) -> Any:
    if not payload:
        return {}
    try:
        return json.loads(payload)
    except ValueError:
        print(f"[red]payload is not valid json: {payload}[/red]")
        raise typer.Exit(code=1)


def _show_event(event: LogEvent | ResultEvent | ErrorEvent) -> bool:
    """
    print one invocation event, returns False if it reports a failure
    """
    if isinstance(event, LogEvent):
        if event.stream == "stderr":
            STDERR.print(event.message, style="red", markup=False, highlight=False)
        else:
            STDOUT.print(event.message, markup=False, highlight=False)
        return True
    if isinstance(event, ResultEvent):
        print(json.dumps(event.result, indent=2))
        print(f"[dim]{event.duration}ms[/dim]")
        return True
    print(f"[red]error: {event.error}[/red]")
    return False


def _stream_invocation(url: str, body: Any):
    """
    post an invocation asking for server-sent events and print them as they come
    """
    res = requests.post(
        url, json=body, headers={"Accept": "text/event-stream"}, stream=True
    )
    with res:
        if not res.ok:
            _fail(res)
        ok = False
        for name, data in _sse_events(res.iter_lines(decode_unicode=True)):
            if name == "log":
                ok = _show_event(LogEvent.model_validate_json(data))
            elif name == "result":
                ok = _show_event(ResultEvent.model_validate_json(data))
            elif name == "error":
                ok = _show_event(ErrorEvent.model_validate_json(data))
    if not ok:
        raise typer.Exit(code=1)


def _sse_events(lines: Iterator[str]) -> Iterator[tuple[str, str]]:
    """
    (event, data) pairs from a text/event-stream body
    """
    name, data = "message", []
    for line in lines:
        if not line:
            if data:
                yield name, "\n".join(data)
            name, data = "message", []
        elif line.startswith("event:"):
            name = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data.append(line[len("data:") :].lstrip())
    if data:
        yield name, "\n".join(data)


def _fail(res: requests.Response):
    if 400 <= res.status_code < 500:
        print(json.dumps(res.json(), indent=2))
        raise typer.Exit(code=1)
    res.raise_for_status()


def _api_request(method: str, url: str, body: dict | None = None, **kwargs):
    res = requests.request(method=method, url=url, json=body, **kwargs)
    if not res.ok:
        _fail(res)
    return res.json()
