import json
import logging
import math
import sqlite3
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from random import randint
from typing import Annotated, Any, Literal

from faker import Faker
from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field, PrivateAttr, field_validator

from workerbox.errors import ExtractionError, SessionError
from workerbox.models import InvocationEvent, format_sse
from workerbox.script import WorkerScript, generate_worker_script
from workerbox.session import WorkerClient, collect_outcome, get_client, get_sandbox
from workerbox.utils import SQL, get_conn, migrate, new_primary_key

logger = logging.getLogger("uvicorn.error")
logger.setLevel(logging.DEBUG)


@asynccontextmanager
async def lifespan(_: FastAPI):
    migrate()
    get_sandbox()
    yield


FAKER = Faker()
API = FastAPI(lifespan=lifespan)

EXAMPLE_CODE = """export async function hello(payload: { name: string }) {
  console.log("saying hello");
  return { hello: payload.name };
}"""


@API.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    logger.info(
        f"latency {request.method} {request.url.path} {response.status_code} {process_time * 1000:.2f}ms"
    )
    return response


@API.get("/", response_class=PlainTextResponse)
def root():
    return "workerbox"


def _wants_sse(request: Request) -> bool:
    return "text/event-stream" in request.headers.get("accept", "")


async def _sse_body(events: AsyncIterator[InvocationEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield format_sse(event)


async def _respond(
    request: Request, function_name: str, events: AsyncIterator[InvocationEvent]
):
    """
    stream events as server-sent events if the caller asked for them,
    otherwise wait for the terminal event and answer with one json body
    """
    if _wants_sse(request):
        return StreamingResponse(
            _sse_body(events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )
    outcome = await collect_outcome(function_name, events)
    if outcome.success:
        return JSONResponse(content=outcome.model_dump(mode="json", exclude={"error"}))
    return JSONResponse(
        content=outcome.model_dump(mode="json", exclude={"result", "duration"}),
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def _require_function(functions: list[str], function_name: str):
    if function_name not in functions:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Function '{function_name}' not found. Available: {', '.join(functions)}",
        )


"""

invoke arbitrary source code

"""


class SourceInvocationRequest(BaseModel):
    code: str = Field(
        ...,
        min_length=1,
        description="worker source exporting one or more functions",
        examples=[EXAMPLE_CODE],
    )
    function: str = Field(..., min_length=1, description="exported function to call")
    payload: Any = Field(
        default_factory=dict,
        description="function invocation payload",
        examples=[{"name": "world"}],
    )


@API.post("/invoke", tags=["invoke"])
async def invoke_source(
    req: SourceInvocationRequest,
    request: Request,
    client: Annotated[WorkerClient, Depends(get_client)],
):
    """
    generate a worker script and run one of its functions on the fly
    """
    try:
        worker: WorkerScript = generate_worker_script(req.code)
    except ExtractionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    _require_function(worker.functions, req.function)
    events = client.run_script(worker, req.function, req.payload)
    return await _respond(request, req.function, events)


"""

workers

"""


class WorkerRow(BaseModel):
    id_: str = Field(alias="id", description="worker id")
    name: str = Field(description="worker name")
    functions: list[str] = Field(description="exported function names")
    snapshot_id: str | None = Field(None, description="snapshot invocations start from")
    status: Literal["ready", "expired"] = Field(description="worker status")
    snapshot_expires_at: datetime | None = Field(None, description="snapshot expiry")
    last_invoked_at: datetime | None = Field(None, description="last invocation time")
    created_at: datetime = Field(description="worker creation time")
    updated_at: datetime = Field(description="worker last update time")
    expires_in_days: int | None = Field(None, description="days until the snapshot expires")

    @field_validator("functions", mode="before")
    @classmethod
    def _decode_functions(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @field_validator(
        "snapshot_expires_at", "last_invoked_at", "created_at", "updated_at"
    )
    @classmethod
    def _as_utc(cls, value: datetime | None) -> datetime | None:
        # sqlite hands timestamps back without a zone, they are all utc
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "WorkerRow":
        worker = cls.model_validate(dict(row))
        worker.expires_in_days = _days_until(worker.snapshot_expires_at)
        return worker


def _days_until(moment: datetime | None) -> int | None:
    if moment is None:
        return None
    remaining = (moment - datetime.now(timezone.utc)).total_seconds()
    return max(0, math.ceil(remaining / 86400))


def _sql_timestamp(moment: datetime) -> str:
    """same shape as sqlite's CURRENT_TIMESTAMP"""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _get_worker_or_404(conn: sqlite3.Connection, worker_id: str) -> WorkerRow:
    cur = conn.cursor()
    cur.execute(SQL["get_worker"], (worker_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Worker not found",
        )
    worker = WorkerRow.from_row(row)
    if worker.status == "ready" and worker.expires_in_days == 0:
        cur.execute(SQL["mark_worker_expired"], (worker_id,))
        (row,) = cur.fetchall()
        conn.commit()
        worker = WorkerRow.from_row(row)
    return worker


"""

deploy a worker

"""


class WorkerCreateRequest(BaseModel):
    name: str = Field(
        default_factory=lambda: "-".join(
            FAKER.words(2, unique=True) + [str(randint(1000, 9999))]
        ),
        min_length=1,
        description="worker name",
        examples=["hello-world-1234"],
    )
    code: str = Field(
        ...,
        min_length=1,
        description="worker source exporting one or more functions",
        examples=[EXAMPLE_CODE],
    )
    _id: str = PrivateAttr(default_factory=lambda: new_primary_key("wk"))


class WorkerResponse(BaseModel):
    worker: WorkerRow


@API.post(
    "/workers",
    response_model=WorkerResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["workers"],
)
async def create_worker(
    req: WorkerCreateRequest,
    client: Annotated[WorkerClient, Depends(get_client)],
    conn: Annotated[sqlite3.Connection, Depends(get_conn)],
):
    try:
        deployed = await client.create_worker_snapshot(req.code)
    except ExtractionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SessionError as e:
        logger.error(f"failed to deploy worker {req.name}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    cur = conn.cursor()
    cur.execute(
        SQL["create_worker"],
        (
            req._id,
            req.name,
            req.code,
            json.dumps(deployed.functions),
            deployed.snapshot_id,
            _sql_timestamp(deployed.expires_at),
        ),
    )
    (row,) = cur.fetchall()
    conn.commit()
    logger.info(f"deployed worker {req._id} with {len(deployed.functions)} functions")
    return WorkerResponse(worker=WorkerRow.from_row(row))


"""

list and fetch workers

"""


class WorkerListResponse(BaseModel):
    workers: list[WorkerRow]


@API.get("/workers", response_model=WorkerListResponse, tags=["workers"])
def list_workers(
    conn: Annotated[sqlite3.Connection, Depends(get_conn)],
):
    cur = conn.cursor()
    cur.execute(SQL["list_workers"])
    return WorkerListResponse(workers=[WorkerRow.from_row(row) for row in cur.fetchall()])


@API.get("/workers/{worker_id}", response_model=WorkerResponse, tags=["workers"])
def get_worker(
    worker_id: str,
    conn: Annotated[sqlite3.Connection, Depends(get_conn)],
):
    return WorkerResponse(worker=_get_worker_or_404(conn, worker_id))


"""

delete a worker

"""


class WorkerDeleteResponse(BaseModel):
    success: bool = True


@API.delete(
    "/workers/{worker_id}", response_model=WorkerDeleteResponse, tags=["workers"]
)
async def delete_worker(
    worker_id: str,
    client: Annotated[WorkerClient, Depends(get_client)],
    conn: Annotated[sqlite3.Connection, Depends(get_conn)],
):
    cur = conn.cursor()
    cur.execute(SQL["delete_worker"], (worker_id,))
    rows = cur.fetchall()
    if not rows:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Worker not found",
        )
    conn.commit()
    (row,) = rows
    if row["snapshot_id"]:
        await client.delete_snapshot(row["snapshot_id"])
    return WorkerDeleteResponse()


"""

invoke a worker function

"""


@API.post("/workers/{worker_id}/invoke/{function_name}", tags=["workers"])
async def invoke_worker(
    worker_id: str,
    function_name: str,
    request: Request,
    client: Annotated[WorkerClient, Depends(get_client)],
    conn: Annotated[sqlite3.Connection, Depends(get_conn)],
    payload: Annotated[Any, Body()] = None,
):
    """
    run one function of a deployed worker in a fresh runtime
    send `Accept: text/event-stream` to receive logs as they are printed
    """
    worker = _get_worker_or_404(conn, worker_id)
    if worker.status == "expired" or not worker.snapshot_id:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="Worker snapshot has expired. Please redeploy.",
        )
    _require_function(worker.functions, function_name)
    conn.execute(SQL["update_last_invoked"], (worker_id,))
    conn.commit()
    events = client.stream_invocation(
        worker.snapshot_id, function_name, {} if payload is None else payload
    )
    return await _respond(request, function_name, events)
