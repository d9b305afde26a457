from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field

from workerbox.errors import UserFunctionError

Stream = Literal["stdout", "stderr"]


class LogLine(BaseModel):
    """
    one line of process output, as forwarded to the caller
    """

    stream: Stream = Field(description="channel the line was written to")
    data: str = Field(description="line text without the trailing newline")
    timestamp: int = Field(description="capture time in epoch milliseconds")


class ResultEnvelope(BaseModel):
    """
    terminal value of one invocation
    a function that threw is carried as `error`, anything else as `value`
    """

    value: Any = None
    error: str | None = None
    duration: int = Field(description="launch to exit in milliseconds")
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_value(
        cls, value: Any, duration: int, exit_code: int | None = None
    ) -> "ResultEnvelope":
        if isinstance(value, dict) and value.get("__error"):
            return cls(
                error=str(value.get("message", "")),
                duration=duration,
                exit_code=exit_code,
            )
        return cls(value=value, duration=duration, exit_code=exit_code)

    def unwrap(self) -> Any:
        if self.error is not None:
            raise UserFunctionError(self.error, duration=self.duration)
        return self.value


"""

events streamed to callers

"""


class LogEvent(BaseModel):
    event: ClassVar[str] = "log"
    stream: Stream
    message: str
    timestamp: int


class ResultEvent(BaseModel):
    event: ClassVar[str] = "result"
    success: Literal[True] = True
    result: Any = None
    duration: int


class ErrorEvent(BaseModel):
    event: ClassVar[str] = "error"
    error: str


InvocationEvent = LogEvent | ResultEvent | ErrorEvent


class InvocationLog(BaseModel):
    level: Literal["info", "error"]
    message: str
    timestamp: int


class InvocationOutcome(BaseModel):
    """
    batch form of an invocation: every log line plus the terminal event
    """

    success: bool
    function: str
    result: Any = None
    duration: int | None = None
    error: str | None = None
    logs: list[InvocationLog] = Field(default_factory=list)


class DeployedWorker(BaseModel):
    snapshot_id: str
    functions: list[str]
    expires_at: datetime


def format_sse(event: InvocationEvent) -> str:
    return f"event: {event.event}\ndata: {event.model_dump_json()}\n\n"
