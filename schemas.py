import re
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime
from enum import Enum

from models import CodemodEngine

_REPO_URL_PATTERNS = (
    re.compile(r"^(https?|ssh|git)://[^\s/@]+(@[^\s/]+)?(:\d+)?/\S+$"),
    re.compile(r"^[\w.-]+@[\w.-]+:[\w./~-]+$"),
)
_BRANCH_FORBIDDEN = re.compile(r"[\s~^:?*\[\\\x00-\x1f\x7f]|\.\.|@\{|//")

ArgumentValue = Union[str, int, float, bool]


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERRORED = "errored"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.ERRORED})

# queued -> in_progress -> {success | errored}
STATUS_RANK = {
    RunStatus.QUEUED: 0,
    RunStatus.IN_PROGRESS: 1,
    RunStatus.SUCCESS: 2,
    RunStatus.ERRORED: 2,
}

JOB_NOT_FOUND_MESSAGE = "Job not found"


class CodemodSpec(CamelModel):
    engine: CodemodEngine
    name: str = Field(..., min_length=1, max_length=255)
    source: str = Field(..., min_length=1)
    arguments: Dict[str, ArgumentValue] = Field(default_factory=dict)
    disable_prettier: bool = False

    @field_validator("name", "source")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class CodemodRunRequest(CamelModel):
    codemods: List[CodemodSpec] = Field(..., min_length=1)
    repo_url: str = Field(..., max_length=2048)
    branch: str = Field(..., min_length=1, max_length=255)
    persistent: bool = False

    @field_validator("repo_url")
    @classmethod
    def check_repo_url(cls, value: str) -> str:
        value = value.strip()
        if value.startswith("-") or not any(p.match(value) for p in _REPO_URL_PATTERNS):
            raise ValueError("repoUrl must be an http(s), ssh or scp-style git URL")
        return value

    @field_validator("branch")
    @classmethod
    def check_branch(cls, value: str) -> str:
        if (
            _BRANCH_FORBIDDEN.search(value)
            or value.startswith(("-", "/", "."))
            or value.endswith(("/", ".", ".lock"))
            or value == "@"
        ):
            raise ValueError("branch is not a valid git ref name")
        return value


class CodemodRunEntry(CamelModel):
    job_id: str
    codemod_name: str


class CodemodRunResponse(BaseModel):
    success: bool = True
    data: List[CodemodRunEntry]


class RunResult(CamelModel):
    processed_files: int = 0
    changed_files: Dict[str, str] = Field(default_factory=dict)
    failed_files: Dict[str, str] = Field(default_factory=dict)


class MessageStatus(CamelModel):
    status: Literal["queued", "in_progress", "errored"]
    message: str
    updated_at: Optional[datetime] = Field(default=None, exclude=True)


class SuccessStatus(CamelModel):
    status: Literal["success"] = "success"
    result: RunResult
    updated_at: Optional[datetime] = Field(default=None, exclude=True)


class NotFoundStatus(BaseModel):
    status: Literal["error"] = "error"
    message: str = JOB_NOT_FOUND_MESSAGE


StatusEntry = Annotated[Union[MessageStatus, SuccessStatus], Field(discriminator="status")]
StatusReport = Annotated[
    Union[MessageStatus, SuccessStatus, NotFoundStatus], Field(discriminator="status")
]

status_entry_adapter = TypeAdapter(StatusEntry)


def queued(message: str = "Job is queued") -> MessageStatus:
    return MessageStatus(status=RunStatus.QUEUED.value, message=message)


def in_progress(message: str = "Job is in progress") -> MessageStatus:
    return MessageStatus(status=RunStatus.IN_PROGRESS.value, message=message)


def errored(message: str) -> MessageStatus:
    return MessageStatus(status=RunStatus.ERRORED.value, message=message)


def succeeded(result: RunResult) -> SuccessStatus:
    return SuccessStatus(result=result)


class CodemodStatusResponse(BaseModel):
    success: bool = True
    data: List[StatusReport]


class ErrorResponse(CamelModel):
    error: str
    error_text: str
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    status: str
    message: str
    dependencies: Optional[Dict[str, str]] = None


class VersionResponse(BaseModel):
    version: str
