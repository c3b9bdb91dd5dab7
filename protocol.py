"""
Run protocol between the job supervisor and an isolated codemod worker.

Messages travel as one JSON object per line. The supervisor sends
``initialization`` once, then any number of ``runCodemod``, then ``exit``.
Every message gets exactly one reply.
"""
from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from errors import ProtocolError
from schemas import ArgumentValue, CamelModel


class ClosedMessage(CamelModel):
    model_config = {
        **CamelModel.model_config,
        "extra": "forbid",
    }


class InitializationMessage(ClosedMessage):
    kind: Literal["initialization"] = "initialization"
    codemod_path: str = Field(..., min_length=1)
    codemod_source: str
    # resolved by the worker so an unknown engine terminates it instead of being dropped
    codemod_engine: str = Field(..., min_length=1)
    disable_prettier: bool = False
    safe_argument_record: Dict[str, ArgumentValue] = Field(default_factory=dict)


class RunCodemodMessage(ClosedMessage):
    kind: Literal["runCodemod"] = "runCodemod"
    path: str = Field(..., min_length=1)
    data: str


class ExitMessage(ClosedMessage):
    kind: Literal["exit"] = "exit"


MainThreadMessage = Annotated[
    Union[InitializationMessage, RunCodemodMessage, ExitMessage],
    Field(discriminator="kind"),
]


class InitializedReply(ClosedMessage):
    kind: Literal["initialized"] = "initialized"


class CodemodResultReply(ClosedMessage):
    kind: Literal["codemodResult"] = "codemodResult"
    path: str
    data: str
    changed: bool


class FileErrorReply(ClosedMessage):
    kind: Literal["fileError"] = "fileError"
    path: str
    message: str


class ProtocolErrorReply(ClosedMessage):
    kind: Literal["protocolError"] = "protocolError"
    message: str


class FatalErrorReply(ClosedMessage):
    kind: Literal["fatalError"] = "fatalError"
    message: str


class ExitedReply(ClosedMessage):
    kind: Literal["exited"] = "exited"


WorkerReply = Annotated[
    Union[
        InitializedReply,
        CodemodResultReply,
        FileErrorReply,
        ProtocolErrorReply,
        FatalErrorReply,
        ExitedReply,
    ],
    Field(discriminator="kind"),
]

_main_thread_adapter = TypeAdapter(MainThreadMessage)
_worker_reply_adapter = TypeAdapter(WorkerReply)


def _decode(adapter: TypeAdapter, payload: Any):
    try:
        if isinstance(payload, (str, bytes)):
            return adapter.validate_json(payload)
        return adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ProtocolError(f"Malformed message: {e.errors(include_url=False)}") from e


def decode_main_thread_message(payload: Any):
    return _decode(_main_thread_adapter, payload)


def decode_worker_reply(payload: Any):
    return _decode(_worker_reply_adapter, payload)


def encode(message: BaseModel) -> str:
    return message.model_dump_json(by_alias=True) + "\n"
