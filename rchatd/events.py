"""Typed events carried inside envelopes.

Inbound envelopes are parsed into one dataclass per message type, and the
gateway dispatches on the class. Outbound events know how to build their own
envelope.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .constants import (
    B_AFTER,
    B_CHAT_TYPE,
    B_CONTENT,
    B_ERR_CODE,
    B_ERR_TEMP_ID,
    B_ERR_TEXT,
    B_GROUP,
    B_HELLO_CREDENTIAL,
    B_HELLO_CURSORS,
    B_HELLO_DEVICE,
    B_LAST,
    B_MESSAGE,
    B_SEQUENCE,
    B_STATUS,
    B_TARGET,
    B_TEMP_ID,
    B_USER,
    B_WELCOME_HUB,
    B_WELCOME_NAME,
    B_WELCOME_USER,
    B_WELCOME_VER,
    DEFAULT_DEVICE,
    K_BODY,
    K_T,
    T_ACK,
    T_ERROR,
    T_HELLO,
    T_HISTORY,
    T_JOIN_ROOM,
    T_LEAVE_ROOM,
    T_NEW_MESSAGE,
    T_PING,
    T_PONG,
    T_REPLAY,
    T_REPLAY_DONE,
    T_ROOM_JOINED,
    T_ROOM_LEFT,
    T_SEND,
    T_SEND_ACK,
    T_STOP_TYPING,
    T_TYPING,
    T_USER_STATUS,
    T_USER_STOPPED_TYPING,
    T_USER_TYPING,
    T_WELCOME,
)
from .envelope import make_envelope
from .errors import InvalidRequestError
from .message_log import Message, PartitionKey
from .util import normalize_id

# Inbound


@dataclass(frozen=True)
class Hello:
    credential: bytes | None
    device_id: str = DEFAULT_DEVICE
    cursors: dict[PartitionKey, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SendMessage:
    content: str
    partition: PartitionKey
    temp_id: Any = None


@dataclass(frozen=True)
class JoinRoom:
    group_id: str


@dataclass(frozen=True)
class LeaveRoom:
    group_id: str


@dataclass(frozen=True)
class Typing:
    partition: PartitionKey
    active: bool


@dataclass(frozen=True)
class AckCursor:
    partition: PartitionKey
    sequence: int


@dataclass(frozen=True)
class ReplayRequest:
    partition: PartitionKey
    after: int


@dataclass(frozen=True)
class Ping:
    body: Any = None


@dataclass(frozen=True)
class Pong:
    body: Any = None


InboundEvent = Union[
    Hello, SendMessage, JoinRoom, LeaveRoom, Typing, AckCursor, ReplayRequest, Ping, Pong
]


def _body_map(env: dict) -> dict:
    body = env.get(K_BODY)
    if not isinstance(body, dict):
        raise InvalidRequestError("body must be a map")
    return body


def _partition(body: dict) -> PartitionKey:
    chat_type = body.get(B_CHAT_TYPE)
    target = normalize_id(body.get(B_TARGET))
    if target is None:
        raise InvalidRequestError("target id required")
    try:
        return PartitionKey(str(chat_type), target)
    except ValueError as e:
        raise InvalidRequestError(str(e)) from e


def _group_id(body: dict) -> str:
    gid = normalize_id(body.get(B_GROUP))
    if gid is None:
        raise InvalidRequestError("group id required")
    return gid


def _seq(value: Any, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise InvalidRequestError(f"{name} must be a non-negative integer")
    return value


def _parse_cursors(raw: Any) -> dict[PartitionKey, int]:
    cursors: dict[PartitionKey, int] = {}
    if not isinstance(raw, list):
        return cursors
    for item in raw:
        if not isinstance(item, list) or len(item) != 3:
            continue
        chat_type, target, seq = item
        try:
            key = PartitionKey(str(chat_type), str(target))
            cursors[key] = _seq(seq, "cursor")
        except (ValueError, InvalidRequestError):
            continue
    return cursors


def parse_event(env: dict) -> InboundEvent:
    """Turn a validated envelope into a typed event, or raise InvalidRequestError."""
    t = env.get(K_T)

    if t == T_HELLO:
        body = env.get(K_BODY)
        if not isinstance(body, dict):
            return Hello(credential=None)
        cred = body.get(B_HELLO_CREDENTIAL)
        device = normalize_id(body.get(B_HELLO_DEVICE)) or DEFAULT_DEVICE
        return Hello(
            credential=bytes(cred) if isinstance(cred, (bytes, bytearray)) else None,
            device_id=device,
            cursors=_parse_cursors(body.get(B_HELLO_CURSORS)),
        )

    if t == T_SEND:
        body = _body_map(env)
        content = body.get(B_CONTENT)
        if not isinstance(content, str):
            raise InvalidRequestError("content must be a string")
        return SendMessage(content=content, partition=_partition(body), temp_id=body.get(B_TEMP_ID))

    if t == T_JOIN_ROOM:
        return JoinRoom(_group_id(_body_map(env)))
    if t == T_LEAVE_ROOM:
        return LeaveRoom(_group_id(_body_map(env)))

    if t in (T_TYPING, T_STOP_TYPING):
        return Typing(_partition(_body_map(env)), active=(t == T_TYPING))

    if t == T_ACK:
        body = _body_map(env)
        return AckCursor(_partition(body), _seq(body.get(B_SEQUENCE), "sequence"))

    if t == T_REPLAY:
        body = _body_map(env)
        return ReplayRequest(_partition(body), _seq(body.get(B_AFTER, 0), "after"))

    if t == T_PING:
        return Ping(env.get(K_BODY))
    if t == T_PONG:
        return Pong(env.get(K_BODY))

    raise InvalidRequestError(f"unknown message type {t}")


# Outbound


@dataclass(frozen=True)
class Welcome:
    hub_name: str
    version: str
    user_id: str
    display_name: str

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(
            T_WELCOME,
            src=src,
            body={
                B_WELCOME_HUB: self.hub_name,
                B_WELCOME_VER: self.version,
                B_WELCOME_USER: self.user_id,
                B_WELCOME_NAME: self.display_name,
            },
        )


@dataclass(frozen=True)
class SendAck:
    message: Message
    temp_id: Any = None

    def to_envelope(self, src: bytes | str) -> dict:
        body: dict[int, Any] = {B_MESSAGE: self.message.to_record()}
        if self.temp_id is not None:
            body[B_TEMP_ID] = self.temp_id
        return make_envelope(T_SEND_ACK, src=src, body=body)


@dataclass(frozen=True)
class NewMessage:
    message: Message

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_NEW_MESSAGE, src=src, body={B_MESSAGE: self.message.to_record()})


@dataclass(frozen=True)
class HistoryMessage:
    """A stored message sent in answer to REPLAY; closed by REPLAY_DONE."""

    message: Message

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_HISTORY, src=src, body={B_MESSAGE: self.message.to_record()})


@dataclass(frozen=True)
class RoomJoined:
    group_id: str

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_ROOM_JOINED, src=src, body={B_GROUP: self.group_id})


@dataclass(frozen=True)
class RoomLeft:
    group_id: str

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_ROOM_LEFT, src=src, body={B_GROUP: self.group_id})


@dataclass(frozen=True)
class UserStatusUpdate:
    user_id: str
    status: str

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(
            T_USER_STATUS, src=src, body={B_USER: self.user_id, B_STATUS: self.status}
        )


@dataclass(frozen=True)
class UserTyping:
    user_id: str
    partition: PartitionKey
    active: bool

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(
            T_USER_TYPING if self.active else T_USER_STOPPED_TYPING,
            src=src,
            body={
                B_USER: self.user_id,
                B_CHAT_TYPE: self.partition.chat_type,
                B_TARGET: self.partition.target_id,
            },
        )


@dataclass(frozen=True)
class ReplayDone:
    partition: PartitionKey
    last: int

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(
            T_REPLAY_DONE,
            src=src,
            body={
                B_CHAT_TYPE: self.partition.chat_type,
                B_TARGET: self.partition.target_id,
                B_LAST: self.last,
            },
        )


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    text: str
    temp_id: Any = None

    def to_envelope(self, src: bytes | str) -> dict:
        body: dict[int, Any] = {B_ERR_CODE: self.code, B_ERR_TEXT: self.text}
        if self.temp_id is not None:
            body[B_ERR_TEMP_ID] = self.temp_id
        return make_envelope(T_ERROR, src=src, body=body)


@dataclass(frozen=True)
class PingOut:
    body: Any = None

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_PING, src=src, body=self.body)


@dataclass(frozen=True)
class PongOut:
    body: Any = None

    def to_envelope(self, src: bytes | str) -> dict:
        return make_envelope(T_PONG, src=src, body=self.body)


OutboundEvent = Union[
    Welcome,
    SendAck,
    NewMessage,
    HistoryMessage,
    RoomJoined,
    RoomLeft,
    UserStatusUpdate,
    UserTyping,
    ReplayDone,
    ErrorEvent,
    PingOut,
    PongOut,
]
