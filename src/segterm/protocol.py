"""Wire protocol for segterm WebSocket communication.

All frames are JSON text. Requests carry a client-chosen ``id`` that the
server echoes in the matching result.

Client -> server:
  - auth:        {"type":"auth","password":"...","totp":"..."}
  - create:      {"type":"create","id":"1","segment":"t1"}
  - spawn:       {"type":"spawn","id":"2","segment":"t1"}
  - write:       {"type":"write","id":"3","segment":"t1","data":"ls\\n"}
  - resize:      {"type":"resize","id":"4","segment":"t1","rows":N,"cols":N}
  - close:       {"type":"close","id":"5","segment":"t1"}
  - list:        {"type":"list","id":"6"}
  - subscribe / unsubscribe: {"type":"subscribe","id":"7","segment":"t1"}
  - ping:        {"type":"ping"}

Server -> client:
  - auth_result: {"type":"auth_result","ok":bool,"error":"..."}
  - result:      {"type":"result","id":"1","ok":true,"data":{...}}
                 {"type":"result","id":"1","ok":false,"error":{"code":"...","message":"..."}}
  - term:output: {"type":"term:output","segment":"t1","seq":N,"data":"..."}
  - term:exit:   {"type":"term:exit","segment":"t1","code":N|null}
  - term:error:  {"type":"term:error","segment":"t1","message":"..."}
  - pong, error: {"type":"error","message":"..."}
"""

import json
from enum import Enum
from typing import Any


class MsgType(str, Enum):
    AUTH = "auth"
    AUTH_RESULT = "auth_result"
    CREATE = "create"
    SPAWN = "spawn"
    WRITE = "write"
    RESIZE = "resize"
    CLOSE = "close"
    LIST = "list"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    RESULT = "result"
    OUTPUT = "term:output"
    EXIT = "term:exit"
    TERM_ERROR = "term:error"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"


EVENT_TYPES = frozenset(
    {MsgType.OUTPUT.value, MsgType.EXIT.value, MsgType.TERM_ERROR.value}
)


def encode_control(msg_type: MsgType, **kwargs: Any) -> str:
    """Encode a control message as JSON."""
    return json.dumps({"type": msg_type.value, **kwargs})


def decode_control(raw: str) -> dict[str, Any]:
    """Decode a JSON control message."""
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("Control message must be a JSON object")
    if "type" not in data:
        raise ValueError("Missing 'type' field in control message")
    return data


def auth_request(password: str, totp: str = "") -> str:
    return encode_control(MsgType.AUTH, password=password, totp=totp)


def auth_response(ok: bool, error: str = "") -> str:
    return encode_control(MsgType.AUTH_RESULT, ok=ok, error=error)


def request(msg_type: MsgType, request_id: str, **payload: Any) -> str:
    return encode_control(msg_type, id=request_id, **payload)


def result_ok(request_id: str | None, data: Any = None) -> str:
    return encode_control(MsgType.RESULT, id=request_id, ok=True, data=data)


def result_error(request_id: str | None, code: str, message: str) -> str:
    return encode_control(
        MsgType.RESULT,
        id=request_id,
        ok=False,
        error={"code": code, "message": message},
    )


def output_event(segment: str, seq: int, data: str, replay: bool = False) -> str:
    if replay:
        return encode_control(MsgType.OUTPUT, segment=segment, seq=seq, data=data, replay=True)
    return encode_control(MsgType.OUTPUT, segment=segment, seq=seq, data=data)


def exit_event(segment: str, code: int | None) -> str:
    return encode_control(MsgType.EXIT, segment=segment, code=code)


def term_error_event(segment: str, message: str) -> str:
    return encode_control(MsgType.TERM_ERROR, segment=segment, message=message)


def error_msg(message: str) -> str:
    return encode_control(MsgType.ERROR, message=message)
