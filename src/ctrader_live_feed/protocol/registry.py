from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Final

from google.protobuf.message import DecodeError, Message

from . import schema
from .framing import MalformedFrame

logger = logging.getLogger(__name__)

EncodeFn = Callable[[Mapping[str, Any]], bytes]
DecodeFn = Callable[[bytes], Message]


class UnknownKind(RuntimeError):
    """Raised when encoding a message kind that was never registered."""


class MessageKind(StrEnum):
    VERSION_REQUEST = "version_request"
    VERSION_RESPONSE = "version_response"
    APPLICATION_AUTH_REQUEST = "application_auth_request"
    APPLICATION_AUTH_RESPONSE = "application_auth_response"
    ACCOUNT_AUTH_REQUEST = "account_auth_request"
    ACCOUNT_AUTH_RESPONSE = "account_auth_response"
    ACCOUNT_LIST_REQUEST = "account_list_request"
    ACCOUNT_LIST_RESPONSE = "account_list_response"
    SYMBOL_LIST_REQUEST = "symbol_list_request"
    SYMBOL_LIST_RESPONSE = "symbol_list_response"
    SUBSCRIBE_SPOTS_REQUEST = "subscribe_spots_request"
    SUBSCRIBE_SPOTS_RESPONSE = "subscribe_spots_response"
    UNSUBSCRIBE_SPOTS_REQUEST = "unsubscribe_spots_request"
    UNSUBSCRIBE_SPOTS_RESPONSE = "unsubscribe_spots_response"
    SPOT_EVENT = "spot_event"
    ERROR_RESPONSE = "error_response"
    COMMON_ERROR_RESPONSE = "common_error_response"
    HEARTBEAT_EVENT = "heartbeat_event"
    TOKEN_INVALIDATED_EVENT = "token_invalidated_event"
    CLIENT_DISCONNECT_EVENT = "client_disconnect_event"
    ACCOUNT_DISCONNECT_EVENT = "account_disconnect_event"


# kind -> (schema message, payload-type enum value). Wire codes are resolved
# from the schema enum, never written out here.
_KIND_TABLE: Final[dict[MessageKind, tuple[str, str]]] = {
    MessageKind.VERSION_REQUEST: ("ProtoOAVersionReq", "PROTO_OA_VERSION_REQ"),
    MessageKind.VERSION_RESPONSE: ("ProtoOAVersionRes", "PROTO_OA_VERSION_RES"),
    MessageKind.APPLICATION_AUTH_REQUEST: ("ProtoOAApplicationAuthReq", "PROTO_OA_APPLICATION_AUTH_REQ"),
    MessageKind.APPLICATION_AUTH_RESPONSE: ("ProtoOAApplicationAuthRes", "PROTO_OA_APPLICATION_AUTH_RES"),
    MessageKind.ACCOUNT_AUTH_REQUEST: ("ProtoOAAccountAuthReq", "PROTO_OA_ACCOUNT_AUTH_REQ"),
    MessageKind.ACCOUNT_AUTH_RESPONSE: ("ProtoOAAccountAuthRes", "PROTO_OA_ACCOUNT_AUTH_RES"),
    MessageKind.ACCOUNT_LIST_REQUEST: (
        "ProtoOAGetAccountListByAccessTokenReq",
        "PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_REQ",
    ),
    MessageKind.ACCOUNT_LIST_RESPONSE: (
        "ProtoOAGetAccountListByAccessTokenRes",
        "PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_RES",
    ),
    MessageKind.SYMBOL_LIST_REQUEST: ("ProtoOASymbolsListReq", "PROTO_OA_SYMBOLS_LIST_REQ"),
    MessageKind.SYMBOL_LIST_RESPONSE: ("ProtoOASymbolsListRes", "PROTO_OA_SYMBOLS_LIST_RES"),
    MessageKind.SUBSCRIBE_SPOTS_REQUEST: ("ProtoOASubscribeSpotsReq", "PROTO_OA_SUBSCRIBE_SPOTS_REQ"),
    MessageKind.SUBSCRIBE_SPOTS_RESPONSE: ("ProtoOASubscribeSpotsRes", "PROTO_OA_SUBSCRIBE_SPOTS_RES"),
    MessageKind.UNSUBSCRIBE_SPOTS_REQUEST: ("ProtoOAUnsubscribeSpotsReq", "PROTO_OA_UNSUBSCRIBE_SPOTS_REQ"),
    MessageKind.UNSUBSCRIBE_SPOTS_RESPONSE: ("ProtoOAUnsubscribeSpotsRes", "PROTO_OA_UNSUBSCRIBE_SPOTS_RES"),
    MessageKind.SPOT_EVENT: ("ProtoOASpotEvent", "PROTO_OA_SPOT_EVENT"),
    MessageKind.ERROR_RESPONSE: ("ProtoOAErrorRes", "PROTO_OA_ERROR_RES"),
    MessageKind.COMMON_ERROR_RESPONSE: ("ProtoErrorRes", "ERROR_RES"),
    MessageKind.HEARTBEAT_EVENT: ("ProtoHeartbeatEvent", "HEARTBEAT_EVENT"),
    MessageKind.TOKEN_INVALIDATED_EVENT: (
        "ProtoOAAccountsTokenInvalidatedEvent",
        "PROTO_OA_ACCOUNTS_TOKEN_INVALIDATED_EVENT",
    ),
    MessageKind.CLIENT_DISCONNECT_EVENT: ("ProtoOAClientDisconnectEvent", "PROTO_OA_CLIENT_DISCONNECT_EVENT"),
    MessageKind.ACCOUNT_DISCONNECT_EVENT: ("ProtoOAAccountDisconnectEvent", "PROTO_OA_ACCOUNT_DISCONNECT_EVENT"),
}


@dataclass(frozen=True, slots=True)
class DecodedMessage:
    kind: MessageKind
    value: Message

    @property
    def fields(self) -> dict[str, Any]:
        return message_fields(self.value)


@dataclass(frozen=True, slots=True)
class Unrecognized:
    wire_code: int

    @property
    def name(self) -> str:
        return schema.payload_type_name(self.wire_code) or "UNKNOWN"


@dataclass(frozen=True, slots=True)
class _Registration:
    kind: MessageKind
    wire_code: int
    encode: EncodeFn
    decode: DecodeFn


class MessageRegistry:
    def __init__(self) -> None:
        self._by_kind: dict[MessageKind, _Registration] = {}
        self._by_code: dict[int, _Registration] = {}

    def register(self, kind: MessageKind, wire_code: int, encode_fn: EncodeFn, decode_fn: DecodeFn) -> None:
        if kind in self._by_kind:
            raise ValueError(f"message kind {kind} is already registered")
        if wire_code in self._by_code:
            existing = self._by_code[wire_code].kind
            raise ValueError(f"wire code {wire_code} is already registered for {existing}")
        registration = _Registration(kind=kind, wire_code=wire_code, encode=encode_fn, decode=decode_fn)
        self._by_kind[kind] = registration
        self._by_code[wire_code] = registration

    def __contains__(self, kind: object) -> bool:
        return kind in self._by_kind

    def kinds(self) -> tuple[MessageKind, ...]:
        return tuple(self._by_kind)

    def wire_code(self, kind: MessageKind) -> int:
        try:
            return self._by_kind[kind].wire_code
        except KeyError:
            raise UnknownKind(f"message kind {kind} is not registered") from None

    def encode(self, kind: MessageKind, fields: Mapping[str, Any] | None = None) -> bytes:
        try:
            registration = self._by_kind[kind]
        except KeyError:
            raise UnknownKind(f"message kind {kind} is not registered") from None
        return registration.encode(fields or {})

    def decode(self, wire_code: int, payload: bytes) -> DecodedMessage | Unrecognized:
        registration = self._by_code.get(wire_code)
        if registration is None:
            return Unrecognized(wire_code)
        try:
            value = registration.decode(payload)
        except DecodeError as exc:
            raise MalformedFrame(f"payload for {registration.kind} (wire code {wire_code}) does not parse") from exc
        return DecodedMessage(kind=registration.kind, value=value)


def message_fields(message: Message) -> dict[str, Any]:
    """Plain-dict view of the fields that are set on ``message``."""
    fields: dict[str, Any] = {}
    for descriptor, value in message.ListFields():
        if isinstance(value, Message):
            fields[descriptor.name] = message_fields(value)
        elif isinstance(value, (str, bytes, bool, int, float)):
            fields[descriptor.name] = value
        else:
            fields[descriptor.name] = [
                message_fields(item) if isinstance(item, Message) else item for item in value
            ]
    return fields


def _encoder(message_cls: type[Message]) -> EncodeFn:
    def encode(fields: Mapping[str, Any]) -> bytes:
        return message_cls(**fields).SerializeToString()

    return encode


def _decoder(message_cls: type[Message]) -> DecodeFn:
    def decode(payload: bytes) -> Message:
        message = message_cls()
        message.ParseFromString(payload)
        return message

    return decode


def validate_kind_table() -> None:
    """Check the kind table against the compiled schema.

    Every MessageKind must be mapped, and each mapped message must declare the
    same payload type as the enum value the table assigns to it.
    """
    missing = [kind for kind in MessageKind if kind not in _KIND_TABLE]
    if missing:
        raise RuntimeError(f"message kinds without a wire mapping: {', '.join(missing)}")

    seen: dict[int, MessageKind] = {}
    for kind, (message_name, payload_type) in _KIND_TABLE.items():
        code = schema.payload_type_code(payload_type)
        declared = schema.declared_payload_type(message_name)
        if declared != code:
            raise RuntimeError(
                f"{kind} maps to {payload_type}={code} but {message_name} declares payloadType={declared}"
            )
        if code in seen:
            raise RuntimeError(f"wire code {code} is mapped to both {seen[code]} and {kind}")
        seen[code] = kind


def default_registry() -> MessageRegistry:
    validate_kind_table()
    registry = MessageRegistry()
    for kind, (message_name, payload_type) in _KIND_TABLE.items():
        message_cls = schema.message_class(message_name)
        registry.register(
            kind,
            schema.payload_type_code(payload_type),
            _encoder(message_cls),
            _decoder(message_cls),
        )
    logger.debug("Message registry ready", extra={"kinds": len(registry.kinds())})
    return registry
