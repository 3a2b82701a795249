"""Open API protobuf schema, compiled at import time.

The message and enum definitions below mirror the broker's published proto2
files (OpenApiCommonMessages.proto, OpenApiCommonModelMessages.proto,
OpenApiMessages.proto and OpenApiModelMessages.proto) for the subset of the
API this client speaks. Field numbers are pinned against those files in the
registry tests. The definitions are built into a private descriptor pool, so
nothing leaks into the process-wide default pool and no generated ``_pb2``
modules are needed.

Every field is declared optional: the server may omit fields the published
schema marks required (it does for several events), and the handshake checks
what it actually needs.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cache
from typing import Final

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import Message

_FILE_NAME: Final = "ctrader_live_feed/open_api.proto"

PROTO_PAYLOAD_TYPE: Final = "ProtoPayloadType"
PROTO_OA_PAYLOAD_TYPE: Final = "ProtoOAPayloadType"


@dataclass(frozen=True, slots=True)
class FieldSpec:
    name: str
    number: int
    dtype: str
    repeated: bool = False
    default: str | None = None


@dataclass(frozen=True, slots=True)
class MessageSpec:
    name: str
    fields: tuple[FieldSpec, ...]


_ENUMS: Final[dict[str, tuple[tuple[str, int], ...]]] = {
    PROTO_PAYLOAD_TYPE: (
        ("PROTO_MESSAGE", 5),
        ("ERROR_RES", 50),
        ("HEARTBEAT_EVENT", 51),
    ),
    PROTO_OA_PAYLOAD_TYPE: (
        ("PROTO_OA_APPLICATION_AUTH_REQ", 2100),
        ("PROTO_OA_APPLICATION_AUTH_RES", 2101),
        ("PROTO_OA_ACCOUNT_AUTH_REQ", 2102),
        ("PROTO_OA_ACCOUNT_AUTH_RES", 2103),
        ("PROTO_OA_VERSION_REQ", 2104),
        ("PROTO_OA_VERSION_RES", 2105),
        ("PROTO_OA_NEW_ORDER_REQ", 2106),
        ("PROTO_OA_TRAILING_SL_CHANGED_EVENT", 2107),
        ("PROTO_OA_CANCEL_ORDER_REQ", 2108),
        ("PROTO_OA_AMEND_ORDER_REQ", 2109),
        ("PROTO_OA_AMEND_POSITION_SLTP_REQ", 2110),
        ("PROTO_OA_CLOSE_POSITION_REQ", 2111),
        ("PROTO_OA_ASSET_LIST_REQ", 2112),
        ("PROTO_OA_ASSET_LIST_RES", 2113),
        ("PROTO_OA_SYMBOLS_LIST_REQ", 2114),
        ("PROTO_OA_SYMBOLS_LIST_RES", 2115),
        ("PROTO_OA_SYMBOL_BY_ID_REQ", 2116),
        ("PROTO_OA_SYMBOL_BY_ID_RES", 2117),
        ("PROTO_OA_SYMBOLS_FOR_CONVERSION_REQ", 2118),
        ("PROTO_OA_SYMBOLS_FOR_CONVERSION_RES", 2119),
        ("PROTO_OA_SYMBOL_CHANGED_EVENT", 2120),
        ("PROTO_OA_TRADER_REQ", 2121),
        ("PROTO_OA_TRADER_RES", 2122),
        ("PROTO_OA_TRADER_UPDATE_EVENT", 2123),
        ("PROTO_OA_RECONCILE_REQ", 2124),
        ("PROTO_OA_RECONCILE_RES", 2125),
        ("PROTO_OA_EXECUTION_EVENT", 2126),
        ("PROTO_OA_SUBSCRIBE_SPOTS_REQ", 2127),
        ("PROTO_OA_SUBSCRIBE_SPOTS_RES", 2128),
        ("PROTO_OA_UNSUBSCRIBE_SPOTS_REQ", 2129),
        ("PROTO_OA_UNSUBSCRIBE_SPOTS_RES", 2130),
        ("PROTO_OA_SPOT_EVENT", 2131),
        ("PROTO_OA_ORDER_ERROR_EVENT", 2132),
        ("PROTO_OA_DEAL_LIST_REQ", 2133),
        ("PROTO_OA_DEAL_LIST_RES", 2134),
        ("PROTO_OA_SUBSCRIBE_LIVE_TRENDBAR_REQ", 2135),
        ("PROTO_OA_UNSUBSCRIBE_LIVE_TRENDBAR_REQ", 2136),
        ("PROTO_OA_GET_TRENDBARS_REQ", 2137),
        ("PROTO_OA_GET_TRENDBARS_RES", 2138),
        ("PROTO_OA_EXPECTED_MARGIN_REQ", 2139),
        ("PROTO_OA_EXPECTED_MARGIN_RES", 2140),
        ("PROTO_OA_MARGIN_CHANGED_EVENT", 2141),
        ("PROTO_OA_ERROR_RES", 2142),
        ("PROTO_OA_CASH_FLOW_HISTORY_LIST_REQ", 2143),
        ("PROTO_OA_CASH_FLOW_HISTORY_LIST_RES", 2144),
        ("PROTO_OA_GET_TICKDATA_REQ", 2145),
        ("PROTO_OA_GET_TICKDATA_RES", 2146),
        ("PROTO_OA_ACCOUNTS_TOKEN_INVALIDATED_EVENT", 2147),
        ("PROTO_OA_CLIENT_DISCONNECT_EVENT", 2148),
        ("PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_REQ", 2149),
        ("PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_RES", 2150),
        ("PROTO_OA_ACCOUNT_LOGOUT_REQ", 2162),
        ("PROTO_OA_ACCOUNT_LOGOUT_RES", 2163),
        ("PROTO_OA_ACCOUNT_DISCONNECT_EVENT", 2164),
    ),
}


def _payload_type(value: str, enum: str = PROTO_OA_PAYLOAD_TYPE) -> FieldSpec:
    return FieldSpec("payloadType", 1, enum, default=value)


_MESSAGES: Final[tuple[MessageSpec, ...]] = (
    MessageSpec(
        "ProtoMessage",
        (
            FieldSpec("payloadType", 1, "uint32"),
            FieldSpec("payload", 2, "bytes"),
            FieldSpec("clientMsgId", 3, "string"),
        ),
    ),
    MessageSpec(
        "ProtoErrorRes",
        (
            _payload_type("ERROR_RES", PROTO_PAYLOAD_TYPE),
            FieldSpec("errorCode", 2, "string"),
            FieldSpec("description", 3, "string"),
            FieldSpec("maintenanceEndTimestamp", 4, "uint64"),
        ),
    ),
    MessageSpec("ProtoHeartbeatEvent", (_payload_type("HEARTBEAT_EVENT", PROTO_PAYLOAD_TYPE),)),
    MessageSpec(
        "ProtoOACtidTraderAccount",
        (
            FieldSpec("ctidTraderAccountId", 1, "uint64"),
            FieldSpec("isLive", 2, "bool"),
            FieldSpec("traderLogin", 3, "int64"),
            FieldSpec("lastClosingDealTimestamp", 4, "int64"),
            FieldSpec("lastBalanceUpdateTimestamp", 5, "int64"),
            FieldSpec("brokerTitleShort", 6, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOALightSymbol",
        (
            FieldSpec("symbolId", 1, "int64"),
            FieldSpec("symbolName", 2, "string"),
            FieldSpec("enabled", 3, "bool"),
            FieldSpec("baseAssetId", 4, "int64"),
            FieldSpec("quoteAssetId", 5, "int64"),
            FieldSpec("symbolCategoryId", 6, "int64"),
            FieldSpec("description", 7, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOATrendbar",
        (
            FieldSpec("volume", 3, "int64"),
            FieldSpec("period", 4, "int32"),
            FieldSpec("low", 5, "int64"),
            FieldSpec("deltaOpen", 6, "uint64"),
            FieldSpec("deltaClose", 7, "uint64"),
            FieldSpec("deltaHigh", 8, "uint64"),
            FieldSpec("utcTimestampInMinutes", 9, "uint32"),
        ),
    ),
    MessageSpec("ProtoOAVersionReq", (_payload_type("PROTO_OA_VERSION_REQ"),)),
    MessageSpec(
        "ProtoOAVersionRes",
        (
            _payload_type("PROTO_OA_VERSION_RES"),
            FieldSpec("version", 2, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOAApplicationAuthReq",
        (
            _payload_type("PROTO_OA_APPLICATION_AUTH_REQ"),
            FieldSpec("clientId", 2, "string"),
            FieldSpec("clientSecret", 3, "string"),
        ),
    ),
    MessageSpec("ProtoOAApplicationAuthRes", (_payload_type("PROTO_OA_APPLICATION_AUTH_RES"),)),
    MessageSpec(
        "ProtoOAAccountAuthReq",
        (
            _payload_type("PROTO_OA_ACCOUNT_AUTH_REQ"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("accessToken", 3, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOAAccountAuthRes",
        (
            _payload_type("PROTO_OA_ACCOUNT_AUTH_RES"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
        ),
    ),
    MessageSpec(
        "ProtoOAGetAccountListByAccessTokenReq",
        (
            _payload_type("PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_REQ"),
            FieldSpec("accessToken", 2, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOAGetAccountListByAccessTokenRes",
        (
            _payload_type("PROTO_OA_GET_ACCOUNTS_BY_ACCESS_TOKEN_RES"),
            FieldSpec("accessToken", 2, "string"),
            FieldSpec("permissionScope", 3, "int32"),
            FieldSpec("ctidTraderAccount", 4, "ProtoOACtidTraderAccount", repeated=True),
        ),
    ),
    MessageSpec(
        "ProtoOASymbolsListReq",
        (
            _payload_type("PROTO_OA_SYMBOLS_LIST_REQ"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("includeArchivedSymbols", 3, "bool"),
        ),
    ),
    MessageSpec(
        "ProtoOASymbolsListRes",
        (
            _payload_type("PROTO_OA_SYMBOLS_LIST_RES"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("symbol", 3, "ProtoOALightSymbol", repeated=True),
        ),
    ),
    MessageSpec(
        "ProtoOASubscribeSpotsReq",
        (
            _payload_type("PROTO_OA_SUBSCRIBE_SPOTS_REQ"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("symbolId", 3, "int64", repeated=True),
            FieldSpec("subscribeToSpotTimestamp", 4, "bool"),
        ),
    ),
    MessageSpec(
        "ProtoOASubscribeSpotsRes",
        (
            _payload_type("PROTO_OA_SUBSCRIBE_SPOTS_RES"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
        ),
    ),
    MessageSpec(
        "ProtoOAUnsubscribeSpotsReq",
        (
            _payload_type("PROTO_OA_UNSUBSCRIBE_SPOTS_REQ"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("symbolId", 3, "int64", repeated=True),
        ),
    ),
    MessageSpec(
        "ProtoOAUnsubscribeSpotsRes",
        (
            _payload_type("PROTO_OA_UNSUBSCRIBE_SPOTS_RES"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
        ),
    ),
    MessageSpec(
        "ProtoOASpotEvent",
        (
            _payload_type("PROTO_OA_SPOT_EVENT"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("symbolId", 3, "int64"),
            FieldSpec("bid", 4, "uint64"),
            FieldSpec("ask", 5, "uint64"),
            FieldSpec("trendbar", 6, "ProtoOATrendbar", repeated=True),
            FieldSpec("sessionClose", 7, "uint64"),
            FieldSpec("timestamp", 8, "int64"),
        ),
    ),
    MessageSpec(
        "ProtoOAErrorRes",
        (
            _payload_type("PROTO_OA_ERROR_RES"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
            FieldSpec("errorCode", 3, "string"),
            FieldSpec("description", 4, "string"),
            FieldSpec("maintenanceEndTimestamp", 5, "int64"),
        ),
    ),
    MessageSpec(
        "ProtoOAAccountsTokenInvalidatedEvent",
        (
            _payload_type("PROTO_OA_ACCOUNTS_TOKEN_INVALIDATED_EVENT"),
            FieldSpec("ctidTraderAccountIds", 2, "int64", repeated=True),
            FieldSpec("reason", 3, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOAClientDisconnectEvent",
        (
            _payload_type("PROTO_OA_CLIENT_DISCONNECT_EVENT"),
            FieldSpec("reason", 2, "string"),
        ),
    ),
    MessageSpec(
        "ProtoOAAccountDisconnectEvent",
        (
            _payload_type("PROTO_OA_ACCOUNT_DISCONNECT_EVENT"),
            FieldSpec("ctidTraderAccountId", 2, "int64"),
        ),
    ),
)

_F = descriptor_pb2.FieldDescriptorProto

_SCALAR_TYPES: Final[dict[str, int]] = {
    "string": _F.TYPE_STRING,
    "bytes": _F.TYPE_BYTES,
    "bool": _F.TYPE_BOOL,
    "int32": _F.TYPE_INT32,
    "int64": _F.TYPE_INT64,
    "uint32": _F.TYPE_UINT32,
    "uint64": _F.TYPE_UINT64,
}


def message_specs() -> tuple[MessageSpec, ...]:
    return _MESSAGES


def message_names() -> list[str]:
    return [spec.name for spec in _MESSAGES]


def enum_values(enum_name: str) -> dict[str, int]:
    return dict(_ENUMS[enum_name])


def payload_type_code(value_name: str) -> int:
    """Resolve a payload-type enum value name to its wire discriminator."""
    for values in _ENUMS.values():
        for name, number in values:
            if name == value_name:
                return number
    raise KeyError(f"payload type {value_name!r} is not defined in the schema")


def payload_type_name(code: int) -> str | None:
    for values in _ENUMS.values():
        for name, number in values:
            if number == code:
                return name
    return None


def _build_file_proto() -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(name=_FILE_NAME, syntax="proto2")

    for enum_name, values in _ENUMS.items():
        enum_proto = file_proto.enum_type.add(name=enum_name)
        for value_name, number in values:
            enum_proto.value.add(name=value_name, number=number)

    for spec in _MESSAGES:
        message_proto = file_proto.message_type.add(name=spec.name)
        for field in spec.fields:
            field_proto = message_proto.field.add(
                name=field.name,
                number=field.number,
                label=_F.LABEL_REPEATED if field.repeated else _F.LABEL_OPTIONAL,
            )
            if field.dtype in _SCALAR_TYPES:
                field_proto.type = _SCALAR_TYPES[field.dtype]
            elif field.dtype in _ENUMS:
                field_proto.type = _F.TYPE_ENUM
                field_proto.type_name = f".{field.dtype}"
            else:
                field_proto.type = _F.TYPE_MESSAGE
                field_proto.type_name = f".{field.dtype}"
            if field.default is not None:
                field_proto.default_value = field.default

    return file_proto


@cache
def _pool() -> descriptor_pool.DescriptorPool:
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(_build_file_proto().SerializeToString())
    return pool


@cache
def message_class(name: str) -> type[Message]:
    descriptor = _pool().FindMessageTypeByName(name)
    return message_factory.GetMessageClass(descriptor)


def declared_payload_type(name: str) -> int | None:
    """Default of the ``payloadType`` field the schema declares for a message."""
    descriptor = _pool().FindMessageTypeByName(name)
    field = descriptor.fields_by_name.get("payloadType")
    if field is None or field.enum_type is None:
        return None
    return int(field.default_value)
