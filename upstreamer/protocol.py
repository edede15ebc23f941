"""Core message, address, status and service types shared by transports and the streamer."""

from __future__ import annotations

import abc
import enum
import re
import secrets
import time
import uuid as _stdlib_uuid
from dataclasses import dataclass, field

WILDCARD_AUTHORITY = "*"
WILDCARD_ENTITY_ID = 0x0000_FFFF
WILDCARD_VERSION = 0xFF
WILDCARD_RESOURCE_ID = 0xFFFF

_MAX_UE_ID = 0xFFFF_FFFF
_MAX_VERSION = 0xFF
_MAX_RESOURCE_ID = 0xFFFF
_MAX_AUTHORITY_LENGTH = 128
_HEX_SEGMENT = re.compile(r"[0-9A-Fa-f]{1,8}")


class UCode(enum.IntEnum):
    """Canonical status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class UMessageType(enum.IntEnum):
    """Kind of a message."""

    UNSPECIFIED = 0
    PUBLISH = 1
    REQUEST = 2
    RESPONSE = 3
    NOTIFICATION = 4


class UPayloadFormat(enum.IntEnum):
    """Encoding of a message payload."""

    UNSPECIFIED = 0
    PROTOBUF_WRAPPED_IN_ANY = 1
    PROTOBUF = 2
    JSON = 3
    SOMEIP = 4
    SOMEIP_TLV = 5
    RAW = 6
    TEXT = 7
    SHM = 8


class UStatus(Exception):
    """A failed operation, carrying a status code and a message."""

    def __init__(self, code: UCode | int, message: str = "") -> None:
        super().__init__(message)
        self.code = UCode(code)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"

    def __repr__(self) -> str:
        return f"UStatus(code={self.code.name}, message={self.message!r})"


@dataclass(frozen=True)
class UUri:
    """Address of a resource: authority, entity id, major version and resource id."""

    authority_name: str = ""
    ue_id: int = 0
    ue_version_major: int = 0
    resource_id: int = 0

    def __post_init__(self) -> None:
        if len(self.authority_name) > _MAX_AUTHORITY_LENGTH:
            raise ValueError("authority name is too long")
        if "/" in self.authority_name:
            raise ValueError("authority name must not contain '/'")
        if not 0 <= self.ue_id <= _MAX_UE_ID:
            raise ValueError(f"ue_id out of range: {self.ue_id}")
        if not 0 <= self.ue_version_major <= _MAX_VERSION:
            raise ValueError(f"ue_version_major out of range: {self.ue_version_major}")
        if not 0 <= self.resource_id <= _MAX_RESOURCE_ID:
            raise ValueError(f"resource_id out of range: {self.resource_id}")

    @staticmethod
    def any() -> UUri:
        """Return the URI matching any authority, entity, version and resource."""
        return UUri(
            authority_name=WILDCARD_AUTHORITY,
            ue_id=WILDCARD_ENTITY_ID,
            ue_version_major=WILDCARD_VERSION,
            resource_id=WILDCARD_RESOURCE_ID,
        )

    @staticmethod
    def parse(text: str) -> UUri:
        """Parse ``[up:]//authority/UE_ID/VERSION/RESOURCE`` or ``/UE_ID/VERSION/RESOURCE``."""
        if not text:
            raise ValueError("empty URI")
        rest = text
        if "://" in rest:
            scheme, _, remainder = rest.partition("://")
            if scheme.lower() != "up":
                raise ValueError(f"unsupported scheme: {scheme!r}")
            rest = "//" + remainder
        if "?" in rest or "#" in rest:
            raise ValueError("URI must not have a query or a fragment")

        if rest.startswith("//"):
            authority, sep, path = rest[2:].partition("/")
            if not authority:
                raise ValueError("URI has an empty authority")
            if not sep:
                raise ValueError("URI has no path")
        elif rest.startswith("/"):
            authority, path = "", rest[1:]
        else:
            raise ValueError(f"not a valid URI: {text!r}")

        segments = path.split("/")
        if len(segments) != 3:
            raise ValueError(f"URI path must have three segments: {text!r}")
        for segment in segments:
            if not _HEX_SEGMENT.fullmatch(segment):
                raise ValueError(f"invalid hex segment {segment!r} in {text!r}")
        ue_id, version, resource = (int(segment, 16) for segment in segments)
        return UUri(
            authority_name=authority,
            ue_id=ue_id,
            ue_version_major=version,
            resource_id=resource,
        )

    def __str__(self) -> str:
        path = f"{self.ue_id:X}/{self.ue_version_major:X}/{self.resource_id:X}"
        if self.authority_name:
            return f"//{self.authority_name}/{path}"
        return f"/{path}"


@dataclass(frozen=True)
class UUID:
    """A time-ordered (version 7) identifier, stored as two 64-bit halves."""

    msb: int
    lsb: int

    @staticmethod
    def build() -> UUID:
        """Create a new identifier from the current time and random bits."""
        timestamp_ms = time.time_ns() // 1_000_000
        msb = ((timestamp_ms & 0xFFFF_FFFF_FFFF) << 16) | 0x7000 | secrets.randbits(12)
        lsb = 0x8000_0000_0000_0000 | secrets.randbits(62)
        return UUID(msb=msb, lsb=lsb)

    def to_hyphenated_string(self) -> str:
        """Return the canonical 8-4-4-4-12 lower-case hex form."""
        return str(_stdlib_uuid.UUID(int=(self.msb << 64) | self.lsb))

    def __str__(self) -> str:
        return self.to_hyphenated_string()


@dataclass
class UAttributes:
    """Metadata of a message."""

    id: UUID | None = None
    message_type: UMessageType = UMessageType.UNSPECIFIED
    source: UUri | None = None
    sink: UUri | None = None
    payload_format: UPayloadFormat = UPayloadFormat.UNSPECIFIED


@dataclass
class UMessage:
    """A message: attributes and an optional payload."""

    attributes: UAttributes | None = None
    payload: bytes | None = None


class UListener(abc.ABC):
    """Receives messages delivered by a transport."""

    @abc.abstractmethod
    async def on_receive(self, msg: UMessage) -> None:
        """Handle one delivered message."""


class UTransport(abc.ABC):
    """A message transport. Operations that fail raise :class:`UStatus`."""

    @abc.abstractmethod
    async def send(self, message: UMessage) -> None:
        """Send a message."""

    async def receive(self, source_filter: UUri, sink_filter: UUri | None = None) -> UMessage:
        """Receive a message matching the filters."""
        raise UStatus(UCode.UNIMPLEMENTED, "receive is not supported by this transport")

    async def register_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        """Register a listener for messages matching the filters."""
        raise UStatus(UCode.UNIMPLEMENTED, "register_listener is not supported by this transport")

    async def unregister_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        """Remove a listener registered for the filters."""
        raise UStatus(
            UCode.UNIMPLEMENTED, "unregister_listener is not supported by this transport"
        )


@dataclass(frozen=True)
class SubscriberInfo:
    """Identifies a subscriber."""

    uri: UUri | None = None


@dataclass(frozen=True)
class Subscription:
    """A subscriber's subscription to a topic."""

    topic: UUri | None = None
    subscriber: SubscriberInfo | None = None


@dataclass
class FetchSubscriptionsRequest:
    """Ask for subscriptions, by topic or by subscriber."""

    topic: UUri | None = None
    subscriber: SubscriberInfo | None = None
    offset: int | None = None


@dataclass
class FetchSubscriptionsResponse:
    """Subscriptions returned by a subscription service."""

    subscriptions: list[Subscription] = field(default_factory=list)
    next_offset: int | None = None
    has_more_records: bool = False


class USubscription(abc.ABC):
    """A subscription service."""

    @abc.abstractmethod
    async def subscribe(self, request):
        """Subscribe to a topic."""

    @abc.abstractmethod
    async def fetch_subscriptions(self, request: FetchSubscriptionsRequest) -> FetchSubscriptionsResponse:
        """Return the subscriptions matching the request."""

    @abc.abstractmethod
    async def unsubscribe(self, request) -> None:
        """Remove a subscription."""

    @abc.abstractmethod
    async def register_for_notifications(self, request) -> None:
        """Register for subscription change notifications."""

    @abc.abstractmethod
    async def unregister_for_notifications(self, request) -> None:
        """Stop subscription change notifications."""

    @abc.abstractmethod
    async def fetch_subscribers(self, request):
        """Return the subscribers of a topic."""