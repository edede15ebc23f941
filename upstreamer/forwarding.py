"""Forwarding machinery: listeners that capture messages and workers that resend them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from upstreamer.protocol import (
    WILDCARD_ENTITY_ID,
    WILDCARD_RESOURCE_ID,
    WILDCARD_VERSION,
    Subscription,
    UListener,
    UMessage,
    UPayloadFormat,
    UStatus,
    UTransport,
    UUID,
    UUri,
)

logger = logging.getLogger(__name__)


def uauthority_to_uuri(authority_name: str) -> UUri:
    """Return a URI matching any entity, version and resource of one authority."""
    return UUri(
        authority_name=authority_name,
        ue_id=WILDCARD_ENTITY_ID,
        ue_version_major=WILDCARD_VERSION,
        resource_id=WILDCARD_RESOURCE_ID,
    )


class ForwardingListenerError(Exception):
    """Registering a forwarding listener failed.

    ``topic`` is None when the request/response/notification listener could not
    be registered, or the publish topic whose listener could not be registered.
    """

    def __init__(self, topic: UUri | None = None) -> None:
        self.topic = topic
        if topic is None:
            message = "Failed to register notification request/response listener"
        else:
            message = f"Failed to register publish listener for URI: {topic}"
        super().__init__(message)

    def __repr__(self) -> str:
        if self.topic is None:
            return "FailToRegisterNotificationRequestResponseListener"
        return f"FailToRegisterPublishListener({self.topic!r})"


def _offer(queue: asyncio.Queue, msg: UMessage) -> None:
    """Put a message on the queue, dropping the oldest one when it is full."""
    try:
        queue.put_nowait(msg)
    except asyncio.QueueFull:
        queue.get_nowait()
        logger.warning("Forwarding queue full, dropped the oldest message")
        queue.put_nowait(msg)


class ForwardingListener(UListener):
    """Hands every received message to the worker of an out transport."""

    def __init__(self, forwarding_id: str, sender: asyncio.Queue) -> None:
        self.forwarding_id = forwarding_id
        self.sender = sender

    async def on_receive(self, msg: UMessage) -> None:
        logger.debug(
            "%s:ForwardingListener:on_receive(): Received message: %r", self.forwarding_id, msg
        )
        attributes = msg.attributes
        if attributes is not None and attributes.payload_format == UPayloadFormat.SHM:
            logger.debug(
                "%s:ForwardingListener:on_receive(): Received message with payload format SHM, "
                "which is not supported. A pointer to shared memory will not be usable on "
                "another device. UAttributes: %r",
                self.forwarding_id,
                attributes,
            )
            return
        _offer(self.sender, msg)


class TransportForwarder:
    """Background task that sends every queued message on the out transport."""

    def __init__(self, out_transport: UTransport, queue: asyncio.Queue) -> None:
        self.out_transport = out_transport
        self.queue = queue
        self.id = UUID.build().to_hyphenated_string()
        self._task = asyncio.get_running_loop().create_task(self._forwarding_loop())

    def stop(self) -> None:
        """Stop forwarding; queued messages are no longer sent."""
        self._task.cancel()

    async def _forwarding_loop(self) -> None:
        while True:
            msg = await self.queue.get()
            logger.debug(
                "%s:TransportForwarder:message_forwarding_loop(): Attempting send of message: %r",
                self.id,
                msg,
            )
            try:
                await self.out_transport.send(msg)
            except Exception as err:  # keep forwarding whatever one send does
                logger.warning(
                    "%s:TransportForwarder:message_forwarding_loop(): "
                    "Sending on out_transport failed: %r",
                    self.id,
                    err,
                )
            else:
                logger.debug(
                    "%s:TransportForwarder:message_forwarding_loop(): "
                    "Sending on out_transport succeeded",
                    self.id,
                )


@dataclass
class _ForwarderEntry:
    transport: UTransport
    active: int
    forwarder: TransportForwarder
    queue: asyncio.Queue


class TransportForwarders:
    """One reference-counted forwarder per out transport."""

    def __init__(self, message_queue_size: int) -> None:
        if message_queue_size < 1:
            raise ValueError("message_queue_size must be at least 1")
        self.message_queue_size = message_queue_size
        self._forwarders: dict[int, _ForwarderEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._forwarders)

    def __contains__(self, transport: object) -> bool:
        entry = self._forwarders.get(id(transport))
        return entry is not None and entry.transport is transport

    async def insert(self, out_transport: UTransport) -> asyncio.Queue:
        """Count one more user of the transport's forwarder and return its queue."""
        async with self._lock:
            entry = self._forwarders.get(id(out_transport))
            if entry is None:
                logger.debug("TransportForwarders:insert: Inserting...")
                queue: asyncio.Queue = asyncio.Queue(maxsize=self.message_queue_size)
                entry = _ForwarderEntry(
                    transport=out_transport,
                    active=0,
                    forwarder=TransportForwarder(out_transport, queue),
                    queue=queue,
                )
                self._forwarders[id(out_transport)] = entry
            entry.active += 1
            return entry.queue

    async def remove(self, out_transport: UTransport) -> None:
        """Count one user fewer, stopping the forwarder when none are left."""
        async with self._lock:
            entry = self._forwarders.get(id(out_transport))
            if entry is None or entry.transport is not out_transport:
                logger.warning("TransportForwarders:remove: no such out_comparable_transport")
                return
            entry.active -= 1
            if entry.active == 0:
                del self._forwarders[id(out_transport)]
                entry.forwarder.stop()
                logger.debug("TransportForwarders:remove: removed TransportForwarder")


@dataclass
class _ListenerEntry:
    transport: UTransport
    active: int
    listener: ForwardingListener


class ForwardingListeners:
    """One reference-counted listener per in transport and out authority."""

    def __init__(self) -> None:
        self._listeners: dict[tuple[int, str], _ListenerEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._listeners)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        transport, authority = key
        entry = self._listeners.get((id(transport), authority))
        return entry is not None and entry.transport is transport

    async def insert(
        self,
        in_transport: UTransport,
        out_authority: str,
        forwarding_id: str,
        out_sender: asyncio.Queue,
        subscribers: Iterable[Subscription] | None,
    ) -> ForwardingListener | None:
        """Register a forwarding listener on the in transport for the out authority.

        Returns the new listener, or None when one was already registered.
        Raises :class:`ForwardingListenerError` after undoing any registrations
        when the transport refuses one.
        """
        key = (id(in_transport), out_authority)
        async with self._lock:
            existing = self._listeners.get(key)
            if existing is not None and existing.transport is in_transport:
                existing.active += 1
                return None if existing.active > 1 else existing.listener

            listener = ForwardingListener(forwarding_id, out_sender)
            to_backpedal: dict[tuple[UUri, UUri | None], None] = {}

            authority_uri = uauthority_to_uuri(out_authority)
            to_backpedal[(UUri.any(), authority_uri)] = None
            try:
                await in_transport.register_listener(UUri.any(), authority_uri, listener)
            except UStatus as err:
                logger.warning(
                    "ForwardingListeners:insert: unable to register request listener, error: %s",
                    err,
                )
                await self._backpedal(in_transport, to_backpedal, listener)
                raise ForwardingListenerError() from err
            logger.debug("ForwardingListeners:insert: able to register request listener")

            if subscribers is None:
                logger.warning(
                    "ForwardingListeners:insert: no subscribers found for out_authority: %r",
                    out_authority,
                )
                subscribers = ()

            for subscription in subscribers:
                topic = subscription.topic
                if topic is None:
                    continue
                to_backpedal[(topic, None)] = None
                try:
                    await in_transport.register_listener(topic, None, listener)
                except UStatus as err:
                    logger.warning(
                        "ForwardingListeners:insert: unable to register listener, error: %s", err
                    )
                    await self._backpedal(in_transport, to_backpedal, listener)
                    raise ForwardingListenerError(topic) from err
                logger.debug("ForwardingListeners:insert: able to register listener")

            self._listeners[key] = _ListenerEntry(
                transport=in_transport, active=1, listener=listener
            )
            return listener

    @staticmethod
    async def _backpedal(
        transport: UTransport,
        filters: Iterable[tuple[UUri, UUri | None]],
        listener: ForwardingListener,
    ) -> None:
        for source, sink in filters:
            try:
                await transport.unregister_listener(source, sink, listener)
            except UStatus as err:
                logger.warning(
                    "ForwardingListeners:insert: unable to unregister listener, error: %s", err
                )

    async def remove(self, in_transport: UTransport, out_authority: str) -> None:
        """Count one user fewer, unregistering the listener when none are left."""
        key = (id(in_transport), out_authority)
        async with self._lock:
            entry = self._listeners.get(key)
            if entry is None or entry.transport is not in_transport:
                logger.warning(
                    "ForwardingListeners:remove: no such in transport, out_authority: %r",
                    out_authority,
                )
                return
            entry.active -= 1
            if entry.active != 0:
                return
            del self._listeners[key]
            logger.warning(
                "ForwardingListeners:remove: removing ForwardingListener, out_authority: %r",
                out_authority,
            )
            try:
                await in_transport.unregister_listener(
                    uauthority_to_uuri(out_authority), UUri.any(), entry.listener
                )
            except UStatus as err:
                logger.warning(
                    "ForwardingListeners:remove: unable to unregister listener, error: %s", err
                )
            else:
                logger.debug("ForwardingListeners:remove: able to unregister listener")