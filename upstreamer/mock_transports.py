"""In-memory transports for exercising the streamer: a shared broadcast bus and a failing client."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Union

from upstreamer.protocol import (
    WILDCARD_AUTHORITY,
    UAttributes,
    UCode,
    UListener,
    UMessage,
    UMessageType,
    UStatus,
    UTransport,
    UUri,
)

logger = logging.getLogger(__name__)

BusItem = Union[UMessage, UStatus]

_DELIVERED_TYPES = {
    UMessageType.NOTIFICATION: "Notification",
    UMessageType.REQUEST: "Request",
    UMessageType.RESPONSE: "Response",
}


class ChannelClosedError(Exception):
    """The broadcast channel is closed, or has nobody to deliver to."""


class BroadcastChannel:
    """A bounded channel delivering every broadcast item to every subscribed receiver.

    A broadcast waits while any receiver already holds ``capacity`` unread items.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._receivers: list[BroadcastReceiver] = []
        self._closed = False
        self._condition = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> BroadcastReceiver:
        """Return a new receiver that sees every item broadcast from now on."""
        receiver = BroadcastReceiver(self)
        self._receivers.append(receiver)
        return receiver

    def _has_room(self) -> bool:
        return all(len(receiver._pending) < self.capacity for receiver in self._receivers)

    async def broadcast(self, item) -> None:
        """Deliver an item to every receiver, waiting for room if needed."""
        async with self._condition:
            await self._condition.wait_for(lambda: self._closed or self._has_room())
            if self._closed:
                raise ChannelClosedError("channel is closed")
            if not self._receivers:
                raise ChannelClosedError("channel has no receivers")
            for receiver in self._receivers:
                receiver._pending.append(item)
            self._condition.notify_all()

    async def close(self) -> None:
        """Close the channel; receivers drain what they hold, then fail."""
        async with self._condition:
            self._closed = True
            self._condition.notify_all()


class BroadcastReceiver:
    """One subscriber's view of a :class:`BroadcastChannel`."""

    def __init__(self, channel: BroadcastChannel) -> None:
        self._channel = channel
        self._pending: deque = deque()

    async def recv(self):
        """Return the next item, raising :class:`ChannelClosedError` once closed and drained."""
        condition = self._channel._condition
        async with condition:
            await condition.wait_for(lambda: bool(self._pending) or self._channel.closed)
            if not self._pending:
                raise ChannelClosedError("channel is closed")
            item = self._pending.popleft()
            condition.notify_all()
            return item


class UPClientFoo(UTransport):
    """A transport whose wire is a broadcast channel shared by every client.

    Listeners registered with a wildcard source and a specific sink authority
    receive everything addressed to that authority; other listeners receive
    messages whose source and sink match their filters exactly.
    """

    def __init__(self, name: str, receiver: BroadcastReceiver, sender: BroadcastChannel) -> None:
        self.name = name
        self.receiver = receiver
        self.sender = sender
        self.times_received = 0
        self._listeners: dict[tuple[UUri, UUri | None], dict[int, UListener]] = {}
        self._authority_listeners: dict[str, dict[int, UListener]] = {}
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start delivering messages from the channel to the registered listeners."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._listen_loop())

    def stop(self) -> None:
        """Stop delivering messages."""
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _listen_loop(self) -> None:
        while True:
            try:
                received = await self.receiver.recv()
            except ChannelClosedError:
                logger.debug("%s: channel closed, leaving listen loop", self.name)
                return
            if isinstance(received, UStatus):
                logger.debug("Got an error! err: %r", received)
                continue
            attributes = received.attributes
            if attributes is None:
                logger.debug("%s: No UAttributes!", self.name)
                continue
            label = _DELIVERED_TYPES.get(attributes.message_type)
            if label is not None:
                await self._process_message(received, attributes, label)
            elif attributes.message_type == UMessageType.PUBLISH:
                logger.error("%s: Publish messages are not handled, dropping", self.name)
            else:
                logger.debug("No matching type or an error occurred!")

    async def _process_message(self, msg: UMessage, attributes: UAttributes, label: str) -> None:
        sink = attributes.sink
        logger.debug("%s: %s sink uuri: %r", self.name, label, sink)
        if sink is None:
            logger.debug("%s: No sink uuri!", self.name)
            return

        authority_listeners = list(self._authority_listeners.get(sink.authority_name, {}).values())
        if authority_listeners:
            logger.debug(
                "%s: %s: authority listeners found: %r", self.name, label, sink.authority_name
            )
            for listener in authority_listeners:
                await listener.on_receive(msg)
        else:
            logger.debug("%s: %s: authority no listeners: %r", self.name, label, sink.authority_name)

        topic_listeners = self._listeners.get((attributes.source, sink))
        if topic_listeners is None:
            logger.debug(
                "%s: %s: source: %r sink: %r -- listeners not found",
                self.name,
                label,
                attributes.source,
                sink,
            )
            return
        self.times_received += 1
        for listener in list(topic_listeners.values()):
            await listener.on_receive(msg)

    async def send(self, message: UMessage) -> None:
        logger.debug("sending: %r", message)
        try:
            await self.sender.broadcast(message)
        except ChannelClosedError as exc:
            raise UStatus(UCode.INTERNAL, "Unable to send over Foo protocol") from exc

    async def receive(self, source_filter: UUri, sink_filter: UUri | None = None) -> UMessage:
        raise UStatus(UCode.UNIMPLEMENTED, "receive is not supported by this transport")

    async def register_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        logger.debug(
            "%s: registering listener for: source: %r sink: %r", self.name, source_filter, sink_filter
        )
        sink_is_specific = sink_filter is not None and sink_filter.authority_name != WILDCARD_AUTHORITY
        if source_filter.authority_name == WILDCARD_AUTHORITY and sink_is_specific:
            authority = sink_filter.authority_name
            listeners = self._authority_listeners.setdefault(authority, {})
            if id(listener) in listeners:
                raise UStatus(
                    UCode.ALREADY_EXISTS,
                    f"{self.name}: UUri and listener already registered! failed to register "
                    f"authority listener for: authority: {authority}",
                )
            listeners[id(listener)] = listener
            logger.debug(
                "%s: successfully registered authority listener for: authority: %s",
                self.name,
                authority,
            )
            return

        listeners = self._listeners.setdefault((source_filter, sink_filter), {})
        if id(listener) in listeners:
            raise UStatus(UCode.ALREADY_EXISTS, "UUri and listener already registered!")
        listeners[id(listener)] = listener
        logger.debug(
            "%s: successfully registered regular listener for: source: %r sink: %r",
            self.name,
            source_filter,
            sink_filter,
        )

    async def unregister_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        logger.debug("%s unregistering listener for source_filter: %r", self.name, source_filter)
        sink_is_any = sink_filter is not None and sink_filter.authority_name == WILDCARD_AUTHORITY
        if source_filter.authority_name != WILDCARD_AUTHORITY and sink_is_any:
            listeners = self._authority_listeners.get(source_filter.authority_name)
            if listeners is None:
                err = UStatus(
                    UCode.NOT_FOUND,
                    f"{self.name} No authority listeners for: source: {source_filter!r} "
                    f"sink: {sink_filter!r} -- unable to unregister",
                )
                logger.error("%s %r", self.name, err)
                raise err
            if listeners.pop(id(listener), None) is None:
                err = UStatus(
                    UCode.NOT_FOUND,
                    f"{self.name} Unable to find authority listener for: source: {source_filter!r} "
                    f"sink: {sink_filter!r} -- unable to unregister",
                )
                logger.error("%s %r", self.name, err)
                raise err
            return

        listeners = self._listeners.get((source_filter, sink_filter))
        if listeners is None:
            raise UStatus(UCode.NOT_FOUND, "No listeners registered for topic!")
        if listeners.pop(id(listener), None) is None:
            raise UStatus(
                UCode.NOT_FOUND, f"No listeners registered for topic! topic: {source_filter!r}"
            )


class UPClientFailingRegister(UTransport):
    """A transport that accepts sends but refuses every listener registration."""

    def __init__(self, name: str) -> None:
        self.name = name

    async def send(self, message: UMessage) -> None:
        logger.debug("sending: %r", message)

    async def receive(self, source_filter: UUri, sink_filter: UUri | None = None) -> UMessage:
        raise UStatus(UCode.UNIMPLEMENTED, "receive is not supported by this transport")

    async def register_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        logger.debug(
            "%s: registering listener for: source: %r sink: %r", self.name, source_filter, sink_filter
        )
        raise UStatus(UCode.INVALID_ARGUMENT, "Failing to register listener")

    async def unregister_listener(
        self, source_filter: UUri, sink_filter: UUri | None, listener: UListener
    ) -> None:
        logger.debug("%s unregistering listener for source_filter: %r", self.name, source_filter)