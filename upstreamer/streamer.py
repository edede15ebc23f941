"""The streamer: adds and deletes forwarding rules between endpoints."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from upstreamer.endpoint import Endpoint
from upstreamer.forwarding import (
    ForwardingListenerError,
    ForwardingListeners,
    TransportForwarders,
)
from upstreamer.protocol import (
    FetchSubscriptionsRequest,
    SubscriberInfo,
    Subscription,
    UCode,
    UStatus,
    USubscription,
    UTransport,
    UUri,
)

logger = logging.getLogger(__name__)

_TAG = "UStreamer:"
_MAX_QUEUE_SIZE = 0xFFFF

_RuleKey = tuple[str, str, int, int]


def _debug_str(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def forwarding_id(in_endpoint: Endpoint, out_endpoint: Endpoint) -> str:
    """Describe a forwarding rule for logs and error messages."""
    return (
        f"[in.name: {in_endpoint.name}, in.authority: {_debug_str(in_endpoint.authority)} ; "
        f"out.name: {out_endpoint.name}, out.authority: {_debug_str(out_endpoint.authority)}]"
    )


def _index_by_subscriber_authority(
    subscriptions: Iterable[Subscription],
) -> dict[str, list[Subscription]]:
    """Group subscriptions by the authority of their subscriber."""
    index: dict[str, dict[Subscription, None]] = {}
    for subscription in subscriptions:
        subscriber = subscription.subscriber
        if subscription.topic is None or subscriber is None or subscriber.uri is None:
            raise ValueError(f"incomplete subscription: {subscription!r}")
        index.setdefault(subscriber.uri.authority_name, {})[subscription] = None
    return {authority: list(entries) for authority, entries in index.items()}


class UStreamer:
    """Coordinates forwarding rules that bridge messages from one transport onto another."""

    def __init__(
        self,
        name: str,
        message_queue_size: int,
        subscriptions: dict[str, list[Subscription]],
    ) -> None:
        if not 1 <= message_queue_size <= _MAX_QUEUE_SIZE:
            raise ValueError(f"message_queue_size out of range: {message_queue_size}")
        self.name = f"{_TAG}:{name}:"
        self._subscriptions = subscriptions
        self._rules: dict[_RuleKey, tuple[UTransport, UTransport]] = {}
        self._rules_lock = asyncio.Lock()
        self._transport_forwarders = TransportForwarders(message_queue_size)
        self._forwarding_listeners = ForwardingListeners()

    @classmethod
    async def create(
        cls, name: str, message_queue_size: int, usubscription: USubscription
    ) -> UStreamer:
        """Fetch all subscriptions from the service and build a streamer around them."""
        full_name = f"{_TAG}:{name}:"
        logger.debug("%s:%snew(): UStreamer created", full_name, _TAG)
        request = FetchSubscriptionsRequest(subscriber=SubscriberInfo(uri=UUri.any()))
        response = await usubscription.fetch_subscriptions(request)
        try:
            subscriptions = _index_by_subscriber_authority(response.subscriptions)
        except ValueError as exc:
            raise UStatus(
                UCode.INVALID_ARGUMENT,
                f"{full_name}:{_TAG}new(): Unable to create SubscriptionCache: {exc!r}",
            ) from exc
        logger.debug("%s:%snew(): SubscriptionCache created", full_name, _TAG)
        return cls(name, message_queue_size, subscriptions)

    def _fail_due_to_same_authority(self, in_endpoint: Endpoint, out_endpoint: Endpoint) -> UStatus:
        err = UStatus(
            UCode.INVALID_ARGUMENT,
            f"{forwarding_id(in_endpoint, out_endpoint)} are the same. Unable to delete.",
        )
        logger.error("%s:%s Forwarding rule failed: %r", self.name, _TAG, err)
        return err

    @staticmethod
    def _rule_key(in_endpoint: Endpoint, out_endpoint: Endpoint) -> _RuleKey:
        return (
            in_endpoint.authority,
            out_endpoint.authority,
            id(in_endpoint.transport),
            id(out_endpoint.transport),
        )

    async def add_forwarding_rule(self, in_endpoint: Endpoint, out_endpoint: Endpoint) -> None:
        """Forward messages arriving on ``in_endpoint`` for ``out_endpoint`` onto its transport.

        Raises :class:`UStatus` when both share an authority, when the rule
        already exists, or when the in transport refuses a listener.
        """
        fid = forwarding_id(in_endpoint, out_endpoint)
        logger.debug("%s:%sadd_forwarding_rule(): Adding forwarding rule for %s", self.name, _TAG, fid)
        if in_endpoint.authority == out_endpoint.authority:
            raise self._fail_due_to_same_authority(in_endpoint, out_endpoint)

        key = self._rule_key(in_endpoint, out_endpoint)
        async with self._rules_lock:
            if key in self._rules:
                raise UStatus(UCode.ALREADY_EXISTS, "already exists")
            self._rules[key] = (in_endpoint.transport, out_endpoint.transport)

            out_sender = await self._transport_forwarders.insert(out_endpoint.transport)
            try:
                await self._forwarding_listeners.insert(
                    in_endpoint.transport,
                    out_endpoint.authority,
                    fid,
                    out_sender,
                    self._subscriptions.get(out_endpoint.authority),
                )
            except ForwardingListenerError as err:
                raise UStatus(UCode.INVALID_ARGUMENT, str(err)) from err

    async def delete_forwarding_rule(self, in_endpoint: Endpoint, out_endpoint: Endpoint) -> None:
        """Remove a forwarding rule added earlier.

        Raises :class:`UStatus` when both share an authority or no such rule exists.
        """
        fid = forwarding_id(in_endpoint, out_endpoint)
        logger.debug(
            "%s:%sdelete_forwarding_rule(): Deleting forwarding rule for %s", self.name, _TAG, fid
        )
        if in_endpoint.authority == out_endpoint.authority:
            raise self._fail_due_to_same_authority(in_endpoint, out_endpoint)

        key = self._rule_key(in_endpoint, out_endpoint)
        async with self._rules_lock:
            removed = self._rules.pop(key, None)
        if removed is None:
            raise UStatus(UCode.NOT_FOUND, "not found")
        await self._transport_forwarders.remove(out_endpoint.transport)
        await self._forwarding_listeners.remove(in_endpoint.transport, out_endpoint.authority)