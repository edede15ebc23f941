"""A subscription service backed by a static JSON file."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from pathlib import Path

from upstreamer.protocol import (
    FetchSubscriptionsRequest,
    FetchSubscriptionsResponse,
    SubscriberInfo,
    Subscription,
    UCode,
    UStatus,
    USubscription,
    UUri,
)

logger = logging.getLogger(__name__)

FIXED_TOPIC_RESOURCE_ID = 0x8001


class USubscriptionStaticFile(USubscription):
    """Reads subscriptions from a JSON object mapping topic URIs to lists of subscriber URIs."""

    def __init__(self, static_file: str | Path) -> None:
        self.static_file = str(static_file)
        self.notification_registrations: list = []

    async def subscribe(self, request):
        raise UStatus(UCode.UNIMPLEMENTED, "subscribe is not supported by a static file")

    async def fetch_subscriptions(
        self, request: FetchSubscriptionsRequest
    ) -> FetchSubscriptionsResponse:
        """Return every subscription in the file, whatever the request asks for."""
        logger.debug("fetch_subscriptions for subscriber: %s", request.subscriber)
        try:
            path = Path(self.static_file).resolve(strict=True)
        except OSError as exc:
            raise UStatus(
                UCode.INVALID_ARGUMENT, f"Static subscription file not found: {exc!r}"
            ) from exc
        try:
            data = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise UStatus(UCode.INVALID_ARGUMENT, f"Unable to read file: {exc!r}") from exc
        try:
            document = json.loads(data)
        except json.JSONDecodeError as exc:
            raise UStatus(UCode.INVALID_ARGUMENT, f"Unable to parse JSON: {exc!r}") from exc

        subscriptions: list[Subscription] = []
        if isinstance(document, dict):
            for key, value in document.items():
                subscribers = _read_subscribers(value)
                try:
                    topic = UUri.parse(key)
                except ValueError as exc:
                    logger.error("Error with deserializing key %r: %s", key, exc)
                    continue
                logger.warning(
                    "Setting fixed resource id 0x%X for uri '%s'", FIXED_TOPIC_RESOURCE_ID, topic
                )
                topic = replace(topic, resource_id=FIXED_TOPIC_RESOURCE_ID)
                subscriptions.extend(
                    Subscription(topic=topic, subscriber=SubscriberInfo(uri=subscriber))
                    for subscriber in subscribers
                )
        logger.debug("Finished reading subscriptions: %s", subscriptions)
        return FetchSubscriptionsResponse(subscriptions=subscriptions)

    async def unsubscribe(self, request) -> None:
        raise UStatus(UCode.UNIMPLEMENTED, "unsubscribe is not supported by a static file")

    async def register_for_notifications(self, request) -> None:
        """Accept and record the registration; a static file never changes."""
        logger.debug("register_for_notifications: %s", request)
        self.notification_registrations.append(request)

    async def unregister_for_notifications(self, request) -> None:
        raise UStatus(
            UCode.UNIMPLEMENTED, "unregister_for_notifications is not supported by a static file"
        )

    async def fetch_subscribers(self, request):
        raise UStatus(UCode.UNIMPLEMENTED, "fetch_subscribers is not supported by a static file")


def _read_subscribers(value) -> list[UUri]:
    """Parse the subscriber URIs of one topic, skipping and logging bad entries."""
    subscribers: dict[UUri, None] = {}
    if not isinstance(value, list):
        return []
    for entry in value:
        if not isinstance(entry, str):
            logger.warning("Unable to parse subscriber %r", entry)
            continue
        try:
            subscribers[UUri.parse(entry)] = None
        except ValueError as exc:
            logger.error("Error with deserializing subscriber %r: %s", entry, exc)
    return list(subscribers)