# upstreamer

`upstreamer` bridges messages between transports. You describe each side of a
bridge as an `Endpoint` — a name, an authority and a transport — and a
`UStreamer` keeps track of forwarding rules between endpoints. For every rule,
messages that arrive on the *in* endpoint's transport and are addressed to the
*out* endpoint's authority, or published on a topic that the out authority
subscribes to, are handed to the *out* transport.

Everything is built on `asyncio`; transport and service operations are
coroutines, and failures are raised as `UStatus` exceptions carrying a `UCode`.

## Modules

- **`upstreamer.protocol`**: the shared types — `UUri` (with `UUri.any()` and
  `UUri.parse()`), `UUID`, `UAttributes`, `UMessage`, `UMessageType`,
  `UPayloadFormat`, `UCode`, `UStatus`, the subscription records
  (`SubscriberInfo`, `Subscription`, `FetchSubscriptionsRequest`,
  `FetchSubscriptionsResponse`) and the abstract interfaces `UListener`,
  `UTransport` and `USubscription`.
- **`upstreamer.endpoint`**: `Endpoint(name, authority, transport)`.
- **`upstreamer.static_subscription`**: `USubscriptionStaticFile`, a
  subscription service that answers `fetch_subscriptions` from a JSON file.
  `register_for_notifications` is accepted and recorded; the other service
  operations raise `UStatus` with `UCode.UNIMPLEMENTED`.
- **`upstreamer.forwarding`**: the machinery behind the streamer —
  `ForwardingListener`, `TransportForwarder`, `TransportForwarders`,
  `ForwardingListeners`, `ForwardingListenerError` and `uauthority_to_uuri()`.
- **`upstreamer.streamer`**: `UStreamer` and `forwarding_id()`.
- **`upstreamer.mock_transports`**: in-memory transports for testing.
- **`upstreamer.test_messages`**: fixed authorities, client URIs, sample
  messages, recording listeners and `init_logging()`.

## Forwarding rules

- `UStreamer.create(name, message_queue_size, usubscription)` fetches all
  subscriptions from the service once and groups them by subscriber authority.
  `message_queue_size` must lie between 1 and 65535.
- A rule whose in and out endpoints share an authority is refused with
  `UCode.INVALID_ARGUMENT`.
- Adding a rule that already exists is refused with `UCode.ALREADY_EXISTS`.
- If the in transport refuses to register a listener, registrations already
  made are undone and `add_forwarding_rule` raises `UStatus` with
  `UCode.INVALID_ARGUMENT`.
- Deleting a rule that was never added is refused with `UCode.NOT_FOUND`.
- Only one forwarder runs per out transport and one listener per pair of in
  transport and out authority, however many rules share them; both are
  reference-counted and torn down when the last rule using them is deleted.
- Each out transport has a bounded queue; when it is full the oldest queued
  message is dropped. A failed send is logged and forwarding goes on.
- Messages whose payload format is `UPayloadFormat.SHM` are not forwarded,
  since a pointer into shared memory means nothing on another device.

## Example

```python
from upstreamer.endpoint import Endpoint
from upstreamer.static_subscription import USubscriptionStaticFile
from upstreamer.streamer import UStreamer


async def bridge(local_transport, remote_transport):
    local = Endpoint("local_endpoint", "local", local_transport)
    remote = Endpoint("remote_endpoint", "remote", remote_transport)

    subscriptions = USubscriptionStaticFile("subscriptions.json")
    streamer = await UStreamer.create("bridge", 100, subscriptions)

    await streamer.add_forwarding_rule(local, remote)
    await streamer.add_forwarding_rule(remote, local)

    # ... later
    await streamer.delete_forwarding_rule(local, remote)
    await streamer.delete_forwarding_rule(remote, local)
```

## Subscription files

A subscription file is a JSON object; each key is a topic URI, each value a
list of subscriber URIs:

```json
{
  "//local/3039/1/8001": ["//remote/1A2B/1/0"]
}
```

URIs are written `//authority/UE_ID/VERSION/RESOURCE` (an `up:` scheme is
allowed) with hexadecimal segments. Every topic's resource id is set to
`0x8001`, whatever the file says. Keys or subscribers that do not parse are
logged and skipped. A missing file, an unreadable file or invalid JSON raises
`UStatus` with `UCode.INVALID_ARGUMENT`.

## Testing helpers

`upstreamer.mock_transports` provides:

- `BroadcastChannel` and `BroadcastReceiver`: a bounded channel that delivers
  every item to every subscribed receiver.
- `UPClientFoo(name, receiver, sender)`: a transport that sends on a
  `BroadcastChannel` and, once `start()` is called, delivers notifications,
  requests and responses from its receiver to registered listeners. Listeners
  registered with a wildcard source and a specific sink authority get every
  message for that authority; others get messages whose source and sink match
  exactly. Publish messages are dropped. `times_received` counts deliveries to
  exact-match listeners.
- `UPClientFailingRegister(name)`: accepts sends but refuses every listener
  registration with `UCode.INVALID_ARGUMENT`.

`upstreamer.test_messages` provides `local_authority()`,
`remote_authority_a()`, `remote_authority_b()`, `local_client_uuri()`,
`remote_client_uuri()`, builders for publish, notification, request and
response messages in both directions, and `LocalClientListener` /
`RemoteClientListener`, which keep what they receive in `message_store`.
`init_logging()` sends log records to stderr at the level named by the
`UPSTREAMER_LOG` environment variable (default `debug`).

## What this package does not do

- It has no command-line program; the streamer is used as a library.
- It ships no network transport. The only transports included are the
  in-memory ones in `upstreamer.mock_transports`; real transports implement
  `UTransport` themselves.
- Subscriptions are read once, when the streamer is created. Later changes to
  the subscription service are not picked up.
- There is no ready-made client loop for driving clients through a long
  end-to-end run, pausing them or comparing sent and received message counts.

## Running the tests

```
pip install -e ".[test]"
pytest
```