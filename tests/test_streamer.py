import asyncio
import json

import pytest

from upstreamer.endpoint import Endpoint
from upstreamer.forwarding import uauthority_to_uuri
from upstreamer.protocol import (
    FetchSubscriptionsResponse,
    SubscriberInfo,
    Subscription,
    UAttributes,
    UCode,
    UMessage,
    UMessageType,
    UStatus,
    UTransport,
    UUri,
)
from upstreamer.static_subscription import USubscriptionStaticFile
from upstreamer.streamer import UStreamer, forwarding_id


class RecordingTransport(UTransport):
    def __init__(self, fail_register=False):
        self.fail_register = fail_register
        self.registered = []
        self.unregistered = []
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    async def register_listener(self, source_filter, sink_filter, listener):
        if self.fail_register:
            raise UStatus(UCode.INVALID_ARGUMENT, "Failing to register listener")
        self.registered.append((source_filter, sink_filter, listener))

    async def unregister_listener(self, source_filter, sink_filter, listener):
        self.unregistered.append((source_filter, sink_filter, listener))


class FixedSubscriptions(USubscriptionStaticFile):
    def __init__(self, subscriptions):
        super().__init__("unused")
        self.subscriptions = subscriptions

    async def fetch_subscriptions(self, request):
        return FetchSubscriptionsResponse(subscriptions=list(self.subscriptions))


@pytest.fixture
def subscription_file(tmp_path):
    path = tmp_path / "testdata.json"
    path.write_text(
        json.dumps(
            {
                "//local/1/1/8001": ["//remote/2/1/0", "//remote_a/3/1/0"],
                "//remote/4/1/8001": ["//local/5/1/0"],
            }
        )
    )
    return path


async def make_streamer(path):
    return await UStreamer.create("foo_bar_streamer", 100, USubscriptionStaticFile(path))


def test_forwarding_id_format():
    t = RecordingTransport()
    a = Endpoint("local_endpoint", "local", t)
    b = Endpoint("remote_endpoint", "remote", t)
    assert forwarding_id(a, b) == (
        '[in.name: local_endpoint, in.authority: "local" ; '
        'out.name: remote_endpoint, out.authority: "remote"]'
    )


@pytest.mark.asyncio
async def test_simple_with_a_single_input_and_output_endpoint(subscription_file):
    local_endpoint = Endpoint("local_endpoint", "local", RecordingTransport())
    remote_endpoint = Endpoint("remote_endpoint", "remote", RecordingTransport())
    streamer = await make_streamer(subscription_file)

    assert await streamer.add_forwarding_rule(local_endpoint, remote_endpoint) is None
    assert await streamer.add_forwarding_rule(remote_endpoint, local_endpoint) is None

    with pytest.raises(UStatus) as same:
        await streamer.add_forwarding_rule(local_endpoint, local_endpoint)
    assert same.value.code == UCode.INVALID_ARGUMENT

    with pytest.raises(UStatus) as exists:
        await streamer.add_forwarding_rule(local_endpoint, remote_endpoint)
    assert exists.value.code == UCode.ALREADY_EXISTS

    with pytest.raises(UStatus) as same_remote:
        await streamer.add_forwarding_rule(remote_endpoint, remote_endpoint)
    assert same_remote.value.code == UCode.INVALID_ARGUMENT

    assert await streamer.delete_forwarding_rule(local_endpoint, remote_endpoint) is None
    assert await streamer.delete_forwarding_rule(remote_endpoint, local_endpoint) is None

    with pytest.raises(UStatus) as missing:
        await streamer.delete_forwarding_rule(local_endpoint, remote_endpoint)
    assert missing.value.code == UCode.NOT_FOUND


@pytest.mark.asyncio
async def test_advanced_where_there_is_a_local_endpoint_and_two_remote_endpoints(
    subscription_file,
):
    local_endpoint = Endpoint("local_endpoint", "local", RecordingTransport())
    remote_a = Endpoint("remote_endpoint_a", "remote_a", RecordingTransport())
    remote_b = Endpoint("remote_endpoint_b", "remote_b", RecordingTransport())
    streamer = await make_streamer(subscription_file)

    pairs = [
        (local_endpoint, remote_a),
        (remote_a, local_endpoint),
        (local_endpoint, remote_b),
        (remote_b, local_endpoint),
        (remote_a, remote_b),
        (remote_b, remote_a),
    ]
    results = [await streamer.add_forwarding_rule(i, o) for i, o in pairs]
    assert results == [None] * 6


@pytest.mark.asyncio
async def test_two_remote_endpoints_sharing_the_same_transport(subscription_file):
    local_endpoint = Endpoint("local_endpoint", "local", RecordingTransport())
    shared = RecordingTransport()
    remote_a = Endpoint("remote_endpoint_a", "remote_a", shared)
    remote_b = Endpoint("remote_endpoint_b", "remote_b", shared)
    streamer = await make_streamer(subscription_file)

    for i, o in [
        (local_endpoint, remote_a),
        (remote_a, local_endpoint),
        (local_endpoint, remote_b),
        (remote_b, local_endpoint),
    ]:
        assert await streamer.add_forwarding_rule(i, o) is None

    sinks = {sink for _, sink, _ in shared.registered if sink is not None}
    assert sinks == {uauthority_to_uuri("local")}


@pytest.mark.asyncio
async def test_add_registers_authority_and_subscription_listeners(subscription_file):
    local = RecordingTransport()
    local_endpoint = Endpoint("local_endpoint", "local", local)
    remote_endpoint = Endpoint("remote_endpoint", "remote", RecordingTransport())
    streamer = await make_streamer(subscription_file)

    await streamer.add_forwarding_rule(local_endpoint, remote_endpoint)

    filters = [(source, sink) for source, sink, _ in local.registered]
    assert filters == [
        (UUri.any(), uauthority_to_uuri("remote")),
        (UUri.parse("//local/1/1/8001"), None),
    ]


@pytest.mark.asyncio
async def test_delete_unregisters_listener(subscription_file):
    local = RecordingTransport()
    local_endpoint = Endpoint("local_endpoint", "local", local)
    remote_endpoint = Endpoint("remote_endpoint", "remote", RecordingTransport())
    streamer = await make_streamer(subscription_file)

    await streamer.add_forwarding_rule(local_endpoint, remote_endpoint)
    await streamer.delete_forwarding_rule(local_endpoint, remote_endpoint)

    assert [(s, k) for s, k, _ in local.unregistered] == [
        (uauthority_to_uuri("remote"), UUri.any())
    ]


@pytest.mark.asyncio
async def test_messages_are_forwarded_onto_out_transport(subscription_file):
    local = RecordingTransport()
    remote = RecordingTransport()
    streamer = await make_streamer(subscription_file)
    await streamer.add_forwarding_rule(
        Endpoint("local_endpoint", "local", local), Endpoint("remote_endpoint", "remote", remote)
    )
    listener = local.registered[0][2]
    msg = UMessage(
        attributes=UAttributes(
            message_type=UMessageType.REQUEST,
            source=UUri("local", 1, 1, 2),
            sink=UUri("remote", 2, 1, 0),
        )
    )
    await listener.on_receive(msg)
    for _ in range(100):
        if remote.sent:
            break
        await asyncio.sleep(0.01)
    assert remote.sent == [msg]


@pytest.mark.asyncio
async def test_failing_register_reports_invalid_argument(subscription_file):
    failing = Endpoint("failing", "local", RecordingTransport(fail_register=True))
    remote_endpoint = Endpoint("remote_endpoint", "remote", RecordingTransport())
    streamer = await make_streamer(subscription_file)

    with pytest.raises(UStatus) as excinfo:
        await streamer.add_forwarding_rule(failing, remote_endpoint)
    assert excinfo.value.code == UCode.INVALID_ARGUMENT
    assert excinfo.value.message == "Failed to register notification request/response listener"


@pytest.mark.asyncio
async def test_create_with_missing_file_fails(tmp_path):
    with pytest.raises(UStatus) as excinfo:
        await UStreamer.create("s", 100, USubscriptionStaticFile(tmp_path / "absent.json"))
    assert excinfo.value.code == UCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_create_with_incomplete_subscription_fails():
    service = FixedSubscriptions([Subscription(topic=UUri("a", 1, 1, 1), subscriber=None)])
    with pytest.raises(UStatus) as excinfo:
        await UStreamer.create("s", 100, service)
    assert excinfo.value.code == UCode.INVALID_ARGUMENT


@pytest.mark.asyncio
async def test_create_rejects_zero_queue_size():
    service = FixedSubscriptions(
        [Subscription(topic=UUri("a", 1, 1, 1), subscriber=SubscriberInfo(UUri("b", 1, 1, 0)))]
    )
    with pytest.raises(ValueError):
        await UStreamer.create("s", 0, service)