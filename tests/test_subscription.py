"""Tests for the events module, run against a fake device on 127.0.0.1."""

import asyncio
import contextlib
import gc
from unittest import mock

import pytest

from conftest import build_notify
from zoneplayer import events_base
from zoneplayer.config import SubscriptionConfig
from zoneplayer.events import (
    TERMINATED,
    EventListener,
    Subscription,
    subscribe,
)
from zoneplayer.exceptions import (
    RenewalFailed,
    SubscriptionFailed,
    SubscriptionFailedNoSid,
    ZonePlayerException,
)
from zoneplayer.xml import XML

PROPERTY_SET = (
    '<e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">'
    "<e:property><ZoneGroupName>{}</ZoneGroupName></e:property>"
    "</e:propertyset>"
)

# Renew half a second after subscribing
FAST_RENEWAL = SubscriptionConfig(lease_seconds=2, renewal_margin_seconds=1.5)


def decode_number(body):
    return int(XML.fromstring(body).text)


def number_event(value):
    return "<Event>{}</Event>".format(value)


async def receive(stream, timeout=2):
    return await asyncio.wait_for(stream.receive(), timeout)


@pytest.mark.asyncio
async def test_handshake(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service)
        try:
            assert stream.sid == device.sid
            assert stream.event_subscription_url == device.service.event_subscription_url
            assert stream.is_active
            assert device.sid in repr(stream)
            (request,) = device.requests_for("SUBSCRIBE")
            assert request.headers["NT"] == "upnp:event"
            assert request.headers["TIMEOUT"] == "Second-60"
            assert request.headers["CALLBACK"].startswith("<http://127.0.0.1:")
            assert request.headers["CALLBACK"].endswith(">")
            assert "SID" not in request.headers
            subscription = stream.subscription
            assert subscription.timeout == 60
            assert 50 < subscription.time_left <= 60
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_property_set_events_by_default(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service)
        try:
            assert await device.notify(PROPERTY_SET.format("Kitchen"), seq=0) == 200
            event = await receive(stream)
            assert event.zone_group_name == "Kitchen"
        finally:
            await stream.unsubscribe()


@contextlib.contextmanager
def record_listen_sockets():
    """Patch the listener's socket factory to keep hold of what it binds."""
    sockets = []

    def bind(ip_address):
        sock = events_base.bind_listen_socket(ip_address)
        sockets.append(sock)
        return sock

    with mock.patch("zoneplayer.events.bind_listen_socket", side_effect=bind):
        yield sockets


@pytest.mark.asyncio
async def test_rejected_subscription(fake_device):
    async with fake_device(subscribe_status=412) as device:
        with record_listen_sockets() as sockets:
            with pytest.raises(SubscriptionFailed) as excinfo:
                await subscribe(device.service)
        assert excinfo.value.status == 412
        assert excinfo.value.body == "Nope"
        # The listener does not outlive the failed handshake
        assert len(sockets) == 1
        assert sockets[0].fileno() == -1


@pytest.mark.asyncio
async def test_subscription_without_sid(fake_device):
    async with fake_device(send_sid=False) as device:
        subscription = Subscription(device.service)
        with record_listen_sockets() as sockets:
            with pytest.raises(SubscriptionFailedNoSid):
                await subscription.subscribe()
        assert subscription.state == TERMINATED
        assert not subscription.is_running
        assert sockets[0].fileno() == -1
        # No request can name the subscription, so none is sent
        assert device.requests_for("UNSUBSCRIBE") == []


@pytest.mark.asyncio
async def test_subscribe_only_once(fake_device):
    async with fake_device() as device:
        subscription = Subscription(device.service)
        stream = await subscription.subscribe()
        try:
            with pytest.raises(ZonePlayerException):
                await subscription.subscribe()
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_concurrent_notifies(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, decoder=decode_number)
        try:
            # The first connection sends its headers and stalls
            slow_reader, slow_writer = await device.connect()
            data = build_notify(number_event(1), sid=device.sid, seq=0)
            slow_writer.write(data[:20])
            await slow_writer.drain()

            # The second one is served in the meantime
            assert await device.notify(number_event(2), seq=1) == 200
            assert await receive(stream) == 2

            slow_writer.write(data[20:])
            await slow_writer.drain()
            assert await device.read_status(slow_reader) == 200
            slow_writer.close()
            assert await receive(stream) == 1
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_undecodable_event_is_dropped(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, decoder=decode_number)
        try:
            assert await device.notify(number_event("one"), seq=0) == 200
            assert await device.notify(number_event(2), seq=1) == 200
            assert await receive(stream) == 2
            assert stream.is_active
            assert stream.error is None
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_malformed_notify_is_rejected(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, decoder=decode_number)
        try:
            reader, writer = await device.connect()
            writer.write(b"NOTIFY\r\n\r\n")
            await writer.drain()
            assert await device.read_status(reader) == 400
            writer.close()
            # The subscription carries on
            assert await device.notify(number_event(3)) == 200
            assert await receive(stream) == 3
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_notify_for_another_subscription(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, decoder=decode_number)
        try:
            status = await device.notify(number_event(1), sid="uuid:RINCON_other")
            assert status == 412
            # A NOTIFY without a SID is accepted
            assert await device.notify(number_event(2), sid=None) == 200
            assert await receive(stream) == 2
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_full_queue_holds_the_device_back(fake_device):
    async with fake_device() as device:
        config = SubscriptionConfig(callback_queue_capacity=1)
        stream = await subscribe(device.service, decoder=decode_number, config=config)
        try:
            assert await device.notify(number_event(1)) == 200
            second = asyncio.ensure_future(device.notify(number_event(2)))
            await asyncio.sleep(0.2)
            # No response until the consumer makes room
            assert not second.done()
            assert await receive(stream) == 1
            assert await asyncio.wait_for(second, 2) == 200
            assert await receive(stream) == 2
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_renewal(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, config=FAST_RENEWAL)
        try:
            renewals = await device.wait_for_requests("SUBSCRIBE", 2, renewal=True)
            (initial,) = device.requests_for("SUBSCRIBE", renewal=False)
            for previous, renewal in zip([initial] + renewals, renewals):
                assert 0.4 <= renewal.time - previous.time <= 1.5
                assert renewal.headers["SID"] == device.sid
                assert renewal.headers["TIMEOUT"] == "Second-2"
                assert "CALLBACK" not in renewal.headers
                assert "NT" not in renewal.headers
            assert stream.is_active
            # Events still flow after renewing
            assert await device.notify(PROPERTY_SET.format("Hall")) == 200
            assert (await receive(stream)).zone_group_name == "Hall"
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_dropped_stream_unsubscribes(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service, config=FAST_RENEWAL)
        subscription = stream.subscription
        del stream
        gc.collect()
        await device.wait_for_requests("UNSUBSCRIBE", 1)
        await asyncio.wait_for(subscription.wait_closed(), 2)
        assert subscription.state == TERMINATED
        assert subscription.error is None
        assert subscription.listener.is_closed
        # The renewal was replaced by the UNSUBSCRIBE
        assert len(device.requests_for("SUBSCRIBE")) == 1
        (unsubscribe,) = device.requests_for("UNSUBSCRIBE")
        assert unsubscribe.headers["SID"] == device.sid


@pytest.mark.asyncio
async def test_failed_renewal_ends_the_stream(fake_device):
    async with fake_device(renew_status=500) as device:
        stream = await subscribe(
            device.service, decoder=decode_number, config=FAST_RENEWAL
        )
        assert await device.notify(number_event(1)) == 200
        await asyncio.wait_for(stream.subscription.wait_closed(), 2)
        # Buffered events are delivered before the end
        assert await receive(stream) == 1
        assert await receive(stream) is None
        assert await receive(stream) is None
        assert not stream.is_active
        assert isinstance(stream.error, RenewalFailed)
        assert stream.error.status == 500
        assert stream.subscription.listener.is_closed
        assert device.requests_for("UNSUBSCRIBE") == []


@pytest.mark.asyncio
async def test_unsubscribe(fake_device):
    async with fake_device() as device:
        stream = await subscribe(device.service)
        subscription = stream.subscription
        assert await stream.unsubscribe() is True
        (request,) = device.requests_for("UNSUBSCRIBE")
        assert request.headers["SID"] == device.sid
        assert subscription.state == TERMINATED
        assert subscription.listener.is_closed
        assert subscription.time_left == 0
        assert await receive(stream) is None
        assert not stream.is_active
        # Only sent once
        assert await stream.unsubscribe() is False
        assert len(device.requests_for("UNSUBSCRIBE")) == 1


@pytest.mark.asyncio
async def test_close_straight_after_subscribing(fake_device):
    async with fake_device() as device:
        subscription = Subscription(device.service)
        stream = await subscription.subscribe()
        await subscription.close()
        assert subscription.state == TERMINATED
        assert subscription.listener.is_closed
        assert await receive(stream) is None
        # Closing is not unsubscribing
        assert device.requests_for("UNSUBSCRIBE") == []


@pytest.mark.asyncio
async def test_unsubscribe_rejected(fake_device):
    async with fake_device(unsubscribe_status=412) as device:
        stream = await subscribe(device.service)
        assert await stream.unsubscribe() is False
        assert stream.subscription.state == TERMINATED


@pytest.mark.asyncio
async def test_listener_failure_ends_the_stream(fake_device):
    async with fake_device() as device:
        with mock.patch.object(
            EventListener, "serve", side_effect=OSError("accept failed")
        ):
            stream = await subscribe(device.service)
            assert await receive(stream) is None
        assert isinstance(stream.error, OSError)
        await stream.unsubscribe()


@pytest.mark.asyncio
async def test_iteration_and_context_manager(fake_device):
    async with fake_device() as device:
        async with await subscribe(device.service, decoder=decode_number) as stream:
            for value in range(3):
                assert await device.notify(number_event(value), seq=value) == 200
            received = []
            async for event in stream:
                received.append(event)
                if len(received) == 3:
                    break
            assert received == [0, 1, 2]
        assert len(device.requests_for("UNSUBSCRIBE")) == 1
        assert stream.subscription.state == TERMINATED


@pytest.mark.asyncio
async def test_advertised_callback(fake_device):
    async with fake_device() as device:
        config = SubscriptionConfig(advertise_ip="203.0.113.9")
        stream = await subscribe(device.service, config=config)
        try:
            (request,) = device.requests_for("SUBSCRIBE")
            assert request.headers["CALLBACK"].startswith("<http://203.0.113.9:")
            port = int(request.headers["CALLBACK"].strip("<>").rsplit(":", 1)[1])
            assert stream.subscription.listener.address == ("127.0.0.1", port)
        finally:
            await stream.unsubscribe()


@pytest.mark.asyncio
async def test_configured_listen_ip(fake_device):
    async with fake_device() as device:
        config = SubscriptionConfig(listen_ip="127.0.0.1")
        stream = await subscribe(device.service, config=config)
        try:
            assert stream.subscription.listener.callback_url.startswith(
                "http://127.0.0.1:"
            )
        finally:
            await stream.unsubscribe()
