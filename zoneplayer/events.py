"""Classes to handle UPnP events and subscriptions using asyncio.

Each call to `subscribe` performs the GENA ``SUBSCRIBE`` handshake with the
device, binds a dedicated event listener for the new subscription and starts
a background task which keeps the subscription alive. Events are read from
the returned `EventStream`.

Example:

    Run this code, and change your volume, tracks etc::

        import asyncio
        import logging
        from pprint import pprint

        from zoneplayer import ServiceDescriptor

        logging.basicConfig()


        async def main():
            service = ServiceDescriptor.for_zone_player(
                "192.168.1.102", "RenderingControl"
            )
            async with await service.subscribe() as events:
                async for event in events:
                    pprint(event.variables)


        if __name__ == "__main__":
            asyncio.run(main())

The subscription is renewed shortly before its lease runs out for as long as
the stream is in use. Dropping the stream without calling
:meth:`EventStream.unsubscribe` is allowed: the background task notices at
its next renewal, no more than one lease interval later, and cancels the
subscription itself.
"""

import asyncio
import logging
import weakref

from aiohttp import ClientError, ClientSession, ClientTimeout

from .config import SubscriptionConfig
from .events_base import (
    ChannelClosed,
    EventChannel,
    SubscriptionMessage,
    bind_listen_socket,
    decode_property_set,
    get_listen_ip,
)
from .exceptions import (
    NotifyParseError,
    RenewalFailed,
    SubscriptionFailed,
    SubscriptionFailedNoSid,
    ZonePlayerException,
)
from .lease import Lease
from .notify import read_notify_request
from .utils import format_host, format_timeout_header, parse_timeout_header

log = logging.getLogger(__name__)  # pylint: disable=C0103

# Subscription states
HANDSHAKING = "handshaking"
ACTIVE = "active"
RENEWING = "renewing"
CANCELLING = "cancelling"
TERMINATED = "terminated"

#: Errors which sending a request to the device may raise.
REQUEST_ERRORS = (ClientError, asyncio.TimeoutError, OSError)

_RESPONSES = {
    200: b"HTTP/1.1 200 OK\r\n",
    400: b"HTTP/1.1 400 Bad Request\r\n",
    412: b"HTTP/1.1 412 Precondition Failed\r\n",
}


def _is_success(status):
    return 200 <= status < 300


async def send_gena_request(method, url, headers, timeout=None):
    """Send a ``SUBSCRIBE`` or ``UNSUBSCRIBE`` request.

    Args:
        method (str): 'SUBSCRIBE' or 'UNSUBSCRIBE'.
        url (str): The full endpoint to which the request is being sent.
        headers (dict): A dict of headers, each key and each value being
            of type `str`.
        timeout (float): Total timeout for the request, or `None`.

    Returns:
        tuple: ``(status, headers, body)`` of the response.

    Raises:
        aiohttp.ClientError: if the request fails.
        asyncio.TimeoutError: if the request times out.
    """
    log.debug("Sending %s to %s: %s", method, url, headers)
    async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
        async with session.request(method, url, headers=headers) as response:
            body = await response.text(errors="replace")
            log.debug("Received %s for %s to %s", response.status, method, url)
            return response.status, response.headers, body


class EventNotifyHandler:
    """Handles one connection accepted by the `EventListener`.

    Reads a single ``NOTIFY`` request, decodes its body with the
    subscription's decoder and forwards the result to the consumer. Nothing
    that goes wrong here affects the subscription: a malformed request or a
    body the decoder rejects is logged and dropped.

    Args:
        subscription (Subscription): The subscription the listener belongs to.
    """

    def __init__(self, subscription):
        self.subscription = subscription

    async def __call__(self, conn, address):
        try:
            await self.handle(conn, address)
        except OSError as error:
            log.warning("Connection from %s failed: %s", address[0], error)
        finally:
            conn.close()

    async def handle(self, conn, address):
        """Serve one ``NOTIFY`` request."""
        subscription = self.subscription
        try:
            request = await read_notify_request(
                conn, subscription.config.max_notify_bytes
            )
        except NotifyParseError as error:
            log.warning("Invalid NOTIFY from %s: %s", address[0], error)
            await self.respond(conn, 400)
            return

        if request.sid is not None and request.sid.strip() != subscription.sid:
            log.info(
                "No subscription registered for %s (expected %s)",
                request.sid,
                subscription.sid,
            )
            await self.respond(conn, 412)
            return

        self.log_event(request.seq, subscription.service.service_id)
        log.debug("Event content: %s", request.text)
        try:
            value = subscription.decoder(request.text)
        except Exception:  # pylint: disable=broad-except
            log.exception(
                "Could not decode event %s for %s, sid: %s",
                request.seq,
                subscription.service.service_id,
                subscription.sid,
            )
            # The device did its job. Telling it otherwise gains nothing
            await self.respond(conn, 200)
            return

        try:
            # Waits for as long as the consumer is behind
            await subscription.channel.send(SubscriptionMessage.event(value))
        except ChannelClosed:
            log.debug(
                "Dropping event %s for %s, nobody is listening",
                request.seq,
                subscription.sid,
            )
        await self.respond(conn, 200)

    @staticmethod
    async def respond(conn, status):
        loop = asyncio.get_event_loop()
        await loop.sock_sendall(
            conn,
            _RESPONSES[status] + b"Content-Length: 0\r\nConnection: close\r\n\r\n",
        )

    # pylint: disable=no-self-use, missing-docstring
    def log_event(self, seq, service_id):
        log.debug(
            "Event %s received for %s service at %s",
            seq,
            service_id,
            asyncio.get_event_loop().time(),
        )


class EventListener:
    """The Event Listener.

    Owns the listening socket which the device sends ``NOTIFY`` requests to
    for a single subscription. Each accepted connection is handled in its
    own task, so a slow or malformed request never holds up the next one.

    Args:
        sock (socket.socket): A bound, listening, non-blocking socket.
        advertise_ip (str): The IP to advertise in the callback URL instead
            of the one the socket is bound to. Optional.
    """

    def __init__(self, sock, advertise_ip=None):
        self.sock = sock
        #: `tuple`: The (ip, port) address on which the listener listens.
        self.address = tuple(sock.getsockname()[:2])
        self.advertise_ip = advertise_ip
        #: `bool`: Indicates whether connections are being accepted
        self.is_running = False
        self._connections = set()

    @classmethod
    async def create(cls, host, port, config):
        """Bind a listener on the interface through which ``host`` is
        reached.

        Args:
            host (str): The device's host.
            port (int): The device's port.
            config (SubscriptionConfig): Supplies ``listen_ip``,
                ``advertise_ip`` and ``request_timeout``.

        Raises:
            OSError: if the device cannot be reached or the socket cannot be
                bound.
            asyncio.TimeoutError: if reaching the device times out.
        """
        ip_address = config.listen_ip
        if not ip_address:
            ip_address = await get_listen_ip(host, port, config.request_timeout)
        listener = cls(bind_listen_socket(ip_address), config.advertise_ip)
        log.debug("Event listener bound to %s", listener.address)
        return listener

    @property
    def callback_url(self):
        """`str`: The URL sent to the device in the ``CALLBACK`` header."""
        ip_address, port = self.address
        if self.advertise_ip:
            ip_address = self.advertise_ip
        return "http://{}:{}".format(format_host(ip_address), port)

    @property
    def is_closed(self):
        return self.sock.fileno() == -1

    async def serve(self, handler):
        """Accept connections until cancelled.

        Args:
            handler: A coroutine function, called as ``handler(conn,
                address)`` in a new task for each accepted connection.

        Raises:
            OSError: if accepting fails. The device can then no longer reach
                us, so this is not retried.
        """
        loop = asyncio.get_event_loop()
        self.is_running = True
        log.debug("Event listener running on %s", self.address)
        try:
            while True:
                conn, address = await loop.sock_accept(self.sock)
                conn.setblocking(False)
                log.debug("Accepted connection from %s", address)
                task = asyncio.ensure_future(handler(conn, address))
                self._connections.add(task)
                task.add_done_callback(self._connection_done)
        finally:
            self.is_running = False

    def _connection_done(self, task):
        self._connections.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("Error handling NOTIFY", exc_info=task.exception())

    def close(self):
        """Stop handling connections and close the socket."""
        for task in list(self._connections):
            task.cancel()
        self.sock.close()
        log.debug("Event listener on %s closed", self.address)


class Subscription:  # pylint: disable=too-many-instance-attributes
    """A subscription to the events of one UPnP service.

    The subscription moves through the states ``handshaking``, ``active``,
    ``renewing`` (and back to ``active``), optionally ``cancelling``, and
    finally ``terminated``. Once `subscribe` has succeeded a background task
    accepts ``NOTIFY`` connections and renews the lease at
    ``lease_seconds - renewal_margin_seconds`` after each successful
    (re)subscription. Before renewing it checks that the consumer still
    exists; if not, it sends ``UNSUBSCRIBE`` instead and stops.

    The task also stops if a renewal fails or the listener dies. It never
    raises: the cause is recorded in `error` and the stream simply ends.

    Args:
        service (ServiceDescriptor): The service to subscribe to.
        decoder: A callable which turns a ``NOTIFY`` body (`str`) into an
            event, raising any exception if it cannot. Defaults to
            `decode_property_set`.
        config (SubscriptionConfig): Settings. Defaults are used if `None`.
    """

    def __init__(self, service, decoder=None, config=None):
        self.service = service
        self.decoder = decoder if decoder is not None else decode_property_set
        self.config = config if config is not None else SubscriptionConfig()
        #: `str`: The subscription id issued by the device
        self.sid = None
        #: `int`: The timeout the device says it granted, for information
        #: only. `None` if absent or infinite.
        self.timeout = None
        #: `Lease`: The current lease.
        self.lease = None
        #: `str`: One of the state constants of this module.
        self.state = HANDSHAKING
        #: `Exception`: Why the subscription ended, `None` if it ended
        #: because the consumer went away or it is still running.
        self.error = None
        self.listener = None
        self.channel = None
        self._task = None
        self._has_been_unsubscribed = False

    @property
    def event_subscription_url(self):
        return self.service.event_subscription_url

    @property
    def is_running(self):
        """`bool`: Whether the background task is running."""
        return self._task is not None and not self._task.done()

    @property
    def time_left(self):
        """`float`: Seconds until the device drops the subscription unless
        it is renewed. 0 if not subscribed."""
        if self.lease is None or self.state == TERMINATED:
            return 0
        return self.lease.time_left(asyncio.get_event_loop().time())

    async def subscribe(self):
        """Subscribe to the service and start the background task.

        Returns:
            EventStream: The stream on which events will be delivered.

        Raises:
            SubscriptionFailed: if the device rejects the subscription.
            SubscriptionFailedNoSid: if the device accepts it without a SID.
            InvalidServiceUrl: if the subscription URL is unusable.
            OSError: if the listener cannot be set up.
            aiohttp.ClientError: if the request fails.
            asyncio.TimeoutError: if the request times out.
        """
        if self.state != HANDSHAKING or self._task is not None:
            raise ZonePlayerException(
                "Cannot subscribe Subscription instance more than once"
            )
        host, port = self.service.device_address
        try:
            self.listener = await EventListener.create(host, port, self.config)
        except BaseException:
            self.state = TERMINATED
            raise
        self.channel = EventChannel(self.config.callback_queue_capacity)

        subscribed = False
        try:
            await self._handshake()
            subscribed = True
        finally:
            if not subscribed:
                # No task will ever own the listener, so nothing must be
                # left bound
                self._release()

        self.state = ACTIVE
        self._task = asyncio.ensure_future(self._run())
        return EventStream(self)

    async def _handshake(self):
        # An event subscription looks like this:
        # SUBSCRIBE publisher path HTTP/1.1
        # HOST: publisher host:publisher port
        # CALLBACK: <delivery URL>
        # NT: upnp:event
        # TIMEOUT: Second-requested subscription duration
        headers = {
            "CALLBACK": "<{}>".format(self.listener.callback_url),
            "NT": "upnp:event",
            "TIMEOUT": format_timeout_header(self.config.lease_seconds),
        }
        status, response_headers, body = await send_gena_request(
            "SUBSCRIBE",
            self.event_subscription_url,
            headers,
            self.config.request_timeout,
        )
        if not _is_success(status):
            raise SubscriptionFailed(status, body)
        sid = response_headers.get("SID", "").strip()
        if not sid:
            raise SubscriptionFailedNoSid()
        self.sid = sid
        self._granted(response_headers)
        log.info(
            "Subscribed to %s, sid: %s, callback: %s",
            self.event_subscription_url,
            self.sid,
            self.listener.callback_url,
        )

    async def _renew(self):
        # A renewal names the existing subscription and must not carry
        # CALLBACK or NT:
        # SUBSCRIBE publisher path HTTP/1.1
        # HOST: publisher host:publisher port
        # SID: uuid:subscription UUID
        # TIMEOUT: Second-requested subscription duration
        headers = {
            "SID": self.sid,
            "TIMEOUT": format_timeout_header(self.config.lease_seconds),
        }
        status, response_headers, body = await send_gena_request(
            "SUBSCRIBE",
            self.event_subscription_url,
            headers,
            self.config.request_timeout,
        )
        if not _is_success(status):
            raise RenewalFailed(status, body)
        self._granted(response_headers)
        log.debug(
            "Renewed subscription to %s, sid: %s", self.event_subscription_url, self.sid
        )

    def _granted(self, response_headers):
        """Start a new lease after a successful (re)subscription."""
        now = asyncio.get_event_loop().time()
        self.timeout = parse_timeout_header(response_headers.get("TIMEOUT"))
        if self.timeout is not None and self.timeout < self.config.lease_seconds:
            log.warning(
                "%s granted a %ss lease for %s, shorter than the %ss requested",
                self.service.service_id,
                self.timeout,
                self.sid,
                self.config.lease_seconds,
            )
        if self.lease is None:
            self.lease = Lease.start(
                self.config.lease_seconds, self.config.renewal_margin_seconds, now
            )
        else:
            self.lease = self.lease.renewed(now)

    async def _run(self):
        loop = asyncio.get_event_loop()
        accept = asyncio.ensure_future(self.listener.serve(EventNotifyHandler(self)))
        try:
            while True:
                done, _ = await asyncio.wait(
                    {accept}, timeout=self.lease.until_deadline(loop.time())
                )
                if accept in done:
                    # serve() only ever finishes by raising
                    self.error = accept.exception()
                    log.error(
                        "Event listener for %s failed: %s", self.sid, self.error
                    )
                    return
                if not await self._renew_or_cancel():
                    return
        except Exception as error:  # pylint: disable=broad-except
            log.exception("Subscription %s failed", self.sid)
            self.error = error
        finally:
            accept.cancel()
            # The socket must outlive the pending accept
            await asyncio.wait({accept})
            self._release()
            log.info(
                "Subscription to %s ended, sid: %s", self.event_subscription_url, self.sid
            )

    def _release(self):
        self.listener.close()
        self.channel.close_sender()
        self.state = TERMINATED

    async def _renew_or_cancel(self):
        """Renew the subscription, or cancel it if the consumer has gone.

        Returns:
            bool: `True` if the subscription is still active.
        """
        self.state = RENEWING
        try:
            self.channel.try_send(SubscriptionMessage.ping())
        except ChannelClosed:
            log.info("Event stream for %s was dropped, unsubscribing", self.sid)
            self.state = CANCELLING
            await self.unsubscribe()
            return False
        except asyncio.QueueFull:
            # Events are backed up, but the consumer is still there
            log.debug("Event queue for %s is full", self.sid)

        try:
            await self._renew()
        except (RenewalFailed,) + REQUEST_ERRORS as error:
            log.error(
                "Could not renew subscription to %s, sid: %s: %s",
                self.event_subscription_url,
                self.sid,
                error,
            )
            self.error = error
            return False
        self.state = ACTIVE
        return True

    async def unsubscribe(self):
        """Send a best effort ``UNSUBSCRIBE``.

        Only the first call sends anything. Errors are logged, not raised.

        Returns:
            bool: Whether the device acknowledged the request.
        """
        if self._has_been_unsubscribed or self.sid is None:
            return False
        # Set now so that a failed attempt is not repeated
        self._has_been_unsubscribed = True
        # UNSUBSCRIBE publisher path HTTP/1.1
        # HOST: publisher host:publisher port
        # SID: uuid:subscription UUID
        try:
            status, _, body = await send_gena_request(
                "UNSUBSCRIBE",
                self.event_subscription_url,
                {"SID": self.sid},
                self.config.request_timeout,
            )
        except REQUEST_ERRORS as error:
            log.info("Could not unsubscribe %s: %s", self.sid, error)
            return False
        if not _is_success(status):
            log.info("Could not unsubscribe %s: %s %s", self.sid, status, body)
            return False
        log.debug(
            "Unsubscribed from %s, sid: %s", self.event_subscription_url, self.sid
        )
        return True

    async def wait_closed(self):
        """Wait for the background task to finish."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def close(self):
        """Stop the background task, without unsubscribing, and wait for
        it."""
        if self._task is not None:
            self._task.cancel()
        await self.wait_closed()
        # A task cancelled before it started never ran its cleanup
        if self.state != TERMINATED and self.listener is not None:
            self._release()


class EventStream:
    """The consumer's handle on a subscription.

    Use :meth:`receive`, or iterate with ``async for``, to read events. The
    stream ends, and stays ended, once the subscription has ended for any
    reason. Look at `error` to find out why.

    Used as an async context manager, the stream unsubscribes on exit.
    """

    def __init__(self, subscription):
        self.subscription = subscription
        #: `str`: The subscription id
        self.sid = subscription.sid
        #: `str`: Where ``SUBSCRIBE`` and ``UNSUBSCRIBE`` requests are sent
        self.event_subscription_url = subscription.event_subscription_url
        self._channel = subscription.channel
        self._ended = False
        # When the stream is garbage collected the receiving end is closed,
        # which the subscription notices at its next renewal
        self._finalizer = weakref.finalize(self, self._channel.close_receiver)

    @property
    def error(self):
        """`Exception`: Why the subscription ended, if it ended because
        something went wrong. `None` otherwise."""
        return self.subscription.error

    @property
    def is_active(self):
        """`bool`: Whether the subscription is still being kept alive."""
        return not self._ended and self.subscription.is_running

    async def receive(self):
        """Wait for the next event.

        Returns:
            The decoded event, or `None` if the subscription has ended. Once
            `None` has been returned, it always will be.
        """
        while not self._ended:
            message = await self._channel.receive()
            if message is None:
                self._ended = True
            elif not message.is_ping:
                return message.value
        return None

    async def unsubscribe(self):
        """Cancel the subscription.

        Sends a best effort ``UNSUBSCRIBE`` and stops the background task.
        The stream cannot be used afterwards. Errors are logged, not raised.

        Returns:
            bool: Whether the device acknowledged the request. For
            information only.
        """
        self._ended = True
        self._finalizer()
        try:
            return await self.subscription.unsubscribe()
        finally:
            await self.subscription.close()

    def __aiter__(self):
        return self

    async def __anext__(self):
        event = await self.receive()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.unsubscribe()

    def __repr__(self):
        return "<{} {} for {}>".format(
            self.__class__.__name__, self.sid, self.event_subscription_url
        )


async def subscribe(service, decoder=None, config=None):
    """Subscribe to the events of a service.

    Args:
        service (ServiceDescriptor): The service to subscribe to.
        decoder: A callable turning a ``NOTIFY`` body into an event. Defaults
            to `decode_property_set`.
        config (SubscriptionConfig): Settings. Defaults are used if `None`.

    Returns:
        EventStream: The stream on which events will be delivered.

    Raises:
        SubscriptionFailed: if the device rejects the subscription.
        SubscriptionFailedNoSid: if the device accepts it without a SID.
    """
    subscription = Subscription(service, decoder, config)
    return await subscription.subscribe()
