"""Building blocks used by :py:mod:`zoneplayer.events`.

This module holds the pieces which do not depend on a running
subscription: the messages passed from the event listener to the consumer,
the bounded channel which carries them, the default decoder for UPnP
property sets and local address discovery.
"""

import asyncio
import logging
import socket
from collections import namedtuple

from .exceptions import EventParseException
from .utils import camel_to_underscore
from .xml import XML, fromstring_lenient, ns_tag

log = logging.getLogger(__name__)  # pylint: disable=C0103

PING = "ping"
EVENT = "event"


class SubscriptionMessage(namedtuple("SubscriptionMessageBase", "kind, value")):
    """A message on the channel between a subscription and its consumer.

    Either a ping, which only probes whether the consumer is still there and
    is never shown to it, or an event carrying one decoded ``NOTIFY`` body.
    """

    __slots__ = ()

    @classmethod
    def ping(cls):
        return cls(PING, None)

    @classmethod
    def event(cls, value):
        return cls(EVENT, value)

    @property
    def is_ping(self):
        return self.kind == PING


class ChannelClosed(Exception):
    """Raised when sending on a channel whose receiver has gone away."""


class EventChannel:
    """A bounded queue with separately closable ends.

    Many senders (the ``NOTIFY`` handlers and the subscription itself) put
    messages on the channel; one receiver, the `EventStream`, takes them
    off. Either end can be closed:

    * closing the receiving end makes every pending and future send fail
      with `ChannelClosed`. Buffered messages are discarded.
    * closing the sending end lets the receiver drain whatever is buffered,
      after which `receive` returns `None`.

    Args:
        capacity (int): The number of messages which may be buffered.
    """

    def __init__(self, capacity):
        self._queue = asyncio.Queue(capacity)
        self._receiver_gone = asyncio.Event()
        self._senders_gone = asyncio.Event()

    @property
    def receiver_closed(self):
        """`bool`: Whether the receiving end has been closed."""
        return self._receiver_gone.is_set()

    @property
    def sender_closed(self):
        """`bool`: Whether the sending end has been closed."""
        return self._senders_gone.is_set()

    def try_send(self, message):
        """Put a message on the channel without waiting.

        Raises:
            ChannelClosed: if the receiving end is closed.
            asyncio.QueueFull: if the channel is full.
        """
        if self.receiver_closed:
            raise ChannelClosed()
        self._queue.put_nowait(message)

    async def send(self, message):
        """Put a message on the channel, waiting for space if it is full.

        Raises:
            ChannelClosed: if the receiving end is, or becomes, closed.
        """
        if self.receiver_closed:
            raise ChannelClosed()
        put = asyncio.ensure_future(self._queue.put(message))
        gone = asyncio.ensure_future(self._receiver_gone.wait())
        try:
            await asyncio.wait({put, gone}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gone.cancel()
            if not put.done():
                put.cancel()
        # close_receiver() wakes a blocked put as it drains the queue, so the
        # put can complete on a channel nobody reads any more
        if self.receiver_closed:
            self._drop_buffered()
            raise ChannelClosed()
        if not put.done() or put.cancelled():
            raise ChannelClosed()

    async def receive(self):
        """Take the next message off the channel.

        Returns:
            SubscriptionMessage: the next message, or `None` once the
            sending end is closed and nothing is left buffered, or the
            receiving end has been closed.
        """
        while True:
            if self.receiver_closed:
                return None
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self.sender_closed:
                return None
            get = asyncio.ensure_future(self._queue.get())
            done = asyncio.ensure_future(self._senders_gone.wait())
            try:
                await asyncio.wait({get, done}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                done.cancel()
                if not get.done():
                    get.cancel()
            if get.done() and not get.cancelled():
                return get.result()

    def close_receiver(self):
        """Close the receiving end. Safe to call more than once."""
        if self.receiver_closed:
            return
        self._receiver_gone.set()
        # Nobody will read these, and dropping them frees the slots any
        # blocked senders are waiting for
        self._drop_buffered()

    def close_sender(self):
        """Close the sending end. Safe to call more than once."""
        self._senders_gone.set()

    def _drop_buffered(self):
        while not self._queue.empty():
            self._queue.get_nowait()


class PropertySet:
    """A read-only object representing a decoded UPnP property set.

    The values of the evented variables can be accessed via the ``variables``
    dict, or as attributes on the instance itself. You should treat all
    attributes as read-only.

    Args:
        variables (dict, optional): contains the ``{names: values}`` of the
            evented variables. Defaults to `None`.

    Raises:
        AttributeError:  Not all attributes are returned with each event. An
            `AttributeError` will be raised if you attempt to access as an
            attribute a variable which was not returned in the event.

    Example:

        >>> print(event.variables['transport_state'])
        'STOPPED'
        >>> print(event.transport_state)
        'STOPPED'

    """

    # pylint: disable=too-few-public-methods

    def __init__(self, variables=None):
        # __setattr__ is overridden, and will not allow direct setting of
        # attributes
        self.__dict__["variables"] = variables if variables is not None else {}

    def __getattr__(self, name):
        variables = self.__dict__.get("variables", {})
        if name in variables:
            return variables[name]
        raise AttributeError("No such attribute: %s" % name)

    def __setattr__(self, name, value):
        raise TypeError("PropertySet object does not support attribute assignment")

    def __eq__(self, other):
        if not isinstance(other, PropertySet):
            return NotImplemented
        return self.variables == other.variables

    def __repr__(self):
        return "<{} {!r}>".format(self.__class__.__name__, self.variables)


def _find_instance(last_change_tree):
    # InstanceID can be in one of two namespaces, depending on whether we
    # are looking at an avTransport event or a renderingControl event. Queue
    # events name it QueueID.
    for ns_id, tag in (("avt", "InstanceID"), ("rcs", "InstanceID"), ("queue", "QueueID")):
        instance = last_change_tree.find(ns_tag(ns_id, tag))
        if instance is not None:
            return instance
    return None


def _parse_last_change(text, result):
    """Expand a ``LastChange`` variable into ``result``."""
    try:
        last_change_tree = fromstring_lenient(text)
    except XML.ParseError as error:
        raise EventParseException("LastChange", text, error) from error
    # We assume there is only one InstanceID tag. This is true for Sonos, as
    # far as we know.
    instance = _find_instance(last_change_tree)
    if instance is None:
        log.debug("LastChange without an instance: %s", text)
        return
    for last_change_var in instance:
        tag = last_change_var.tag
        # Remove any namespaces from the tags
        if tag.startswith("{"):
            tag = tag.split("}", 1)[1]
        tag = camel_to_underscore(tag)
        # The value is normally in the 'val' attribute, but Sonos sometimes
        # uses a text value instead. Audio related variables may also have a
        # 'channel' attribute.
        value = last_change_var.get("val")
        if value is None:
            value = last_change_var.text
        channel = last_change_var.get("channel")
        if channel is not None:
            if result.get(tag) is None:
                result[tag] = {}
            result[tag][channel] = value
        else:
            result[tag] = value


def parse_event_xml(xml_event):
    """Parse the body of a UPnP event.

    Args:
        xml_event (str): The body of the event.

    Returns:
        dict: A dict with keys representing the evented variables, un-camel
        cased. The relevant value will usually be a string representation of
        the variable's value, but may be a dict if the variable was evented
        per channel via ``LastChange`` (eg
        :code:`{'volume': {'LF': '100', 'RF': '100', 'Master': '36'}}`).

    Raises:
        EventParseException: if the body, or a ``LastChange`` payload within
            it, is not well formed XML.
    """
    result = {}
    try:
        tree = fromstring_lenient(xml_event)
    except XML.ParseError as error:
        raise EventParseException("propertyset", xml_event, error) from error
    if tree.tag != ns_tag("e", "propertyset"):
        raise EventParseException(
            tree.tag, xml_event, ValueError("Not a UPnP property set")
        )
    # property values are just under the propertyset
    for prop in tree.findall(ns_tag("e", "property")):
        for variable in prop:
            # For details on LastChange events, see
            # http://upnp.org/specs/av/UPnP-av-RenderingControl-v1-Service.pdf
            # and http://upnp.org/specs/av/UPnP-av-AVTransport-v1-Service.pdf
            if variable.tag == "LastChange" and variable.text:
                _parse_last_change(variable.text, result)
            else:
                result[camel_to_underscore(variable.tag)] = variable.text
    return result


def decode_property_set(body):
    """The default event decoder: parse a ``NOTIFY`` body into a
    `PropertySet`."""
    return PropertySet(parse_event_xml(body))


async def get_listen_ip(host, port, timeout=None):
    """Find the local IP address through which ``host`` is reached.

    A throwaway TCP connection is opened to the device, and the local end of
    it is inspected. This picks the right interface on multi-homed hosts
    without any configuration.

    Args:
        host (str): The device's host.
        port (int): A port on which the device accepts connections.
        timeout (float): Seconds to wait for the connection.

    Returns:
        str: The local IP address.

    Raises:
        OSError: if the device cannot be reached.
        asyncio.TimeoutError: if the connection times out.
    """
    _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    try:
        sockname = writer.get_extra_info("sockname")
    finally:
        writer.close()
        await writer.wait_closed()
    log.debug("Reached %s:%s from %s", host, port, sockname[0])
    return sockname[0]


def bind_listen_socket(ip_address):
    """Bind a listening socket to an OS assigned port on ``ip_address``.

    Returns:
        socket.socket: the bound, non-blocking socket.

    Raises:
        OSError: if the socket cannot be bound.
    """
    family = socket.AF_INET6 if ":" in ip_address else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((ip_address, 0))
        sock.listen(200)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock
