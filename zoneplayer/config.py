"""This module contains configuration variables.

They may be set by your code as follows::

    from zoneplayer import config
    ...
    config.VARIABLE = value

Module level variables are process wide defaults. Settings for a single
subscription are passed explicitly as a `SubscriptionConfig`, which picks
up these defaults for any option it is not given.
"""

from collections import namedtuple


EVENT_ADVERTISE_IP = None
"""The IP on which to advertise to the device in the ``CALLBACK`` header.

The default of None means that the IP address the event listener is bound
to will be advertised. Set this if the device reaches you through NAT or a
port forward.

See also:
    The :mod:`zoneplayer.events` module.
"""

EVENT_LISTENER_IP = None
"""The IP on which the event listener listens.

The default of None means that the relevant IP address will be detected
automatically, by opening a throwaway connection to the device and using
the local address the operating system picked for it.

See also:
    The :mod:`zoneplayer.events` module.
"""

REQUEST_TIMEOUT = 20.0
"""The timeout (in seconds) for ``SUBSCRIBE`` and ``UNSUBSCRIBE`` requests.

It can be a float, an int, or None. If set to 'None', requests can
potentially wait indefinitely.
"""

MAX_NOTIFY_BYTES = 1024 * 1024
"""The largest ``NOTIFY`` request (headers and body) that will be accepted.

Larger requests are rejected and the connection is closed. The subscription
itself is not affected.
"""

LEASE_SECONDS = 60
"""The subscription lease requested from the device, in seconds."""

RENEWAL_MARGIN_SECONDS = 10
"""How long before the lease runs out the subscription is renewed."""

CALLBACK_QUEUE_CAPACITY = 16
"""The number of received events that may be waiting for the consumer
before further ``NOTIFY`` requests are held open."""


# request_timeout may legitimately be None, so it needs its own marker
_DEFAULT = object()

_FIELDS = (
    "lease_seconds",
    "renewal_margin_seconds",
    "callback_queue_capacity",
    "request_timeout",
    "max_notify_bytes",
    "listen_ip",
    "advertise_ip",
)


class SubscriptionConfig(namedtuple("SubscriptionConfigBase", _FIELDS)):
    """Settings for a single event subscription.

    Any option which is not given is taken from the module level variable of
    the same (upper cased) name at the time the config is created.

    Args:
        lease_seconds (int): The lease requested with ``TIMEOUT:
            Second-<n>``. Default 60.
        renewal_margin_seconds (int): The renewal is sent this many seconds
            before the lease runs out. Default 10, ie renew at the 50 second
            mark.
        callback_queue_capacity (int): Size of the queue between the event
            listener and the consumer. Default 16.
        request_timeout (float): Timeout for outgoing requests.
        max_notify_bytes (int): Cap on a single ``NOTIFY`` request.
        listen_ip (str): Local IP to bind the listener to. Detected
            automatically if `None`.
        advertise_ip (str): IP placed in the ``CALLBACK`` header. The
            listener IP if `None`.

    Raises:
        ValueError: if the margin is not smaller than the lease, or the
            queue capacity or notify cap is not positive.
    """

    __slots__ = ()

    def __new__(
        cls,
        lease_seconds=None,
        renewal_margin_seconds=None,
        callback_queue_capacity=None,
        request_timeout=_DEFAULT,
        max_notify_bytes=None,
        listen_ip=None,
        advertise_ip=None,
    ):  # pylint: disable=too-many-arguments
        # The module variables are read here rather than bound as argument
        # defaults, so that changes made after import are honoured
        module = globals()
        if lease_seconds is None:
            lease_seconds = module["LEASE_SECONDS"]
        if renewal_margin_seconds is None:
            renewal_margin_seconds = module["RENEWAL_MARGIN_SECONDS"]
        if callback_queue_capacity is None:
            callback_queue_capacity = module["CALLBACK_QUEUE_CAPACITY"]
        if request_timeout is _DEFAULT:
            request_timeout = module["REQUEST_TIMEOUT"]
        if max_notify_bytes is None:
            max_notify_bytes = module["MAX_NOTIFY_BYTES"]
        if listen_ip is None:
            listen_ip = module["EVENT_LISTENER_IP"]
        if advertise_ip is None:
            advertise_ip = module["EVENT_ADVERTISE_IP"]

        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        if not 0 <= renewal_margin_seconds < lease_seconds:
            raise ValueError(
                "renewal_margin_seconds ({}) must be at least 0 and smaller "
                "than lease_seconds ({})".format(renewal_margin_seconds, lease_seconds)
            )
        if callback_queue_capacity < 1:
            raise ValueError("callback_queue_capacity must be at least 1")
        if max_notify_bytes < 1:
            raise ValueError("max_notify_bytes must be at least 1")

        return super().__new__(
            cls,
            lease_seconds,
            renewal_margin_seconds,
            callback_queue_capacity,
            request_timeout,
            max_notify_bytes,
            listen_ip,
            advertise_ip,
        )

    @property
    def renewal_interval(self):
        """`float`: Seconds between a successful (re)subscription and the
        next renewal."""
        return self.lease_seconds - self.renewal_margin_seconds
