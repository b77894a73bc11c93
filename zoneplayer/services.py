"""Descriptors for the UPnP services offered by a ZonePlayer.

A `ServiceDescriptor` is all the eventing code needs to know about a
service: its type and the absolute URLs used for control and for event
subscriptions. Descriptors normally come from a parsed device description,
but for Sonos devices the URLs are well known and can be built directly::

    avt = ServiceDescriptor.for_zone_player("192.168.1.102", "AVTransport")
    print(avt.event_subscription_url)
    # http://192.168.1.102:1400/MediaRenderer/AVTransport/Event
    stream = await avt.subscribe()
"""

from collections import namedtuple
from urllib.parse import urljoin, urlsplit

from .exceptions import InvalidServiceUrl

#: The port on which ZonePlayers serve UPnP requests.
ZONE_PLAYER_PORT = 1400

# Path prefixes for the services of a ZonePlayer which do not live at the
# root of the device. The services of the embedded MediaServer and
# MediaRenderer devices share names (ConnectionManager), so the renderer's
# one is listed under its own key.
SERVICE_PATH_PREFIXES = {
    "AlarmClock": "",
    "MusicServices": "",
    "AudioIn": "",
    "DeviceProperties": "",
    "SystemProperties": "",
    "ZoneGroupTopology": "",
    "GroupManagement": "",
    "QPlay": "",
    "ContentDirectory": "/MediaServer",
    "ConnectionManager": "/MediaServer",
    "RenderingControl": "/MediaRenderer",
    "MR_ConnectionManager": "/MediaRenderer",
    "AVTransport": "/MediaRenderer",
    "Queue": "/MediaRenderer",
    "GroupRenderingControl": "/MediaRenderer",
    "VirtualLineIn": "/MediaRenderer",
}

# Services which are not in the upnp-org domain
_SERVICE_DOMAINS = {
    "Queue": "schemas-sonos-com",
    "QPlay": "schemas-tencent-com",
}


class ServiceDescriptor(
    namedtuple(
        "ServiceDescriptorBase", "service_type, control_url, event_subscription_url"
    )
):
    """A remote UPnP service.

    Attributes:
        service_type (str): The service type URN, eg
            ``urn:schemas-upnp-org:service:AVTransport:1``.
        control_url (str): The absolute URL to which SOAP actions are sent.
        event_subscription_url (str): The absolute URL to which
            ``SUBSCRIBE`` and ``UNSUBSCRIBE`` requests are sent.
    """

    __slots__ = ()

    @classmethod
    def from_base_url(cls, base_url, service_type, control_path, event_path):
        """Build a descriptor from the (possibly relative) paths found in a
        device description.

        Args:
            base_url (str): The URL of the device description, or the
                device's base URL.
            service_type (str): The service type URN.
            control_path (str): The ``controlURL`` of the service.
            event_path (str): The ``eventSubURL`` of the service.

        Returns:
            ServiceDescriptor: with both URLs resolved against ``base_url``.
        """
        return cls(
            service_type,
            urljoin(base_url, control_path),
            urljoin(base_url, event_path),
        )

    @classmethod
    def for_zone_player(cls, ip_address, service_name, version=1):
        """Build a descriptor for a service of a Sonos ZonePlayer.

        Args:
            ip_address (str): The IP address of the ZonePlayer.
            service_name (str): The name of the service, eg
                ``"RenderingControl"``. Use ``"MR_ConnectionManager"`` for the
                MediaRenderer's ConnectionManager.
            version (int): The service version. Default 1.

        Raises:
            KeyError: if the service is not known to exist on ZonePlayers.
        """
        prefix = SERVICE_PATH_PREFIXES[service_name]
        name = service_name.replace("MR_", "")
        domain = _SERVICE_DOMAINS.get(name, "schemas-upnp-org")
        service_type = "urn:{}:service:{}:{}".format(domain, name, version)
        base_url = "http://{}:{}".format(ip_address, ZONE_PLAYER_PORT)
        return cls.from_base_url(
            base_url,
            service_type,
            "{}/{}/Control".format(prefix, name),
            "{}/{}/Event".format(prefix, name),
        )

    @property
    def service_id(self):
        """`str`: A short name for the service, eg ``AVTransport``, used in
        log and error messages."""
        parts = self.service_type.split(":")
        if len(parts) >= 2 and parts[-2]:
            return parts[-2]
        return self.service_type

    @property
    def device_address(self):
        """`tuple`: The ``(host, port)`` which serves the event subscription
        URL.

        Raises:
            InvalidServiceUrl: if the URL is not an absolute ``http`` URL.
        """
        parts = urlsplit(self.event_subscription_url)
        if parts.scheme != "http" or not parts.hostname:
            raise InvalidServiceUrl(
                "Cannot subscribe to {} at {!r}".format(
                    self.service_id, self.event_subscription_url
                )
            )
        try:
            port = parts.port
        except ValueError as error:
            raise InvalidServiceUrl(str(error)) from error
        return parts.hostname, port or 80

    def subscribe(self, decoder=None, config=None):
        """Subscribe to the service's events.

        See `zoneplayer.events.subscribe`, to which this delegates.

        Returns:
            coroutine: which resolves to an `EventStream`.
        """
        # Imported here as events imports this module
        from .events import subscribe  # pylint: disable=import-outside-toplevel

        return subscribe(self, decoder=decoder, config=config)
