"""zoneplayer is an asyncio client for the UPnP events of Sonos-style
ZonePlayers."""

import logging

from .config import SubscriptionConfig
from .events import EventStream, subscribe
from .events_base import PropertySet, decode_property_set
from .exceptions import (
    SubscriptionFailed,
    SubscriptionFailedNoSid,
    ZonePlayerException,
)
from .services import ServiceDescriptor

__author__ = "The zoneplayer authors"
# Please increment the version number and add the suffix "-dev" after
# a release, to make it possible to identify in-development code
__version__ = "0.1.0"
__license__ = "MIT License"

# You really should not `import *` - it is poor practice
# but if you do, here is what you get:
__all__ = [
    "decode_property_set",
    "EventStream",
    "PropertySet",
    "ServiceDescriptor",
    "subscribe",
    "SubscriptionConfig",
    "SubscriptionFailed",
    "SubscriptionFailedNoSid",
    "ZonePlayerException",
]

# http://docs.python.org/2/howto/logging.html#library-config
# Avoids spurious error messages if no logger is configured by the user

logging.getLogger(__name__).addHandler(logging.NullHandler())
