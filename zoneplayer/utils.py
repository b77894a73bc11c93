"""This module contains utility functions used internally by zoneplayer."""

import re


FIRST_CAP_RE = re.compile("(.)([A-Z][a-z]+)")
ALL_CAP_RE = re.compile("([a-z0-9])([A-Z])")


def camel_to_underscore(string):
    """Convert camelcase to lowercase and underscore.

    Recipe from http://stackoverflow.com/a/1176023

    Args:
        string (str): The string to convert.

    Returns:
        str: The converted string.
    """
    string = FIRST_CAP_RE.sub(r"\1_\2", string)
    return ALL_CAP_RE.sub(r"\1_\2", string).lower()


def format_timeout_header(seconds):
    """Return the value of a GENA ``TIMEOUT`` header.

    >>> format_timeout_header(60)
    'Second-60'
    """
    return "Second-{}".format(int(seconds))


def parse_timeout_header(value):
    """Parse the value of a GENA ``TIMEOUT`` response header.

    According to the UPnP Device Architecture the timeout can be "infinite" or
    "second-123" where 123 is a number of seconds. Sonos uses "Second-123"
    (with a capital letter).

    Args:
        value (str): The header value, or `None` if the header was absent.

    Returns:
        int: The number of seconds, or `None` if the value is absent,
        "infinite" or not understood.
    """
    if not value:
        return None
    value = value.strip().lower()
    if not value.startswith("second-"):
        return None
    try:
        return int(value[len("second-") :])
    except ValueError:
        return None


def format_host(ip_address):
    """Return an IP address in the form used in the host part of a URL.

    IPv6 addresses are wrapped in brackets.

    >>> format_host("fe80::1")
    '[fe80::1]'
    """
    if ":" in ip_address:
        return "[{}]".format(ip_address)
    return ip_address
