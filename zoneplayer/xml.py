# pylint: disable=invalid-name

"""This module contains XML related utility functions."""


import sys
import re

import xml.etree.ElementTree as XML


# Characters which are not allowed in XML 1.0 documents but which devices
# sometimes send anyway, eg inside track titles. See
# http://stackoverflow.com/questions/1707890/
illegal_unichrs = [
    (0x00, 0x08),
    (0x0B, 0x0C),
    (0x0E, 0x1F),
    (0x7F, 0x84),
    (0x86, 0x9F),
    (0xD800, 0xDFFF),
    (0xFDD0, 0xFDDF),
    (0xFFFE, 0xFFFF),
]
# The two non-characters at the end of each supplementary plane
illegal_unichrs.extend(
    (plane + 0xFFFE, plane + 0xFFFF) for plane in range(0x10000, 0x110000, 0x10000)
)

illegal_ranges = [
    "{}-{}".format(chr(low), chr(high))
    for (low, high) in illegal_unichrs
    if low < sys.maxunicode
]

illegal_xml_re = re.compile("[%s]" % "".join(illegal_ranges))


#: Namespaces found in UPnP event bodies, used by `ns_tag`.
NAMESPACES = {
    "e": "urn:schemas-upnp-org:event-1-0",
    "avt": "urn:schemas-upnp-org:metadata-1-0/AVT/",
    "rcs": "urn:schemas-upnp-org:metadata-1-0/RCS/",
    "queue": "urn:schemas-sonos-com:metadata-1-0/Queue/",
}


def ns_tag(ns_id, tag):
    """Return a namespace/tag item.

    Args:
        ns_id (str): A namespace id, eg ``"e"`` (see `NAMESPACES`)
        tag (str): An XML tag, eg ``"property"``

    Returns:
        str: A fully qualified tag.

    >>> ns_tag('e', 'property')
    '{urn:schemas-upnp-org:event-1-0}property'
    """
    return "{{{}}}{}".format(NAMESPACES[ns_id], tag)


def fromstring_lenient(text):
    """Parse XML text, retrying once with illegal characters removed.

    Args:
        text (str): The XML document.

    Returns:
        :class:`~xml.etree.ElementTree.Element`: the root element.

    Raises:
        :class:`~xml.etree.ElementTree.ParseError`: if the text is not
            well formed even after filtering.
    """
    try:
        return XML.fromstring(text.encode("utf-8"))
    except XML.ParseError:
        filtered = illegal_xml_re.sub("", text)
        if filtered == text:
            raise
        return XML.fromstring(filtered.encode("utf-8"))
