"""Tests for the xml module."""

import pytest

from zoneplayer import xml


def test_ns_tag():
    """Test the ns_tag function."""
    namespaces = [
        "urn:schemas-upnp-org:event-1-0",
        "urn:schemas-upnp-org:metadata-1-0/AVT/",
        "urn:schemas-upnp-org:metadata-1-0/RCS/",
    ]
    for ns_in, namespace in zip(["e", "avt", "rcs"], namespaces):
        res = xml.ns_tag(ns_in, "testtag")
        correct = "{{{}}}{}".format(namespace, "testtag")
        assert res == correct


def test_fromstring_lenient():
    assert xml.fromstring_lenient("<a>b</a>").text == "b"
    # Control characters are stripped and the parse retried
    assert xml.fromstring_lenient("<a>b\x02c</a>").text == "bc"


def test_fromstring_lenient_gives_up():
    with pytest.raises(xml.XML.ParseError):
        xml.fromstring_lenient("<a>b")
