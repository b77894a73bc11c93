"""Framing of inbound ``NOTIFY`` requests.

A device delivers each event as a single HTTP request on a fresh TCP
connection to the event listener::

    NOTIFY delivery path HTTP/1.1
    HOST: delivery host:delivery port
    CONTENT-TYPE: text/xml; charset="utf-8"
    CONTENT-LENGTH: bytes in body
    NT: upnp:event
    NTS: upnp:propchange
    SID: uuid:subscription-UUID
    SEQ: event key

    <e:propertyset xmlns:e="urn:schemas-upnp-org:event-1-0">
    ...

The bytes may arrive split over any number of reads. `NotifyRequestParser`
accumulates them and reports the request once it is complete;
`read_notify_request` drives it from a socket.
"""

import asyncio
import io
import logging
import re
from collections import namedtuple
from http.client import HTTPException, parse_headers

from . import config
from .exceptions import NotifyParseError

log = logging.getLogger(__name__)  # pylint: disable=C0103

#: Bytes read from the socket at a time.
CHUNK_SIZE = 4096

_HEADER_TERMINATORS = (b"\r\n\r\n", b"\n\n")
_CONTENT_LENGTH_RE = re.compile(r"^[0-9]+$")


class NotifyRequest(namedtuple("NotifyRequestBase", "method, path, headers, body")):
    """A complete ``NOTIFY`` request.

    Attributes:
        method (str): The request method, normally ``NOTIFY``.
        path (str): The request target.
        headers (:class:`http.client.HTTPMessage`): The request headers.
            Lookups are case insensitive.
        body (bytes): The request body.
    """

    __slots__ = ()

    @property
    def text(self):
        """`str`: The body decoded as utf-8. Undecodable bytes are replaced
        rather than rejected."""
        return self.body.decode("utf-8", errors="replace")

    @property
    def sid(self):
        """`str`: The ``SID`` header, or `None`."""
        return self.headers.get("sid")

    @property
    def seq(self):
        """`str`: The ``SEQ`` (event sequence number) header, or `None`."""
        return self.headers.get("seq")


def _find_header_end(buffer):
    """Return ``(header_end, body_start)`` offsets, or `None` if the header
    block is not yet terminated."""
    found = None
    for terminator in _HEADER_TERMINATORS:
        index = buffer.find(terminator)
        if index != -1 and (found is None or index < found[0]):
            found = (index, index + len(terminator))
    return found


def _parse_head(head):
    """Parse the request line and headers."""
    request_line, _, header_block = head.partition(b"\n")
    try:
        method, path, version = request_line.decode("ascii").strip().split(" ")
    except (UnicodeDecodeError, ValueError) as error:
        raise NotifyParseError(
            "Malformed request line: {!r}".format(request_line)
        ) from error
    if not version.startswith("HTTP/"):
        raise NotifyParseError("Malformed request line: {!r}".format(request_line))
    try:
        headers = parse_headers(io.BytesIO(header_block + b"\r\n\r\n"))
    except HTTPException as error:
        raise NotifyParseError("Malformed headers: {}".format(error)) from error
    return method, path, headers


def _content_length(headers):
    """Return the declared ``Content-Length``, or `None` if there is none."""
    values = headers.get_all("content-length")
    if not values:
        return None
    values = {value.strip() for value in values}
    if len(values) != 1:
        raise NotifyParseError("Conflicting Content-Length headers: {}".format(values))
    value = values.pop()
    if not _CONTENT_LENGTH_RE.match(value):
        raise NotifyParseError("Invalid Content-Length: {!r}".format(value))
    try:
        return int(value)
    except ValueError as error:
        # Digit strings past the interpreter's conversion limit
        raise NotifyParseError(
            "Invalid Content-Length: {} digits".format(len(value))
        ) from error


class NotifyRequestParser:
    """Incrementally parses one HTTP request.

    Feed it bytes as they arrive. `feed` returns `None` until the request is
    complete, that is until the header block has been terminated and, if a
    ``Content-Length`` header is present, that many body bytes have been
    received. If there is no ``Content-Length`` header the body is whatever
    had been received when the header block was completed; no further bytes
    are waited for.

    Args:
        max_size (int): The largest request (headers and body) accepted.
            Defaults to `config.MAX_NOTIFY_BYTES`.
    """

    def __init__(self, max_size=None):
        self.max_size = config.MAX_NOTIFY_BYTES if max_size is None else max_size
        self._buffer = bytearray()
        self._head = None
        self._body_start = None
        self._content_length = None
        #: `NotifyRequest`: The request, once it is complete.
        self.request = None

    @property
    def buffered(self):
        """`int`: The number of bytes received so far."""
        return len(self._buffer)

    def feed(self, data):
        """Add bytes received from the connection.

        Args:
            data (bytes): The bytes.

        Returns:
            NotifyRequest: The request if it is now complete, else `None`.

        Raises:
            NotifyParseError: if the request is malformed or too large.
        """
        if self.request is not None:
            return self.request
        self._buffer.extend(data)

        if self._head is None:
            offsets = _find_header_end(self._buffer)
            if offsets is None:
                if len(self._buffer) > self.max_size:
                    raise NotifyParseError(
                        "Request exceeds {} bytes".format(self.max_size)
                    )
                # Partial header block, keep reading
                return None
            header_end, self._body_start = offsets
            self._head = _parse_head(bytes(self._buffer[:header_end]))
            self._content_length = _content_length(self._head[2])
            if (
                self._content_length is not None
                and self._body_start + self._content_length > self.max_size
            ):
                raise NotifyParseError(
                    "Content-Length {} exceeds the limit of {} bytes".format(
                        self._content_length, self.max_size
                    )
                )

        body = bytes(self._buffer[self._body_start :])
        if self._content_length is not None:
            if len(body) < self._content_length:
                return None
            # Bytes past the declared length are not part of the request
            body = body[: self._content_length]
        elif len(self._buffer) > self.max_size:
            raise NotifyParseError("Request exceeds {} bytes".format(self.max_size))

        method, path, headers = self._head
        self.request = NotifyRequest(method, path, headers, body)
        return self.request


async def read_notify_request(sock, max_size=None):
    """Read one request from a connected, non-blocking socket.

    Args:
        sock (socket.socket): The accepted connection.
        max_size (int): See `NotifyRequestParser`.

    Returns:
        NotifyRequest: the request.

    Raises:
        NotifyParseError: if the request is malformed, too large, or the
            peer closes the connection before it is complete.
        OSError: if reading from the socket fails.
    """
    loop = asyncio.get_event_loop()
    parser = NotifyRequestParser(max_size)
    while True:
        data = await loop.sock_recv(sock, CHUNK_SIZE)
        if not data:
            raise NotifyParseError(
                "Connection closed after {} bytes of an incomplete request".format(
                    parser.buffered
                )
            )
        request = parser.feed(data)
        if request is not None:
            log.debug(
                "Received %s %s (%d byte body)",
                request.method,
                request.path,
                len(request.body),
            )
            return request
