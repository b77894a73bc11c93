"""py.test hooks.

Add the --ip command line option, and skip all tests marked the with
'integration' marker unless the option is included
"""
import asyncio
import socket
from collections import namedtuple

import pytest
from aiohttp import web

from zoneplayer.services import ServiceDescriptor

SERVICE_TYPE = "urn:schemas-upnp-org:service:Service:1"
EVENT_PATH = "/Service/Event"


def pytest_addoption(parser):
    """Add the --ip commandline option"""
    parser.addoption(
        "--ip",
        type=str,
        default=None,
        action="store",
        dest="IP",
        help="the IP address for the zone to be used for the integration tests",
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: tests which need a real device, see --ip"
    )


def pytest_runtest_setup(item):
    """Skip tests marked 'integration' unless an ip address is given."""
    if "integration" in item.keywords and not item.config.getoption("--ip"):
        pytest.skip("use --ip and an ip address to run integration tests.")


def build_notify(body, sid=None, seq=0, content_length=True):
    """Return the bytes of a NOTIFY request carrying ``body``."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    lines = [
        "NOTIFY / HTTP/1.1",
        "HOST: 127.0.0.1",
        'CONTENT-TYPE: text/xml; charset="utf-8"',
        "NT: upnp:event",
        "NTS: upnp:propchange",
        "SEQ: {}".format(seq),
    ]
    if sid is not None:
        lines.append("SID: {}".format(sid))
    if content_length:
        lines.append("CONTENT-LENGTH: {}".format(len(body)))
    return ("\r\n".join(lines) + "\r\n\r\n").encode("ascii") + body


RecordedRequest = namedtuple("RecordedRequest", "method, headers, time")


class FakeDevice:
    """A device which answers SUBSCRIBE and UNSUBSCRIBE on 127.0.0.1, and
    records every request it gets."""

    # pylint: disable=too-many-instance-attributes

    def __init__(
        self,
        subscribe_status=200,
        renew_status=200,
        unsubscribe_status=200,
        sid="uuid:RINCON_000E58XXXX01400_sub0000000001",
        send_sid=True,
    ):
        self.subscribe_status = subscribe_status
        self.renew_status = renew_status
        self.unsubscribe_status = unsubscribe_status
        self.sid = sid
        self.send_sid = send_sid
        self.requests = []
        self.runner = None
        self.sock = None
        self.port = None

    async def handle(self, request):
        now = asyncio.get_event_loop().time()
        self.requests.append(RecordedRequest(request.method, request.headers.copy(), now))
        if request.method == "UNSUBSCRIBE":
            return web.Response(status=self.unsubscribe_status)
        if "SID" in request.headers:
            status = self.renew_status
        else:
            status = self.subscribe_status
        if status != 200:
            return web.Response(status=status, text="Nope")
        headers = {"TIMEOUT": "Second-60"}
        if self.send_sid:
            headers["SID"] = self.sid
        return web.Response(status=status, headers=headers)

    async def __aenter__(self):
        app = web.Application()
        app.add_routes(
            [
                web.route("SUBSCRIBE", EVENT_PATH, self.handle),
                web.route("UNSUBSCRIBE", EVENT_PATH, self.handle),
            ]
        )
        self.runner = web.AppRunner(app)
        await self.runner.setup()
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(20)
        self.port = self.sock.getsockname()[1]
        site = web.SockSite(self.runner, self.sock)
        await site.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.runner.cleanup()
        self.sock.close()

    @property
    def service(self):
        return ServiceDescriptor.from_base_url(
            "http://127.0.0.1:{}/xml/device_description.xml".format(self.port),
            SERVICE_TYPE,
            "/Service/Control",
            EVENT_PATH,
        )

    def requests_for(self, method, renewal=None):
        found = [r for r in self.requests if r.method == method]
        if renewal is not None:
            found = [r for r in found if ("SID" in r.headers) == renewal]
        return found

    @property
    def callback_address(self):
        """The (host, port) from the CALLBACK header of the first SUBSCRIBE."""
        callback = self.requests_for("SUBSCRIBE", renewal=False)[0].headers["CALLBACK"]
        host, port = callback.strip("<>")[len("http://") :].rsplit(":", 1)
        return host, int(port)

    async def connect(self):
        host, port = self.callback_address
        return await asyncio.open_connection(host, port)

    @staticmethod
    async def read_status(reader):
        status_line = await reader.readline()
        if not status_line:
            return None
        return int(status_line.split()[1])

    async def notify(self, body, **kwargs):
        """Send a NOTIFY on a new connection and return the response status.

        Keyword arguments are passed to `build_notify`. ``sid`` defaults to
        the device's SID.
        """
        kwargs.setdefault("sid", self.sid)
        reader, writer = await self.connect()
        try:
            writer.write(build_notify(body, **kwargs))
            await writer.drain()
            return await self.read_status(reader)
        finally:
            writer.close()

    async def wait_for_requests(self, method, count, timeout=5, renewal=None):
        """Poll until ``count`` requests with ``method`` have arrived."""
        loop = asyncio.get_event_loop()
        give_up = loop.time() + timeout
        while len(self.requests_for(method, renewal)) < count:
            if loop.time() > give_up:
                raise AssertionError(
                    "Expected {} {} requests, got {}".format(
                        count, method, self.requests_for(method, renewal)
                    )
                )
            await asyncio.sleep(0.02)
        return self.requests_for(method, renewal)


@pytest.fixture
def fake_device():
    return FakeDevice
