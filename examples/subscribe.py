"""Print the events of one service of a ZonePlayer until interrupted.

Usage::

    python subscribe.py 192.168.1.102 [ServiceName]

ServiceName defaults to ZoneGroupTopology. Try AVTransport or
RenderingControl, and change tracks or volume.
"""

import asyncio
import logging
import sys

from zoneplayer import ServiceDescriptor


async def main(ip_address, service_name):
    service = ServiceDescriptor.for_zone_player(ip_address, service_name)
    async with await service.subscribe() as events:
        print("Subscribed to {}, sid: {}".format(service.service_id, events.sid))
        async for event in events:
            for name, value in event.variables.items():
                print("{}: {}".format(name, value))
        if events.error is not None:
            print("Subscription ended: {}".format(events.error))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) < 2:
        print("Specify the IP address of a zone player")
        sys.exit(1)
    NAME = sys.argv[2] if len(sys.argv) > 2 else "ZoneGroupTopology"
    try:
        asyncio.run(main(sys.argv[1], NAME))
    except KeyboardInterrupt:
        pass
