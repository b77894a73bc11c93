"""Lease arithmetic for event subscriptions.

A device drops a subscription, silently, once its lease runs out. A `Lease`
records when the lease was granted and computes the deadline by which a
renewal must be sent, a safety margin ahead of the device's own expiry.

Times are plain numbers from a monotonic clock (normally
:meth:`asyncio.AbstractEventLoop.time`), passed in by the caller, so that
nothing here reads a clock itself.
"""

from collections import namedtuple


class Lease(namedtuple("LeaseBase", "granted, margin, started")):
    """A subscription lease.

    Attributes:
        granted (float): The length of the lease in seconds.
        margin (float): How many seconds before expiry to renew.
        started (float): The clock value at which the lease was granted.
    """

    __slots__ = ()

    @classmethod
    def start(cls, granted, margin, now):
        """Return a lease granted at ``now``.

        Raises:
            ValueError: if the margin does not leave a positive renewal
                interval.
        """
        if not 0 <= margin < granted:
            raise ValueError(
                "A margin of {}s leaves no time on a {}s lease".format(margin, granted)
            )
        return cls(granted, margin, now)

    def renewed(self, now):
        """Return the lease that follows a successful renewal at ``now``."""
        return self._replace(started=now)

    @property
    def deadline(self):
        """`float`: The clock value at which the lease should be renewed."""
        return self.started + self.granted - self.margin

    @property
    def expiry(self):
        """`float`: The clock value at which the device drops the
        subscription."""
        return self.started + self.granted

    def until_deadline(self, now):
        """Seconds left before the lease should be renewed, never negative."""
        return max(0.0, self.deadline - now)

    def time_left(self, now):
        """Seconds left before the lease expires, never negative."""
        return max(0.0, self.expiry - now)

    def is_due(self, now):
        return now >= self.deadline

    def has_expired(self, now):
        return now >= self.expiry
