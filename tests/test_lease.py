"""Tests for the lease module."""

import pytest

from zoneplayer.lease import Lease


def test_deadline_is_margin_before_expiry():
    lease = Lease.start(60, 10, now=1000.0)
    assert lease.deadline == 1050.0
    assert lease.expiry == 1060.0
    assert lease.deadline < lease.expiry


def test_until_deadline_counts_down_and_stops_at_zero():
    lease = Lease.start(60, 10, now=0.0)
    assert lease.until_deadline(0.0) == 50.0
    assert lease.until_deadline(49.5) == 0.5
    assert lease.until_deadline(50.0) == 0.0
    assert lease.until_deadline(75.0) == 0.0


def test_due_and_expired():
    lease = Lease.start(60, 10, now=0.0)
    assert not lease.is_due(49.9)
    assert lease.is_due(50.0)
    assert not lease.has_expired(59.9)
    assert lease.has_expired(60.0)
    assert lease.time_left(45.0) == 15.0
    assert lease.time_left(90.0) == 0.0


def test_renewed_restarts_from_renewal_time():
    lease = Lease.start(60, 10, now=0.0)
    renewed = lease.renewed(50.2)
    assert renewed.deadline == pytest.approx(100.2)
    assert renewed.granted == 60
    assert renewed.margin == 10
    # The original is untouched
    assert lease.deadline == 50.0


@pytest.mark.parametrize("margin", [60, 75, -1])
def test_margin_must_leave_time_to_renew(margin):
    with pytest.raises(ValueError):
        Lease.start(60, margin, now=0.0)
