"""Tests for the drop-oldest event channel."""

from __future__ import annotations

import threading

import pytest

from ThreadWatch.PageWatch.events import EventChannel, FoundNewImage, StopStatus, WaitStatus
from ThreadWatch.PageWatch.models import StopReason


def test_events_are_delivered_in_order():
    channel = EventChannel()
    received = []
    channel.subscribe(received.append)
    events = [WaitStatus("w", ms) for ms in range(50)]
    for event in events:
        channel.publish(event)

    assert channel.flush(timeout=2.0)
    assert received == events


def test_unsubscribe_stops_delivery():
    channel = EventChannel()
    received = []
    unsubscribe = channel.subscribe(received.append)
    channel.publish(FoundNewImage("w"))
    assert channel.flush(timeout=2.0)
    unsubscribe()
    channel.publish(FoundNewImage("w"))
    assert channel.flush(timeout=2.0)
    assert received == [FoundNewImage("w")]


def test_failing_subscriber_does_not_block_others(caplog):
    channel = EventChannel()
    received = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    channel.subscribe(broken)
    channel.subscribe(received.append)
    channel.publish(StopStatus("w", StopReason.USER_REQUEST))

    assert channel.flush(timeout=2.0)
    assert received == [StopStatus("w", StopReason.USER_REQUEST)]
    assert any("Event subscriber failed" in record.getMessage() for record in caplog.records)


def test_full_channel_drops_oldest_events():
    channel = EventChannel(max_pending=2)
    gate = threading.Event()
    entered = threading.Event()
    received = []

    def slow(event):
        if event.ms_until_next_check == 0:
            entered.set()
            gate.wait(5.0)
        received.append(event.ms_until_next_check)

    channel.subscribe(slow)
    channel.publish(WaitStatus("w", 0))
    assert entered.wait(2.0)
    for ms in (1, 2, 3, 4):
        channel.publish(WaitStatus("w", ms))
    gate.set()

    assert channel.flush(timeout=2.0)
    assert received == [0, 3, 4]
    assert channel.dropped == 2


def test_closed_channel_ignores_new_events():
    channel = EventChannel()
    received = []
    channel.subscribe(received.append)
    channel.publish(FoundNewImage("w"))
    channel.close(timeout=2.0)
    channel.publish(FoundNewImage("late"))
    assert received == [FoundNewImage("w")]


def test_invalid_buffer_size():
    with pytest.raises(ValueError):
        EventChannel(max_pending=0)
