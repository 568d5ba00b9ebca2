import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from events import EventChannel


def test_delivery_in_registration_order():
    channel = EventChannel("test")
    seen = []
    channel.subscribe(lambda e: seen.append(("first", e)))
    channel.subscribe(lambda e: seen.append(("second", e)))
    channel.publish(1)
    assert seen == [("first", 1), ("second", 1)]


def test_failing_subscriber_does_not_block_others():
    channel = EventChannel("test")
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    channel.subscribe(broken)
    channel.subscribe(seen.append)
    channel.publish("online")
    assert seen == ["online"]


def test_unsubscribe_handle():
    channel = EventChannel("test")
    seen = []
    unsubscribe = channel.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    channel.publish(1)
    assert seen == []
    assert len(channel) == 0


def test_unsubscribe_during_publish():
    channel = EventChannel("test")
    seen = []
    handles = []

    def once(event):
        seen.append(event)
        handles[0]()

    handles.append(channel.subscribe(once))
    channel.publish(1)
    channel.publish(2)
    assert seen == [1]
