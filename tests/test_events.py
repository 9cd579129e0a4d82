"""Tests for the notification bus."""

from batch_imagegen.events import ALL_SUBJECTS, NotificationBus
from batch_imagegen.models import BatchTask, BatchTaskConfig


def make_task():
    return BatchTask(name="events", config=BatchTaskConfig(model="m"))


def test_publish_reaches_subject_listeners_only():
    bus = NotificationBus()
    received = []
    bus.subscribe("a", received.append)
    bus.subscribe("b", lambda value: received.append(("b", value)))

    assert bus.publish("a", 1) == 1
    assert received == [1]


def test_unsubscribe_stops_delivery():
    bus = NotificationBus()
    received = []
    unsubscribe = bus.subscribe("a", received.append)

    unsubscribe()
    unsubscribe()
    bus.publish("a", 1)
    assert received == []
    assert bus.listener_count("a") == 0


def test_listeners_receive_snapshots():
    bus = NotificationBus()
    received = []
    bus.subscribe("task", received.append)
    task = make_task()

    bus.publish("task", task)
    task.name = "renamed"
    received[0].error = "listener mutation"

    assert received[0].name == "events"
    assert task.error is None


def test_failing_listener_does_not_block_others():
    bus = NotificationBus()
    received = []

    def broken(_value):
        raise RuntimeError("listener bug")

    bus.subscribe("a", broken)
    bus.subscribe("a", received.append)

    assert bus.publish("a", "payload") == 2
    assert received == ["payload"]


def test_wildcard_listener_gets_subject():
    bus = NotificationBus()
    received = []
    bus.subscribe(ALL_SUBJECTS, lambda subject, *payload: received.append((subject, payload)))

    bus.publish("job-1", 0.5, 100.0)
    assert received == [("job-1", (0.5, 100.0))]


def test_clear_drops_subject_listeners():
    bus = NotificationBus()
    bus.subscribe("a", lambda _value: None)
    bus.subscribe("a", lambda _value: None)
    assert bus.listener_count("a") == 2

    bus.clear("a")
    assert bus.publish("a", 1) == 0
