import pytest
import requests

from coach_core.alerts import AlertRouter
from coach_core.events import ERROR, RULE_ADAPTED, STATE_UPDATED, EventLog


def test_unknown_event_type_is_rejected():
    with pytest.raises(ValueError):
        EventLog().emit("mystery", "nope")


def test_events_are_bounded_and_drained():
    log = EventLog(capacity=10)
    for index in range(15):
        log.emit(STATE_UPDATED, f"snapshot {index}")
    log.error("bad thing", component="test")

    assert len(log.events()) == 10
    assert log.counts == {STATE_UPDATED: 15, ERROR: 1}
    assert log.events(ERROR)[0].payload == {"component": "test"}

    drained = log.drain()
    assert len(drained) == 10
    assert log.events() == []


def test_alert_router_filters_event_types():
    router = AlertRouter(webhook_url="http://hooks.local/coach", event_types_csv="error, rule-adapted")
    assert router.should_send(ERROR)
    assert router.should_send(RULE_ADAPTED)
    assert not router.should_send(STATE_UPDATED)
    assert not AlertRouter(webhook_url="", event_types_csv="error").should_send(ERROR)


def test_alert_router_posts_payload(monkeypatch):
    sent = []

    class Response:
        def raise_for_status(self):
            return None

    def fake_post(url, json, timeout):
        sent.append((url, json, timeout))
        return Response()

    monkeypatch.setattr(requests, "post", fake_post)
    router = AlertRouter(webhook_url="http://hooks.local/coach", event_types_csv="error", timeout=3)
    router.send(ERROR, "boom", {"component": "x"})
    router.send(STATE_UPDATED, "ignored", {})

    assert sent == [
        (
            "http://hooks.local/coach",
            {"event_type": "error", "message": "boom", "metadata": {"component": "x"}},
            3,
        )
    ]


def test_alert_failure_does_not_break_emit(monkeypatch):
    def fake_post(url, json, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests, "post", fake_post)
    log = EventLog(alerts=AlertRouter(webhook_url="http://hooks.local/coach", event_types_csv="error"))

    event = log.error("still recorded")

    assert event.event_type == ERROR
    assert len(log.events(ERROR)) == 1
