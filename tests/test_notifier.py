import hashlib

import pytest
import requests

from notifier import EventNotifier, OrderEvent, generate_event_id, hash_identifier
from settings import NotifierConfig

CONFIG = NotifierConfig(pixel_code="PIXEL123", access_token="token-abc", timeout=10)


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse({"code": 0, "message": "OK"})
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def make_event(**overrides):
    fields = dict(
        order_id="ORD-20260101-ABCDEF1234",
        value=1149,
        quantity=3,
        mobile="017-1111 1111",
        event_id="1767225600000-a1b2c3",
        page_url="https://shop.example.com/order-now",
        ip="203.0.113.9",
        user_agent="pytest",
    )
    fields.update(overrides)
    return OrderEvent(**fields)


def test_hash_identifier_normalizes_phone_numbers():
    expected = hashlib.sha256(b"01711111111").hexdigest()
    assert hash_identifier(" 017-1111 1111 ", phone=True) == expected
    assert hash_identifier("User@Example.com") == hashlib.sha256(b"user@example.com").hexdigest()


def test_generated_event_ids_differ():
    assert generate_event_id() != generate_event_id()


def test_payload_carries_order_and_dedup_key():
    notifier = EventNotifier(CONFIG, http=FakeHttp())
    payload = notifier.build_payload(make_event())
    event = payload["data"][0]
    assert event["pixel_code"] == "PIXEL123"
    assert event["event"] == "CompletePayment"
    assert event["event_id"] == "1767225600000-a1b2c3"
    assert event["context"]["ad"]["callback"] == "1767225600000-a1b2c3"
    assert event["context"]["user"]["phone_number"] == hashlib.sha256(b"01711111111").hexdigest()
    assert "01711111111" not in str(payload)
    assert event["properties"]["order_id"] == "ORD-20260101-ABCDEF1234"
    assert event["properties"]["value"] == 1149
    assert event["properties"]["quantity"] == 3
    assert event["properties"]["currency"] == "BDT"
    assert event["context"]["page"]["url"] == "https://shop.example.com/order-now"


def test_send_posts_once_with_token_and_timeout():
    http = FakeHttp()
    notifier = EventNotifier(CONFIG, http=http)
    assert notifier.send(make_event()) is True
    assert len(http.calls) == 1
    url, kwargs = http.calls[0]
    assert url == CONFIG.endpoint
    assert kwargs["headers"] == {"Access-Token": "token-abc"}
    assert kwargs["timeout"] == 10


def test_send_is_skipped_without_credentials():
    http = FakeHttp()
    notifier = EventNotifier(NotifierConfig(), http=http)
    assert notifier.send(make_event()) is False
    assert http.calls == []


@pytest.mark.parametrize(
    "http",
    [
        FakeHttp(error=requests.Timeout("slow")),
        FakeHttp(error=requests.ConnectionError("down")),
        FakeHttp(response=FakeResponse({"code": 40001, "message": "bad pixel"})),
        FakeHttp(response=FakeResponse({}, status_code=502)),
        FakeHttp(response=FakeResponse(ValueError("not json"))),
        FakeHttp(response=FakeResponse(["x"])),
        FakeHttp(response=FakeResponse(None)),
        FakeHttp(response=FakeResponse("ok")),
    ],
)
def test_send_failures_are_swallowed(http):
    notifier = EventNotifier(CONFIG, http=http)
    assert notifier.send(make_event()) is False
    assert len(http.calls) == 1


def test_notify_order_placed_hands_work_to_dispatcher():
    dispatched = []
    http = FakeHttp()
    notifier = EventNotifier(CONFIG, http=http, dispatcher=dispatched.append)
    notifier.notify_order_placed(make_event())
    assert http.calls == []
    assert len(dispatched) == 1
    dispatched[0]()
    assert len(http.calls) == 1


def test_notify_order_placed_never_raises():
    def broken_dispatcher(task):
        raise RuntimeError("no threads left")

    notifier = EventNotifier(CONFIG, http=FakeHttp(), dispatcher=broken_dispatcher)
    notifier.notify_order_placed(make_event())


def test_background_dispatch_runs_the_send():
    http = FakeHttp()
    notifier = EventNotifier(CONFIG, http=http)
    threads = []

    def tracking_dispatcher(task):
        from notifier import run_in_background

        threads.append(run_in_background(task))

    notifier.dispatcher = tracking_dispatcher
    notifier.notify_order_placed(make_event())
    threads[0].join(timeout=5)
    assert len(http.calls) == 1
