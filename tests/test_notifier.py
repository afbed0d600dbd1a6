from decimal import Decimal

import pytest
import requests

import lifecycle
import notifier
from errors import AuthError, ValidationError
from models import Order, OrderState


class FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code


@pytest.fixture
def calls(monkeypatch):
    """记录发出的回调请求，响应内容由 calls.reply 决定。"""
    class Recorder(list):
        reply = "success"

    recorder = Recorder()

    def fake_get(url, timeout=None):
        recorder.append(("GET", url, None))
        return _answer(recorder.reply)

    def fake_post(url, data=None, timeout=None):
        recorder.append(("POST", url, data))
        return _answer(recorder.reply)

    def _answer(reply):
        if isinstance(reply, Exception):
            raise reply
        return FakeResponse(reply)

    monkeypatch.setattr(notifier.requests, "get", fake_get)
    monkeypatch.setattr(notifier.requests, "post", fake_post)
    return recorder


def _paid_order(db_sess, notify_url="http://m.test/notify", return_url="http://m.test/return"):
    order = lifecycle.create_order(
        db_sess, pay_id="p1", pay_type=1, price=Decimal("10.00"),
        notify_url=notify_url, return_url=return_url,
    )
    lifecycle.mark_paid(db_sess, order)
    return order


def test_notify_params_use_two_decimals():
    order = Order(order_id="o1", pay_id="p1", type=1, price=Decimal("10"), really_price=Decimal("10.01"))

    params = notifier.build_notify_params(order, "k")

    assert params == {
        "payId": "p1",
        "param": "",
        "type": 1,
        "price": "10.00",
        "reallyPrice": "10.01",
        "sign": "58e894508132552bbff99875d67b7628",
    }


def test_append_query_keeps_existing_query():
    assert notifier.append_query("http://m.test/n", {"a": "1"}) == "http://m.test/n?a=1"
    assert notifier.append_query("http://m.test/n?x=y", {"a": "1"}) == "http://m.test/n?x=y&a=1"


def test_send_notify_get(calls):
    order = Order(order_id="o1", pay_id="p1", type=1, price=Decimal("10.00"),
                  really_price=Decimal("10.01"), notify_url="http://m.test/notify")

    assert notifier.send_notify(order, "k")

    method, url, body = calls[0]
    assert method == "GET"
    assert url.startswith("http://m.test/notify?payId=p1&")
    assert "sign=58e894508132552bbff99875d67b7628" in url
    assert body is None


def test_send_notify_post_sends_form_body(calls):
    order = Order(order_id="o1", pay_id="p1", type=1, price=Decimal("10.00"),
                  really_price=Decimal("10.01"), notify_url="http://m.test/notify")

    assert notifier.send_notify(order, "k", method="POST")

    method, url, body = calls[0]
    assert method == "POST"
    assert "reallyPrice=10.01" in url
    assert body["sign"] == "58e894508132552bbff99875d67b7628"


@pytest.mark.parametrize("reply", ["fail", "SUCCESS", " success", ""])
def test_send_notify_requires_exact_success(calls, reply):
    calls.reply = reply
    order = Order(order_id="o1", pay_id="p1", type=1, price=Decimal("1.00"),
                  really_price=Decimal("1.00"), notify_url="http://m.test/notify")

    assert not notifier.send_notify(order, "k")


def test_send_notify_timeout_is_failure(calls):
    calls.reply = requests.Timeout("read timed out")
    order = Order(order_id="o1", pay_id="p1", type=1, price=Decimal("1.00"),
                  really_price=Decimal("1.00"), notify_url="http://m.test/notify")

    assert not notifier.send_notify(order, "k")


def test_dispatch_success_keeps_paid(db_sess, configured, calls, fetch_order):
    order = _paid_order(db_sess)

    assert notifier.dispatch(order.order_id)

    assert len(calls) == 1
    assert fetch_order(order.order_id).state == OrderState.PAID


def test_dispatch_failure_marks_notify_failed(db_sess, configured, calls, fetch_order):
    calls.reply = "fail"
    order = _paid_order(db_sess)

    assert not notifier.dispatch(order.order_id, "POST")

    assert calls[0][0] == "POST"
    assert fetch_order(order.order_id).state == OrderState.NOTIFY_FAILED


def test_dispatch_skips_unpaid_and_urlless_orders(db_sess, configured, calls):
    pending = lifecycle.create_order(db_sess, pay_id="p2", pay_type=1, price=Decimal("3.00"),
                                     notify_url="http://m.test/notify")
    silent = _paid_order(db_sess, notify_url="")

    assert not notifier.dispatch(pending.order_id)
    assert not notifier.dispatch(silent.order_id)
    assert not notifier.dispatch("missing")
    assert calls == []


def test_dispatch_does_not_raise(db_sess, configured, monkeypatch):
    order = _paid_order(db_sess)

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(notifier, "send_notify", boom)

    assert not notifier.dispatch(order.order_id)


def test_return_url_is_signed(db_sess, configured):
    order = _paid_order(db_sess)

    url = notifier.build_return_url(db_sess, order.order_id)

    assert url.startswith("http://m.test/return?payId=p1&")
    assert "price=10.00" in url
    assert "reallyPrice=10.00" in url


def test_return_url_requires_paid_order(db_sess, configured):
    order = lifecycle.create_order(db_sess, pay_id="p1", pay_type=1, price=Decimal("10.00"),
                                   return_url="http://m.test/return")

    with pytest.raises(ValidationError):
        notifier.build_return_url(db_sess, order.order_id)


def test_return_url_requires_key(db_sess, configured):
    order = _paid_order(db_sess)
    configured.set("key", "")

    with pytest.raises(AuthError):
        notifier.build_return_url(db_sess, order.order_id)
