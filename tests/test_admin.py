from decimal import Decimal

import pytest
from sqlmodel import Session, select

import config
import database
import lifecycle
from models import PayQrcode, TmpPrice
from settings_store import SettingStore

TOKEN = "admin-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture(autouse=True)
def admin_token(monkeypatch):
    monkeypatch.setattr(config, "ADMIN_TOKEN", TOKEN)


def _create(db_sess, pay_id, price="5.00"):
    return lifecycle.create_order(db_sess, pay_id=pay_id, pay_type=1, price=Decimal(price))


def test_admin_routes_require_token(client, configured):
    assert client.get("/api/order/list").status_code == 401
    assert client.get("/api/config/get", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_admin_routes_disabled_without_token(client, configured, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_TOKEN", "")
    assert client.get("/api/config/get", headers=AUTH).status_code == 401


def test_order_list_pages_and_filters(client, configured, db_sess):
    orders = [_create(db_sess, f"A{i}") for i in range(3)]
    lifecycle.close_order(db_sess, orders[0].order_id)

    data = client.get("/api/order/list", params={"page": 1, "limit": 2}, headers=AUTH).json()["data"]
    assert data["total"] == 3
    assert [item["pay_id"] for item in data["items"]] == ["A2", "A1"]
    assert data["items"][0]["type_text"] == "微信"
    assert data["items"][0]["state_text"] == "未支付"

    data = client.get("/api/order/list", params={"state": -1}, headers=AUTH).json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["pay_id"] == "A0"


def test_order_list_rejects_bad_paging(client, configured):
    body = client.get("/api/order/list", params={"page": 0}, headers=AUTH).json()
    assert body["code"] == 400


def test_order_detail(client, configured, db_sess):
    order = _create(db_sess, "A1")

    body = client.get("/api/order/detail", params={"id": order.id}, headers=AUTH).json()
    assert body["data"]["order_id"] == order.order_id
    assert body["data"]["really_price"] == 5.0

    body = client.get("/api/order/detail", params={"id": 999}, headers=AUTH).json()
    assert body == {"code": 400, "msg": "订单不存在", "data": None}


def test_delete_last_removes_old_orders_and_reservations(client, configured, db_sess, age_order, fetch_order):
    old = _create(db_sess, "A1")
    fresh = _create(db_sess, "A2")
    age_order(old.order_id, 2 * 86400)

    body = client.post("/api/order/deleteLast", headers=AUTH).json()

    assert body["data"] == {"count": 1}
    assert fetch_order(old.order_id) is None
    with Session(database.engine) as s:
        assert {row.oid for row in s.exec(select(TmpPrice)).all()} == {fresh.order_id}


def test_qrcode_add_list_bind_delete(client, configured):
    body = client.post("/api/qrcode/add", data={"type": "1", "pay_url": "wxp://fixed-5", "price": "5.00"},
                       headers=AUTH).json()
    assert body["code"] == 200
    qrcode_id = body["data"]["id"]
    client.post("/api/qrcode/add", data={"type": "2", "pay_url": "https://qr.alipay.com/x"}, headers=AUTH)

    data = client.get("/api/qrcode/list", params={"type": "1"}, headers=AUTH).json()["data"]
    assert data["total"] == 1
    assert data["items"][0]["price"] == 5.0
    assert data["items"][0]["state_text"] == "正常"

    body = client.post("/api/qrcode/bind", data={"id": qrcode_id, "state": "1"}, headers=AUTH).json()
    assert body["data"]["state_text"] == "禁用"
    with Session(database.engine) as s:
        assert s.get(PayQrcode, qrcode_id).enabled is False

    assert client.post("/api/qrcode/delete", data={"id": qrcode_id}, headers=AUTH).json()["code"] == 200
    body = client.post("/api/qrcode/delete", data={"id": qrcode_id}, headers=AUTH).json()
    assert body == {"code": 400, "msg": "二维码不存在", "data": None}


@pytest.mark.parametrize("form, msg", [
    ({"type": "3", "pay_url": "x"}, "支付类型错误"),
    ({"type": "1", "pay_url": ""}, "收款码不能为空"),
    ({"type": "1", "pay_url": "x", "price": "abc"}, "价格错误"),
])
def test_qrcode_add_validation(client, configured, form, msg):
    body = client.post("/api/qrcode/add", data=form, headers=AUTH).json()
    assert body == {"code": 400, "msg": msg, "data": None}


def test_added_fixed_qrcode_used_for_orders(client, configured, db_sess):
    client.post("/api/qrcode/add", data={"type": "1", "pay_url": "wxp://fixed-5", "price": "5.00"}, headers=AUTH)

    order = _create(db_sess, "A1")

    assert order.is_auto == 0
    assert order.pay_url == "wxp://fixed-5"


def test_config_get_and_save(client, configured):
    body = client.post("/api/config/save", headers=AUTH,
                       data={"close": "10", "payQf": "2", "jkstate": "1", "unknown": "x"}).json()
    assert body["data"] == {"saved": ["close", "payQf"]}

    data = client.get("/api/config/get", headers=AUTH).json()["data"]
    assert data["close"] == "10"
    assert data["payQf"] == "2"
    assert "unknown" not in data


def test_saved_settings_apply_immediately(client, configured, db_sess):
    client.post("/api/config/save", data={"payQf": "2"}, headers=AUTH)

    _create(db_sess, "A1")
    second = _create(db_sess, "A2")

    assert second.really_price == Decimal("4.99")


@pytest.mark.parametrize("form", [{"close": "0"}, {"close": "abc"}, {"payQf": "3"}, {"key": ""}])
def test_config_save_validation(client, configured, form):
    body = client.post("/api/config/save", data=form, headers=AUTH).json()

    assert body["code"] == 400
    with Session(database.engine) as s:
        store = SettingStore(s)
        assert store.get("close") == "5"
        assert store.get("payQf") == "1"
        assert store.get("key") == "k"


def test_config_save_requires_post(client, configured):
    assert client.get("/api/config/save", params={"close": "9"}, headers=AUTH).status_code == 405
    with Session(database.engine) as s:
        assert SettingStore(s).get("close") == "5"
