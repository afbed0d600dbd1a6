import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["FRONTEND_URL"] = "http://pay.test"

import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, select

import database
import main
from models import Order
from settings_store import SettingStore

KEY = "k"
WXPAY_URL = "wxp://f2f0catchall"
ZFBPAY_URL = "https://qr.alipay.com/catchall"


@pytest.fixture(autouse=True)
def tables():
    database.create_db_and_tables()
    yield
    SQLModel.metadata.drop_all(database.engine)


@pytest.fixture
def db_sess():
    with Session(database.engine) as db_sess:
        yield db_sess


@pytest.fixture
def configured(db_sess):
    """密钥、超时、通用收款码齐全，监控端在线。"""
    store = SettingStore(db_sess)
    values = {
        "key": KEY,
        "close": "5",
        "payQf": "1",
        "wxpay": WXPAY_URL,
        "zfbpay": ZFBPAY_URL,
        "notifyUrl": "",
        "returnUrl": "",
        "jkstate": "1",
        "lastheart": str(int(time.time())),
        "lastpay": "0",
    }
    for key, value in values.items():
        store.set(key, value)
    return store


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def fetch_order():
    def fetch(order_id):
        with Session(database.engine) as db_sess:
            return db_sess.exec(select(Order).where(Order.order_id == order_id)).first()
    return fetch


@pytest.fixture
def age_order():
    """把订单创建时间往前挪 seconds 秒。"""
    def age(order_id, seconds):
        with Session(database.engine) as db_sess:
            order = db_sess.exec(select(Order).where(Order.order_id == order_id)).one()
            order.create_date -= seconds
            db_sess.add(order)
            db_sess.commit()
    return age
