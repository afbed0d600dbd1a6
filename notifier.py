import logging
from urllib.parse import urlencode

import requests
from sqlmodel import Session, select

import config
import database
import lifecycle
from errors import AuthError, ValidationError
from models import Order, OrderState
from settings_store import SettingStore
from signing import notify_sign

logger = logging.getLogger(__name__)

SUCCESS_BODY = "success"


def build_notify_params(order: Order, key: str) -> dict:
    """回调参数：payId、param、type、price、reallyPrice 与 sign，金额统一保留两位小数。"""
    price = f"{order.price:.2f}"
    really_price = f"{order.really_price:.2f}"
    param = order.param or ""
    return {
        "payId": order.pay_id,
        "param": param,
        "type": order.type,
        "price": price,
        "reallyPrice": really_price,
        "sign": notify_sign(order.pay_id, param, order.type, price, really_price, key),
    }


def append_query(url: str, params: dict) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


def send_notify(order: Order, key: str, method: str = "GET", timeout: float = config.NOTIFY_TIMEOUT) -> bool:
    """
    向商户 notify_url 发送一次回调，不重试。

    只有响应内容恰好为 "success" 才算成功，超时和网络错误都视为失败。
    """
    params = build_notify_params(order, key)
    url = append_query(order.notify_url, params)
    try:
        if method.upper() == "POST":
            resp = requests.post(url, data=params, timeout=timeout)
        else:
            resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.warning("notify %s failed: %r", order.order_id, e)
        return False

    if resp.text != SUCCESS_BODY:
        logger.warning("notify %s not acknowledged: status=%s body=%.200r",
                       order.order_id, resp.status_code, resp.text)
        return False

    logger.info("notify %s delivered", order.order_id)
    return True


def dispatch(order_id: str, method: str = "GET") -> bool:
    """
    后台回调入口，在监控端收到响应之后执行。

    使用独立的数据库会话；回调失败时订单转为 NOTIFY_FAILED，不向外抛出异常。
    """
    try:
        with Session(database.engine) as db_sess:
            order = db_sess.exec(select(Order).where(Order.order_id == order_id)).first()
            if order is None or not order.notify_url or order.state != OrderState.PAID:
                return False

            key = SettingStore(db_sess).signing_key()
            delivered = send_notify(order, key, method)
            if not delivered:
                lifecycle.mark_notify_failed(db_sess, order_id)
            return delivered
    except Exception:
        logger.exception("notify dispatch for %s crashed", order_id)
        return False


def build_return_url(db_sess: Session, order_id: str) -> str:
    """生成带签名的商户返回地址，字段与签名同回调一致。"""
    order = lifecycle.get_order(db_sess, order_id)
    key = SettingStore(db_sess).signing_key()
    if not key:
        raise AuthError("系统未配置密钥")
    if not order.return_url:
        raise ValidationError("订单没有配置返回URL")
    if order.state not in (OrderState.PAID, OrderState.NOTIFY_FAILED):
        raise ValidationError("订单未支付")
    return append_query(order.return_url, build_notify_params(order, key))
