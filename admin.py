"""后台管理：订单列表、收款码维护、系统设置读写。"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from errors import NotFound, ValidationError
from models import Order, PayQrcode, PayType, Setting
from settings_store import ADJUST_DECREMENT, ADJUST_INCREMENT, SettingStore

logger = logging.getLogger(__name__)

# 后台允许修改的配置项，jkstate/lastheart/lastpay 只由监控端写入
EDITABLE_SETTINGS = ("notifyUrl", "returnUrl", "key", "close", "payQf", "wxpay", "zfbpay")

TYPE_TEXT = {PayType.WECHAT: "微信", PayType.ALIPAY: "支付宝"}


def type_text(pay_type: int) -> str:
    return TYPE_TEXT.get(pay_type, "未知")


def paging(page, limit) -> tuple:
    try:
        page, limit = int(page or 1), int(limit or 10)
    except (TypeError, ValueError):
        raise ValidationError("分页参数错误")
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError("分页参数错误")
    return page, limit


def order_row(order: Order) -> dict:
    row = order.model_dump()
    row["price"] = float(order.price)
    row["really_price"] = float(order.really_price)
    row["create_time"] = datetime.fromtimestamp(order.create_date).strftime("%Y-%m-%d %H:%M:%S")
    row["state_text"] = order.state_text
    row["type_text"] = type_text(order.type)
    return row


def list_orders(db_sess: Session, page: int = 1, limit: int = 10, state: Optional[int] = None) -> dict:
    query = select(Order)
    count = select(func.count()).select_from(Order)
    if state is not None:
        query = query.where(Order.state == state)
        count = count.where(Order.state == state)

    total = db_sess.exec(count).one()
    orders = db_sess.exec(
        query.order_by(Order.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return {"total": total, "items": [order_row(o) for o in orders]}


def order_detail(db_sess: Session, id: int) -> dict:
    order = db_sess.get(Order, id)
    if order is None:
        raise NotFound()
    return order_row(order)


def qrcode_row(qrcode: PayQrcode) -> dict:
    row = qrcode.model_dump()
    row["price"] = float(qrcode.price)
    row["type_text"] = type_text(qrcode.type)
    row["state_text"] = "正常" if qrcode.enabled else "禁用"
    return row


def list_qrcodes(db_sess: Session, page: int = 1, limit: int = 10, pay_type: Optional[int] = None) -> dict:
    query = select(PayQrcode)
    count = select(func.count()).select_from(PayQrcode)
    if pay_type is not None:
        query = query.where(PayQrcode.type == pay_type)
        count = count.where(PayQrcode.type == pay_type)

    total = db_sess.exec(count).one()
    qrcodes = db_sess.exec(
        query.order_by(PayQrcode.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return {"total": total, "items": [qrcode_row(q) for q in qrcodes]}


def add_qrcode(db_sess: Session, pay_type: int, pay_url: str, price: Decimal) -> PayQrcode:
    """price 为 0 表示不限金额。"""
    if not pay_url:
        raise ValidationError("收款码不能为空")
    qrcode = PayQrcode(type=pay_type, pay_url=pay_url, price=price, enabled=True)
    db_sess.add(qrcode)
    db_sess.commit()
    db_sess.refresh(qrcode)
    logger.info("qrcode added: id=%s type=%s price=%s", qrcode.id, qrcode.type, qrcode.price)
    return qrcode


def _get_qrcode(db_sess: Session, id: int) -> PayQrcode:
    qrcode = db_sess.get(PayQrcode, id)
    if qrcode is None:
        raise NotFound("二维码不存在")
    return qrcode


def delete_qrcode(db_sess: Session, id: int) -> None:
    db_sess.delete(_get_qrcode(db_sess, id))
    db_sess.commit()
    logger.info("qrcode deleted: id=%s", id)


def bind_qrcode(db_sess: Session, id: int, enabled: bool) -> PayQrcode:
    qrcode = _get_qrcode(db_sess, id)
    qrcode.enabled = enabled
    db_sess.add(qrcode)
    db_sess.commit()
    db_sess.refresh(qrcode)
    return qrcode


def get_settings(db_sess: Session) -> dict:
    return {row.vkey: row.vvalue for row in db_sess.exec(select(Setting)).all()}


def save_settings(db_sess: Session, values: dict) -> list:
    """只保存 EDITABLE_SETTINGS 中的项，其余参数忽略。返回实际写入的键。"""
    updates = {k: str(v).strip() for k, v in values.items() if k in EDITABLE_SETTINGS}

    if "close" in updates:
        if not updates["close"].isdigit() or int(updates["close"]) <= 0:
            raise ValidationError("订单有效期必须为正整数（分钟）")
    if "payQf" in updates and updates["payQf"] not in ("", ADJUST_INCREMENT, ADJUST_DECREMENT):
        raise ValidationError("金额微调方式错误")
    if "key" in updates and not updates["key"]:
        raise ValidationError("通讯密钥不能为空")

    store = SettingStore(db_sess)
    for key, value in updates.items():
        store.set(key, value)
    if updates:
        logger.info("settings updated: %s", ", ".join(sorted(updates)))
    return sorted(updates)
