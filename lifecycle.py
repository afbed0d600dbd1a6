"""
订单状态机。

    PENDING(0) -> PAID(1) -> NOTIFY_FAILED(2)
    PENDING(0) -> CLOSED(-1)

所有状态变更都是带条件的 UPDATE（where state = 原状态），并发时先落库者生效，
后到者影响 0 行，按无操作处理。订单离开 PENDING 时同时释放 tmp_price 中占用的金额。
"""
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

import matcher
import reservations
from allocator import PriceAllocator, select_pay_target, to_amount, to_cents
from errors import (
    CapacityExhausted,
    DuplicateOrderError,
    InvalidStateTransition,
    MonitorOfflineError,
    NotFound,
    ValidationError,
)
from models import Order, OrderState
from settings_store import MONITOR_ONLINE, SettingStore

logger = logging.getLogger(__name__)

# 同一秒内订单号冲突时的重试次数
ORDER_ID_ATTEMPTS = 5
# 历史订单保留时长
HISTORY_SECONDS = 86400


@dataclass
class StatusReport:
    state: OrderState
    remaining_seconds: int
    timeout_minutes: int
    return_url: str
    param: str


def generate_order_id(now: Optional[int] = None) -> str:
    stamp = datetime.fromtimestamp(now or time.time()).strftime("%Y%m%d%H%M%S")
    return f"{stamp}{random.randint(10000, 99999)}"


def remaining_seconds(order: Order, timeout_minutes: int, now: int) -> int:
    return max(0, timeout_minutes * 60 - (now - order.create_date))


def get_order(db_sess: Session, order_id: str) -> Order:
    if not order_id:
        raise ValidationError("订单号不能为空")
    order = db_sess.exec(select(Order).where(Order.order_id == order_id)).first()
    if order is None:
        raise NotFound()
    return order


def _pay_id_taken(db_sess: Session, pay_id: str) -> bool:
    return db_sess.exec(select(Order.id).where(Order.pay_id == pay_id)).first() is not None


def _order_id_taken(db_sess: Session, order_id: str) -> bool:
    return db_sess.exec(select(Order.id).where(Order.order_id == order_id)).first() is not None


def _new_order_id(db_sess: Session, now: int) -> str:
    order_id = generate_order_id(now)
    for _ in range(ORDER_ID_ATTEMPTS):
        if not _order_id_taken(db_sess, order_id):
            break
        order_id = generate_order_id(now)
    return order_id


def create_order(db_sess: Session, *, pay_id: str, pay_type: int, price, param: str = "",
                 notify_url: str = "", return_url: str = "",
                 allocator: Optional[PriceAllocator] = None, now: Optional[int] = None) -> Order:
    now = now or int(time.time())
    settings = SettingStore(db_sess)

    if settings.monitor_state() != MONITOR_ONLINE:
        raise MonitorOfflineError()

    # 先关闭过期订单，释放其占用的金额
    sweep_expired(db_sess, now=now)

    if _pay_id_taken(db_sess, pay_id):
        raise DuplicateOrderError()

    allocator = allocator or PriceAllocator()
    for _ in range(ORDER_ID_ATTEMPTS):
        order_id = _new_order_id(db_sess, now)
        really_price = allocator.allocate(db_sess, price, pay_type, order_id, settings.adjust_direction())
        cents = to_cents(really_price)

        # 订单与金额占用视为一个整体，订单写入失败时只释放本次占用的金额
        try:
            pay_url, is_auto = select_pay_target(db_sess, really_price, pay_type)
            order = Order(
                order_id=order_id,
                pay_id=pay_id,
                type=int(pay_type),
                price=to_amount(price),
                really_price=really_price,
                state=OrderState.PENDING,
                is_auto=is_auto,
                pay_url=pay_url,
                notify_url=notify_url or settings.default_notify_url(),
                return_url=return_url or settings.default_return_url(),
                param=param or "",
                create_date=now,
            )
            db_sess.add(order)
            db_sess.commit()
        except IntegrityError:
            db_sess.rollback()
            reservations.release_key(db_sess, cents, pay_type, order_id)
            if _pay_id_taken(db_sess, pay_id):
                raise DuplicateOrderError()
            logger.warning("order id collision: order_id=%s, retrying", order_id)
            continue
        except Exception:
            db_sess.rollback()
            reservations.release_key(db_sess, cents, pay_type, order_id)
            raise

        db_sess.refresh(order)
        logger.info("order created: order_id=%s pay_id=%s price=%s really_price=%s",
                    order.order_id, order.pay_id, order.price, order.really_price)
        return order

    raise CapacityExhausted()


def _close_pending(db_sess: Session, order_ids: Iterable[str], now: int) -> int:
    stmt = (
        update(Order)
        .where(col(Order.order_id).in_(list(order_ids)))
        .where(Order.state == OrderState.PENDING)
        .values(state=int(OrderState.CLOSED), close_date=now)
        .execution_options(synchronize_session=False)
    )
    result = db_sess.exec(stmt)
    db_sess.commit()
    return result.rowcount


def mark_paid(db_sess: Session, order: Order, now: Optional[int] = None) -> bool:
    """PENDING -> PAID，返回是否由本次调用完成转换。"""
    now = now or int(time.time())
    result = db_sess.exec(
        update(Order)
        .where(Order.id == order.id)
        .where(Order.state == OrderState.PENDING)
        .values(state=int(OrderState.PAID), pay_date=now)
        .execution_options(synchronize_session=False)
    )
    db_sess.commit()
    if result.rowcount != 1:
        return False

    reservations.release(db_sess, order.order_id)
    db_sess.refresh(order)
    logger.info("order paid: order_id=%s really_price=%s", order.order_id, order.really_price)
    return True


def mark_notify_failed(db_sess: Session, order_id: str) -> bool:
    result = db_sess.exec(
        update(Order)
        .where(Order.order_id == order_id)
        .where(Order.state == OrderState.PAID)
        .values(state=int(OrderState.NOTIFY_FAILED))
        .execution_options(synchronize_session=False)
    )
    db_sess.commit()
    return result.rowcount == 1


def close_order(db_sess: Session, order_id: str, now: Optional[int] = None) -> Order:
    now = now or int(time.time())
    order = get_order(db_sess, order_id)
    if order.state != OrderState.PENDING:
        raise InvalidStateTransition()

    if _close_pending(db_sess, [order_id], now) != 1:
        # 被支付或超时关闭抢先
        raise InvalidStateTransition()

    reservations.release(db_sess, order_id)
    db_sess.refresh(order)
    logger.info("order closed: order_id=%s", order_id)
    return order


def delete_order(db_sess: Session, order_id: str) -> bool:
    """删除订单及其金额占用。订单不存在时返回 False，调用方按成功处理。"""
    order = db_sess.exec(select(Order).where(Order.order_id == order_id)).first()
    if order is None:
        reservations.release(db_sess, order_id)
        return False

    db_sess.exec(delete(Order).where(Order.id == order.id).execution_options(synchronize_session=False))
    db_sess.commit()
    reservations.release(db_sess, order_id)
    logger.info("order deleted: order_id=%s", order_id)
    return True


def delete_old_orders(db_sess: Session, max_age: int = HISTORY_SECONDS, now: Optional[int] = None) -> int:
    """删除创建时间早于 max_age 秒之前的订单，连同其金额占用。"""
    cutoff = (now or int(time.time())) - max_age
    order_ids = db_sess.exec(select(Order.order_id).where(Order.create_date < cutoff)).all()
    if not order_ids:
        return 0

    result = db_sess.exec(
        delete(Order)
        .where(col(Order.order_id).in_(order_ids))
        .execution_options(synchronize_session=False)
    )
    db_sess.commit()
    reservations.release_many(db_sess, order_ids)
    logger.info("deleted %s orders older than %ss", result.rowcount, max_age)
    return result.rowcount


def sweep_expired(db_sess: Session, timeout_minutes: Optional[int] = None, now: Optional[int] = None) -> int:
    """
    关闭所有超时的待支付订单并释放金额，随后清理孤立的占用记录。

    超时时间每次从 setting 表读取，不缓存。返回本次关闭的订单数。
    """
    now = now or int(time.time())
    minutes = timeout_minutes or SettingStore(db_sess).close_minutes()
    cutoff = now - minutes * 60

    expired_ids = db_sess.exec(
        select(Order.order_id)
        .where(Order.state == OrderState.PENDING)
        .where(Order.create_date <= cutoff)
    ).all()

    closed = 0
    if expired_ids:
        closed = _close_pending(db_sess, expired_ids, now)
        reservations.release_many(db_sess, expired_ids)
        logger.info("closed %s expired orders", closed)

    reservations.purge_orphans(db_sess, now=now)
    return closed


def check_status(db_sess: Session, order_id: str, now: Optional[int] = None) -> StatusReport:
    """
    查询订单状态。待支付但已超时的订单在这里直接关闭，
    轮询方不会看到超过期限仍为待支付的订单。
    """
    now = now or int(time.time())
    order = get_order(db_sess, order_id)
    minutes = SettingStore(db_sess).close_minutes()
    remaining = remaining_seconds(order, minutes, now)
    state = OrderState(order.state)

    if state == OrderState.PENDING and remaining <= 0:
        if _close_pending(db_sess, [order_id], now):
            reservations.release(db_sess, order_id)
            logger.info("order expired on status check: order_id=%s", order_id)
        db_sess.refresh(order)
        state = OrderState(order.state)

    if state != OrderState.PENDING:
        remaining = 0

    return StatusReport(
        state=state,
        remaining_seconds=remaining,
        timeout_minutes=minutes,
        return_url=order.return_url,
        param=order.param,
    )


def apply_payment(db_sess: Session, amount: Decimal, pay_type: int, now: Optional[int] = None) -> matcher.MatchResult:
    """
    处理监控端上报的到账：匹配待支付订单并置为已支付，匹配不到则记录无订单转账。

    商户回调不在这里发送，由调用方在响应监控端之后通过 notifier.dispatch 完成。
    """
    now = now or int(time.time())
    sweep_expired(db_sess, now=now)
    SettingStore(db_sess).record_payment(now)

    result = matcher.match(db_sess, amount, pay_type, now)
    if result.matched and not mark_paid(db_sess, result.order, now):
        # 订单在匹配后被关闭，款项照样入账
        result = matcher.MatchResult(
            order=matcher.record_unmatched(db_sess, amount, pay_type, now),
            matched=False,
        )
    return result
