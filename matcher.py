import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlmodel import Session, select

from models import Order, OrderState

logger = logging.getLogger(__name__)

UNMATCHED_PREFIX = "no-order-transfer"


@dataclass
class MatchResult:
    order: Order
    matched: bool


def find_pending(db_sess: Session, amount: Decimal, pay_type: int) -> Optional[Order]:
    # tmp_price 保证同一金额同一类型最多只有一个待支付订单
    return db_sess.exec(
        select(Order)
        .where(Order.really_price == amount)
        .where(Order.type == int(pay_type))
        .where(Order.state == OrderState.PENDING)
    ).first()


def record_unmatched(db_sess: Session, amount: Decimal, pay_type: int, now: Optional[int] = None) -> Order:
    """
    记录无订单转账：没有待支付订单对应的到账金额直接以已支付状态入库，
    notify_url 为空，不会回调任何商户，只用于对账。
    """
    now = now or int(time.time())
    placeholder = f"{UNMATCHED_PREFIX}-{now}-{uuid.uuid4().hex[:8]}"
    order = Order(
        order_id=placeholder,
        pay_id=placeholder,
        type=int(pay_type),
        price=amount,
        really_price=amount,
        state=OrderState.PAID,
        is_auto=0,
        param=UNMATCHED_PREFIX,
        create_date=now,
        pay_date=now,
    )
    db_sess.add(order)
    db_sess.commit()
    db_sess.refresh(order)
    logger.warning("unmatched transfer recorded: amount=%s type=%s id=%s", amount, pay_type, placeholder)
    return order


def match(db_sess: Session, amount: Decimal, pay_type: int, now: Optional[int] = None) -> MatchResult:
    order = find_pending(db_sess, amount, pay_type)
    if order is not None:
        return MatchResult(order=order, matched=True)
    return MatchResult(order=record_unmatched(db_sess, amount, pay_type, now), matched=False)
