import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlmodel import Session, select

import config
import reservations
from errors import CapacityExhausted, NoPaymentTarget
from models import PayQrcode, PayType
from settings_store import SettingStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_amount(price) -> Decimal:
    """金额统一四舍五入到分，订单金额与占用金额使用同一规则。"""
    return Decimal(str(price)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(price) -> int:
    return int(to_amount(price) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


class PriceAllocator:
    """
    为订单分配一个唯一的实际支付金额。

    个人收款码无法携带订单号，只能靠转账金额区分订单：
    同类型下每个待支付订单占用一个不同的金额（单位：分）。
    以请求金额为起点尝试占用，冲突时按 payQf 方向微调 step_cents 后重试，
    共 max_attempts 次，全部失败则抛出 CapacityExhausted。
    """

    def __init__(self, max_attempts: int = config.PRICE_RETRY_LIMIT,
                 step_cents: int = config.PRICE_STEP_CENTS):
        self.max_attempts = max_attempts
        self.step_cents = step_cents

    def allocate(self, db_sess: Session, price, pay_type: int, order_id: str,
                 direction: Optional[int] = None) -> Decimal:
        if direction is None:
            direction = SettingStore(db_sess).adjust_direction()

        cents = to_cents(price)
        for _ in range(self.max_attempts):
            # 递减模式下不能减到 0 分及以下
            if cents > 0 and reservations.reserve(db_sess, cents, pay_type, order_id):
                return from_cents(cents)
            cents += direction * self.step_cents

        logger.warning("price allocation exhausted: price=%s type=%s order=%s", price, pay_type, order_id)
        raise CapacityExhausted()


def select_pay_target(db_sess: Session, really_price: Decimal, pay_type: int) -> Tuple[str, int]:
    """
    选择收款码，返回 (pay_url, is_auto)。

    优先使用与实际金额完全一致的固定金额码（is_auto=0，扫码即带金额），
    否则使用该支付方式的通用收款码（is_auto=1，需要手动输入金额）。
    """
    qrcode = db_sess.exec(
        select(PayQrcode)
        .where(PayQrcode.price == really_price)
        .where(PayQrcode.type == int(pay_type))
        .where(PayQrcode.enabled == True)  # noqa: E712
    ).first()
    if qrcode and qrcode.pay_url:
        return qrcode.pay_url, 0

    pay_url = SettingStore(db_sess).catch_all_url(pay_type)
    if not pay_url:
        method_name = "微信" if int(pay_type) == PayType.WECHAT else "支付宝"
        raise NoPaymentTarget(f"暂无可用支付二维码，请在后台【系统设置】或【{method_name}二维码】中配置")
    return pay_url, 1
