import time
from decimal import Decimal
from enum import IntEnum
from typing import Optional

from sqlmodel import SQLModel, Field


def now_ts() -> int:
    return int(time.time())


class PayType(IntEnum):
    WECHAT = 1
    ALIPAY = 2


class OrderState(IntEnum):
    CLOSED = -1
    PENDING = 0
    PAID = 1
    NOTIFY_FAILED = 2


STATE_TEXT = {
    OrderState.CLOSED: "已关闭",
    OrderState.PENDING: "未支付",
    OrderState.PAID: "已支付",
    OrderState.NOTIFY_FAILED: "通知失败",
}


class Order(SQLModel, table=True):
    __tablename__ = "pay_order"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(index=True, unique=True)      # 系统订单号，返回给支付页
    pay_id: str = Field(index=True, unique=True)        # 商户订单号，幂等键
    type: int                                           # 1=微信 2=支付宝
    price: Decimal = Field(max_digits=10, decimal_places=2)         # 商户请求金额
    really_price: Decimal = Field(max_digits=10, decimal_places=2, index=True)  # 实际需支付金额
    state: int = Field(default=OrderState.PENDING, index=True)
    is_auto: int = Field(default=1)                     # 1=通用码需手动输入金额，0=固定金额码
    pay_url: str = Field(default="")
    notify_url: str = Field(default="")
    return_url: str = Field(default="")
    param: str = Field(default="")
    create_date: int = Field(default_factory=now_ts, index=True)
    pay_date: int = Field(default=0)
    close_date: int = Field(default=0)

    @property
    def state_text(self) -> str:
        try:
            return STATE_TEXT[OrderState(self.state)]
        except ValueError:
            return "未知状态"


class TmpPrice(SQLModel, table=True):
    """金额占用表：主键为 "<分>-<类型>"，同一时刻一个金额只能被一个待支付订单占用。"""

    __tablename__ = "tmp_price"

    price: str = Field(primary_key=True)
    oid: str = Field(index=True)
    create_date: int = Field(default_factory=now_ts)


class PayQrcode(SQLModel, table=True):
    __tablename__ = "pay_qrcode"

    id: Optional[int] = Field(default=None, primary_key=True)
    type: int = Field(index=True)
    pay_url: str
    price: Decimal = Field(default=Decimal("0.00"), max_digits=10, decimal_places=2)  # 0 表示通用码
    enabled: bool = Field(default=True)


class Setting(SQLModel, table=True):
    __tablename__ = "setting"

    vkey: str = Field(primary_key=True)
    vvalue: str = Field(default="")
