import logging
import time
from typing import Optional

from sqlmodel import Session, select

import config
from models import PayType, Setting
from signing import md5_hex

logger = logging.getLogger(__name__)

# jkstate 取值
MONITOR_ONLINE = "1"
MONITOR_OFFLINE = "0"
MONITOR_UNBOUND = "-1"

# 金额微调模式 payQf
ADJUST_INCREMENT = "1"
ADJUST_DECREMENT = "2"

CATCH_ALL_KEYS = {
    PayType.WECHAT: "wxpay",
    PayType.ALIPAY: "zfbpay",
}


class SettingStore:
    """
    setting 表的读写封装。

    每次调用都直接查库，不做进程内缓存，后台修改超时时间、密钥等配置后立即生效。
    """

    def __init__(self, db_sess: Session):
        self.db_sess = db_sess

    def get(self, key: str, default: str = "") -> str:
        row = self.db_sess.get(Setting, key)
        if row is None or row.vvalue is None:
            return default
        return row.vvalue

    def set(self, key: str, value) -> None:
        row = self.db_sess.get(Setting, key)
        if row is None:
            row = Setting(vkey=key, vvalue=str(value))
        else:
            row.vvalue = str(value)
        self.db_sess.add(row)
        self.db_sess.commit()

    def signing_key(self) -> str:
        return self.get("key")

    def close_minutes(self) -> int:
        try:
            minutes = int(self.get("close"))
        except ValueError:
            minutes = 0
        return minutes if minutes > 0 else config.DEFAULT_CLOSE_MINUTES

    def adjust_direction(self) -> int:
        """payQf: "1" 递增返回 1，"2" 递减返回 -1，未设置返回 0。"""
        mode = self.get("payQf")
        if mode == ADJUST_INCREMENT:
            return 1
        if mode == ADJUST_DECREMENT:
            return -1
        return 0

    def catch_all_url(self, pay_type: int) -> str:
        return self.get(CATCH_ALL_KEYS[PayType(pay_type)])

    def default_notify_url(self) -> str:
        return self.get("notifyUrl")

    def default_return_url(self) -> str:
        return self.get("returnUrl")

    def monitor_state(self) -> str:
        return self.get("jkstate", MONITOR_UNBOUND)

    def last_heart(self) -> int:
        return _as_int(self.get("lastheart"))

    def last_pay(self) -> int:
        return _as_int(self.get("lastpay"))

    def record_heartbeat(self, now: Optional[int] = None) -> None:
        self.set("lastheart", now or int(time.time()))
        self.set("jkstate", MONITOR_ONLINE)

    def record_payment(self, now: Optional[int] = None) -> None:
        self.set("lastpay", now or int(time.time()))

    def refresh_monitor_state(self, now: Optional[int] = None,
                              timeout: int = config.HEARTBEAT_TIMEOUT_SECONDS) -> int:
        """
        根据最后心跳时间刷新 jkstate。

        返回监控状态：0=从未心跳 1=正常 2=心跳超时。
        """
        now = now or int(time.time())
        heart = self.last_heart()
        current = self.monitor_state()

        if heart <= 0:
            if current != MONITOR_UNBOUND:
                self.set("jkstate", MONITOR_UNBOUND)
            return 0

        if now - heart < timeout:
            if current != MONITOR_ONLINE:
                self.set("jkstate", MONITOR_ONLINE)
            return 1

        if current != MONITOR_OFFLINE:
            logger.warning("monitor heartbeat lost, last heartbeat %ss ago", now - heart)
            self.set("jkstate", MONITOR_OFFLINE)
        return 2


def seed_settings(db_sess: Session, values: dict) -> None:
    """写入缺失的配置项；密钥为空时生成一个新的。"""
    existing = {row.vkey for row in db_sess.exec(select(Setting)).all()}
    for key, value in values.items():
        if key not in existing:
            db_sess.add(Setting(vkey=key, vvalue=value))
    db_sess.commit()

    store = SettingStore(db_sess)
    if not store.signing_key():
        new_key = md5_hex(str(int(time.time())))
        store.set("key", new_key)
        logger.warning("signing key was empty, generated a new one: %s", new_key)


def _as_int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
