import hashlib
import hmac
from typing import Callable, Iterable


def md5_hex(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest().lower()


def create_order_sign(pay_id: str, param: str, pay_type, price: str, key: str) -> str:
    """
    商户创建订单签名：
    md5("payId=" + payId + "&param=" + param + "&type=" + type + "&price=" + price + "&key=" + key)

    price 使用商户提交的原始字符串，不做格式化。
    """
    sign_str = f"payId={pay_id}&param={param or ''}&type={pay_type}&price={price}&key={key}"
    return md5_hex(sign_str)


def heartbeat_sign(t: str, key: str) -> str:
    return md5_hex(f"{t}{key}")


def push_sign(pay_type: str, price: str, t: str, key: str) -> str:
    return md5_hex(f"{pay_type}{price}{t}{key}")


def notify_sign(pay_id: str, param: str, pay_type, price: str, really_price: str, key: str) -> str:
    """商户回调签名：md5(payId + param + type + price + reallyPrice + key)，拼接顺序固定。"""
    return md5_hex(f"{pay_id}{param or ''}{pay_type}{price}{really_price}{key}")


# 旧版监控端兼容：部分客户端版本会在字段两端带空白，按顺序逐个尝试。
# 只用于 appHeart / appPush，新接口不要扩展。
LEGACY_HEARTBEAT_SIGNS: list[Callable[[str, str], str]] = [
    lambda t, key: heartbeat_sign(t, key),
    lambda t, key: heartbeat_sign(t.strip(), key),
    lambda t, key: heartbeat_sign(t, key.strip()),
]

LEGACY_PUSH_SIGNS: list[Callable[[str, str, str, str], str]] = [
    lambda pay_type, price, t, key: push_sign(pay_type, price, t, key),
    lambda pay_type, price, t, key: push_sign(pay_type.strip(), price.strip(), t.strip(), key.strip()),
]


def sign_matches(sign: str, expected: str) -> bool:
    return hmac.compare_digest((sign or "").lower().encode("utf-8"), expected.lower().encode("utf-8"))


def matches_any(sign: str, candidates: Iterable[Callable[..., str]], *fields: str) -> bool:
    return any(sign_matches(sign, candidate(*fields)) for candidate in candidates)
