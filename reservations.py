import logging
import time
from typing import Iterable, Optional

from sqlalchemy import delete, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

import config
from models import Order, TmpPrice

logger = logging.getLogger(__name__)


def reservation_key(cents: int, pay_type: int) -> str:
    return f"{cents}-{int(pay_type)}"


def _insert_ignore(db_sess: Session, values: dict):
    dialect = db_sess.get_bind().dialect.name
    if dialect == "sqlite":
        return sqlite.insert(TmpPrice).values(**values).on_conflict_do_nothing(index_elements=["price"])
    if dialect == "postgresql":
        return postgresql.insert(TmpPrice).values(**values).on_conflict_do_nothing(index_elements=["price"])
    if dialect in ("mysql", "mariadb"):
        return insert(TmpPrice).values(**values).prefix_with("IGNORE")
    return None


def reserve(db_sess: Session, cents: int, pay_type: int, order_id: str, now: Optional[int] = None) -> bool:
    """
    占用金额：INSERT IGNORE 到 tmp_price，成功插入返回 True，已被占用返回 False。

    主键唯一性是唯一的并发控制手段，每次尝试单独提交。
    """
    values = {
        "price": reservation_key(cents, pay_type),
        "oid": order_id,
        "create_date": now or int(time.time()),
    }
    stmt = _insert_ignore(db_sess, values)
    if stmt is None:
        try:
            db_sess.exec(insert(TmpPrice).values(**values))
            db_sess.commit()
        except IntegrityError:
            db_sess.rollback()
            return False
        return True

    result = db_sess.exec(stmt)
    db_sess.commit()
    return result.rowcount == 1


def holder(db_sess: Session, cents: int, pay_type: int) -> Optional[str]:
    row = db_sess.get(TmpPrice, reservation_key(cents, pay_type))
    return row.oid if row else None


def release(db_sess: Session, order_id: str) -> int:
    result = db_sess.exec(delete(TmpPrice).where(TmpPrice.oid == order_id))
    db_sess.commit()
    return result.rowcount


def release_key(db_sess: Session, cents: int, pay_type: int, order_id: str) -> int:
    """只释放本次占用的那一个金额，订单号相同的其他记录不受影响。"""
    result = db_sess.exec(
        delete(TmpPrice)
        .where(TmpPrice.price == reservation_key(cents, pay_type))
        .where(TmpPrice.oid == order_id)
    )
    db_sess.commit()
    return result.rowcount


def release_many(db_sess: Session, order_ids: Iterable[str]) -> int:
    order_ids = list(order_ids)
    if not order_ids:
        return 0
    result = db_sess.exec(delete(TmpPrice).where(col(TmpPrice.oid).in_(order_ids)))
    db_sess.commit()
    return result.rowcount


def purge_orphans(db_sess: Session, now: Optional[int] = None,
                  grace: int = config.RESERVATION_GRACE_SECONDS) -> int:
    """删除订单已不存在的占用记录。刚插入、订单尚未写入的记录在 grace 秒内保留。"""
    cutoff = (now or int(time.time())) - grace
    stmt = (
        delete(TmpPrice)
        .where(TmpPrice.create_date < cutoff)
        .where(col(TmpPrice.oid).not_in(select(Order.order_id)))
        .execution_options(synchronize_session=False)
    )
    result = db_sess.exec(stmt)
    db_sess.commit()
    if result.rowcount:
        logger.info("purged %s orphan reservations", result.rowcount)
    return result.rowcount
