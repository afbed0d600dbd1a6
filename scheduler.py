import logging
import threading
import time
from typing import Optional

from sqlmodel import Session

import config
import database
import lifecycle
from settings_store import SettingStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """
    定时任务：关闭过期订单、刷新监控端在线状态。

    在后台守护线程中每 interval 秒执行一次，启动时立即执行一次。
    checkOrder 仍会在查询时就地关闭超时订单，定时任务停掉也不影响正确性。
    """

    def __init__(self, interval: int = config.SWEEP_INTERVAL_SECONDS, engine=None):
        self.interval = interval
        self.engine = engine
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: Optional[int] = None) -> int:
        now = now or int(time.time())
        with Session(self.engine or database.engine) as db_sess:
            closed = lifecycle.sweep_expired(db_sess, now=now)
            SettingStore(db_sess).refresh_monitor_state(now=now)
        return closed

    def _loop(self) -> None:
        while True:
            started = time.monotonic()
            try:
                closed = self.run_once()
                logger.debug("sweep finished: closed=%s elapsed=%.2fms",
                             closed, (time.monotonic() - started) * 1000)
            except Exception:
                logger.exception("sweep failed")
            if self._stop.wait(self.interval):
                return

    def start(self) -> None:
        if self.interval <= 0 or self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()
        logger.info("expiry sweeper started, interval=%ss", self.interval)

    def stop(self) -> None:
        if not self.running:
            return
        self._stop.set()
        self._thread.join(timeout=5)
        self._thread = None
        logger.info("expiry sweeper stopped")
