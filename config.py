import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./vmq.db")
# 支付页前端地址，redirectUrl = FRONTEND_URL + "/#/payment/" + orderId
FRONTEND_URL = os.getenv("FRONTEND_URL", "").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
# 后台管理接口令牌，为空时后台接口全部拒绝
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "10"))

# 金额微调：最多尝试次数与每次调整的分数
PRICE_RETRY_LIMIT = int(os.getenv("PRICE_RETRY_LIMIT", "10"))
PRICE_STEP_CENTS = int(os.getenv("PRICE_STEP_CENTS", "1"))

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))
HEARTBEAT_TIMEOUT_SECONDS = int(os.getenv("HEARTBEAT_TIMEOUT_SECONDS", "180"))
RESERVATION_GRACE_SECONDS = int(os.getenv("RESERVATION_GRACE_SECONDS", "60"))

DEFAULT_CLOSE_MINUTES = 5

# 启动时写入 setting 表的初始值（已存在的行不会被覆盖）
SEED_SETTINGS = {
    "key": os.getenv("KEY", ""),
    "close": os.getenv("CLOSE_MINUTES", str(DEFAULT_CLOSE_MINUTES)),
    "payQf": os.getenv("PAY_QF", ""),
    "wxpay": os.getenv("WXPAY_URL", ""),
    "zfbpay": os.getenv("ZFBPAY_URL", ""),
    "notifyUrl": os.getenv("NOTIFY_URL", ""),
    "returnUrl": os.getenv("RETURN_URL", ""),
    "jkstate": "-1",
    "lastheart": "0",
    "lastpay": "0",
}
