import hmac

from fastapi import Header, HTTPException

import config


def require_admin(authorization: str = Header(default=None)) -> None:
    """后台接口鉴权：Authorization: Bearer <ADMIN_TOKEN>。未配置 ADMIN_TOKEN 时后台接口不可用。"""
    if not config.ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="Admin API disabled")
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode("utf-8"), config.ADMIN_TOKEN.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid token")
