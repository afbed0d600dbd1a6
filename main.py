import json
import logging
from decimal import Decimal, InvalidOperation

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

import admin
import config
import database
import lifecycle
import notifier
from allocator import CENT, to_amount
from errors import AuthError, ValidationError, VmqError
from models import OrderState, PayType, now_ts
from scheduler import ExpirySweeper
from security import require_admin
from settings_store import SettingStore, seed_settings
from signing import (
    LEGACY_HEARTBEAT_SIGNS,
    LEGACY_PUSH_SIGNS,
    create_order_sign,
    heartbeat_sign,
    matches_any,
    push_sign,
    sign_matches,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SERVER_ERROR_MSG = "服务器处理请求时发生错误，请稍后重试"
# 金额列为 Numeric(10, 2)，上限留出微调余量
MAX_PRICE = Decimal("9999999.99")

app = FastAPI(title="vmq")
sweeper = ExpirySweeper()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    # 创建数据库表并写入缺失的配置项
    database.create_db_and_tables()
    with Session(database.engine) as db_sess:
        seed_settings(db_sess, config.SEED_SETTINGS)
    sweeper.start()


@app.on_event("shutdown")
def on_shutdown():
    sweeper.stop()


@app.exception_handler(VmqError)
async def vmq_error_handler(request: Request, exc: VmqError):
    return JSONResponse({"code": 400, "msg": exc.msg, "data": None})


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("store error on %s", request.url.path, exc_info=exc)
    return JSONResponse({"code": 500, "msg": SERVER_ERROR_MSG, "data": None})


def success(data=None, msg: str = "成功") -> dict:
    return {"code": 200, "msg": msg, "data": data}


def legacy_result(ok: bool, msg: str) -> dict:
    return {"code": 1 if ok else -1, "msg": msg}


async def read_params(request: Request) -> dict:
    """合并 query string 与表单 / JSON 请求体，值统一转成字符串。"""
    params = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                body = await request.json()
            except ValueError:
                raise ValidationError("请求格式错误")
            if isinstance(body, dict):
                params.update(body)
        else:
            form = await request.form()
            params.update(form)
    return {k: str(v) for k, v in params.items() if v is not None}


def require(params: dict, *names: str) -> None:
    if any(not params.get(name) for name in names):
        raise ValidationError("缺少必要参数")


def parse_type(value: str) -> int:
    try:
        pay_type = int(value)
    except (TypeError, ValueError):
        raise ValidationError("支付类型错误")
    if pay_type not in (PayType.WECHAT, PayType.ALIPAY):
        raise ValidationError("支付类型错误")
    return pay_type


def parse_price(value: str) -> Decimal:
    try:
        price = Decimal(value)
    except (TypeError, InvalidOperation):
        raise ValidationError("价格错误")
    if not price.is_finite() or price <= 0 or price > MAX_PRICE:
        raise ValidationError("价格错误")
    if price != price.quantize(CENT):
        raise ValidationError("价格最多保留两位小数")
    return price


def verify_sign(key: str, sign: str, candidates, *fields: str) -> None:
    if not key or not matches_any(sign, candidates, *fields, key):
        raise AuthError()


def redirect_url(order_id: str) -> str:
    return f"{config.FRONTEND_URL}/#/payment/{order_id}"


def redirect_page(url: str) -> str:
    return (
        '<!DOCTYPE html><html><head><meta charset="UTF-8">'
        "<title>正在跳转到支付页面...</title>"
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">'
        "</head><body><p>正在跳转到支付页面，请稍候...</p>"
        f"<script>window.location.href = {json.dumps(url)};</script>"
        "</body></html>"
    )


@app.api_route("/createOrder", methods=["GET", "POST"])
async def create_order(request: Request):
    params = await read_params(request)
    require(params, "payId", "type", "price", "sign")

    pay_id = params["payId"]
    param = params.get("param", "")
    pay_type = parse_type(params["type"])
    price = parse_price(params["price"])

    with Session(database.engine) as db_sess:
        key = SettingStore(db_sess).signing_key()
        expected = create_order_sign(pay_id, param, params["type"], params["price"], key) if key else ""
        if not key or not sign_matches(params["sign"], expected):
            raise AuthError()

        order = lifecycle.create_order(
            db_sess,
            pay_id=pay_id,
            pay_type=pay_type,
            price=price,
            param=param,
            notify_url=params.get("notifyUrl", ""),
            return_url=params.get("returnUrl", ""),
        )
        data = {
            "payId": order.pay_id,
            "orderId": order.order_id,
            "payType": order.type,
            "price": float(order.price),
            "reallyPrice": float(order.really_price),
            "payUrl": order.pay_url,
            "isAuto": order.is_auto,
            "redirectUrl": redirect_url(order.order_id),
        }

    if params.get("isHtml") == "1":
        return HTMLResponse(redirect_page(data["redirectUrl"]))
    return success(data)


@app.api_route("/getOrder", methods=["GET", "POST"])
async def get_order(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        order = lifecycle.get_order(db_sess, params.get("orderId", ""))
        minutes = SettingStore(db_sess).close_minutes()
        return success({
            "payId": order.pay_id,
            "orderId": order.order_id,
            "payType": order.type,
            "price": float(order.price),
            "reallyPrice": float(order.really_price),
            "payUrl": order.pay_url,
            "isAuto": order.is_auto,
            "state": order.state,
            "stateText": order.state_text,
            "timeOut": minutes,
            "date": order.create_date,
            "remainingSeconds": lifecycle.remaining_seconds(order, minutes, now_ts()),
            "return_url": order.return_url,
            "param": order.param,
        })


@app.api_route("/checkOrder", methods=["GET", "POST"])
async def check_order(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        report = lifecycle.check_status(db_sess, params.get("orderId", ""))

    base = {"return_url": report.return_url, "param": report.param}
    if report.state in (OrderState.PAID, OrderState.NOTIFY_FAILED):
        return success({"redirectUrl": report.return_url, "remainingSeconds": 0, **base}, "支付成功")
    if report.state == OrderState.CLOSED:
        return success({"state": int(OrderState.CLOSED), "remainingSeconds": 0, **base}, "订单已过期")
    return success({"state": int(OrderState.PENDING), "remainingSeconds": report.remaining_seconds, **base},
                   "订单未支付")


@app.api_route("/closeOrder", methods=["GET", "POST"])
async def close_order(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        lifecycle.close_order(db_sess, params.get("orderId", ""))
    return success(None, "关闭订单成功")


@app.api_route("/deleteOrder", methods=["GET", "POST"])
async def delete_order(request: Request):
    params = await read_params(request)
    require(params, "orderId")
    with Session(database.engine) as db_sess:
        lifecycle.delete_order(db_sess, params["orderId"])
    return success(None, "删除订单成功")


@app.api_route("/closeEndOrder", methods=["GET", "POST"])
async def close_end_order():
    with Session(database.engine) as db_sess:
        count = lifecycle.sweep_expired(db_sess)
    return success({"count": count}, f"成功关闭 {count} 条过期订单")


@app.api_route("/getState", methods=["GET", "POST"])
async def get_state():
    with Session(database.engine) as db_sess:
        store = SettingStore(db_sess)
        status = store.refresh_monitor_state()
        return success({
            "monitorStatus": status,
            "jkState": int(store.monitor_state()),
            "lastHeartTime": store.last_heart(),
            "lastPayTime": store.last_pay(),
        })


@app.api_route("/getReturn", methods=["GET", "POST"])
async def get_return(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        url = notifier.build_return_url(db_sess, params.get("orderId", ""))
    return success({"returnUrl": url})


def record_heartbeat(params: dict, candidates) -> None:
    require(params, "t", "sign")
    with Session(database.engine) as db_sess:
        store = SettingStore(db_sess)
        verify_sign(store.signing_key(), params["sign"], candidates, params["t"])
        store.record_heartbeat()


def settle_push(params: dict, candidates):
    """
    第一阶段：验签、匹配订单并提交 PAID 状态。

    返回 (是否匹配到订单, 需要回调的订单号或 None)。回调由调用方在响应发出后执行。
    """
    require(params, "t", "type", "price", "sign")
    with Session(database.engine) as db_sess:
        store = SettingStore(db_sess)
        verify_sign(store.signing_key(), params["sign"], candidates,
                    params["type"], params["price"], params["t"])
        pay_type = parse_type(params["type"])
        amount = to_amount(parse_price(params["price"]))

        result = lifecycle.apply_payment(db_sess, amount, pay_type)
        notify_order = result.order.order_id if result.matched and result.order.notify_url else None
        return result.matched, notify_order


@app.api_route("/api/monitor/heart", methods=["GET", "POST"])
async def monitor_heart(request: Request):
    record_heartbeat(await read_params(request), [heartbeat_sign])
    return success(None, "心跳更新成功")


@app.api_route("/api/monitor/push", methods=["GET", "POST"])
async def monitor_push(request: Request, background_tasks: BackgroundTasks):
    matched, notify_order = settle_push(await read_params(request), [push_sign])
    if notify_order:
        # 响应发出后再回调商户
        background_tasks.add_task(notifier.dispatch, notify_order, "GET")
    return success(None, "订单支付成功" if matched else "成功")


@app.api_route("/appHeart", methods=["GET", "POST"])
async def app_heart(request: Request):
    try:
        record_heartbeat(await read_params(request), LEGACY_HEARTBEAT_SIGNS)
    except VmqError as e:
        return legacy_result(False, e.msg)
    return legacy_result(True, "成功")


@app.api_route("/appPush", methods=["GET", "POST"])
async def app_push(request: Request, background_tasks: BackgroundTasks):
    try:
        _, notify_order = settle_push(await read_params(request), LEGACY_PUSH_SIGNS)
    except VmqError as e:
        return legacy_result(False, e.msg)
    if notify_order:
        background_tasks.add_task(notifier.dispatch, notify_order, "POST")
    return legacy_result(True, "成功")


# 后台管理接口

ADMIN = [Depends(require_admin)]


def parse_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("ID参数错误")


def optional_int(value):
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError("参数格式错误")


@app.api_route("/api/order/list", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_order_list(request: Request):
    params = await read_params(request)
    page, limit = admin.paging(params.get("page"), params.get("limit"))
    with Session(database.engine) as db_sess:
        return success(admin.list_orders(db_sess, page, limit, optional_int(params.get("state"))))


@app.api_route("/api/order/detail", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_order_detail(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        return success(admin.order_detail(db_sess, parse_id(params.get("id"))))


@app.api_route("/api/order/deleteLast", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_delete_last():
    with Session(database.engine) as db_sess:
        count = lifecycle.delete_old_orders(db_sess)
    return success({"count": count}, "删除历史订单成功")


@app.api_route("/api/qrcode/list", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_qrcode_list(request: Request):
    params = await read_params(request)
    page, limit = admin.paging(params.get("page"), params.get("limit"))
    pay_type = params.get("type")
    with Session(database.engine) as db_sess:
        return success(admin.list_qrcodes(db_sess, page, limit, parse_type(pay_type) if pay_type else None))


def parse_qrcode_price(value) -> Decimal:
    """收款码金额，为空或 0 表示通用码。"""
    if not value:
        return Decimal("0")
    try:
        if Decimal(value) == 0:
            return Decimal("0")
    except InvalidOperation:
        raise ValidationError("价格错误")
    return parse_price(value)


@app.api_route("/api/qrcode/add", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_qrcode_add(request: Request):
    params = await read_params(request)
    pay_type = parse_type(params.get("type"))
    price = parse_qrcode_price(params.get("price"))
    with Session(database.engine) as db_sess:
        qrcode = admin.add_qrcode(db_sess, pay_type, params.get("pay_url", ""), price)
        return success(admin.qrcode_row(qrcode), "添加二维码成功")


@app.api_route("/api/qrcode/delete", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_qrcode_delete(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        admin.delete_qrcode(db_sess, parse_id(params.get("id")))
    return success(None, "删除二维码成功")


@app.api_route("/api/qrcode/bind", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_qrcode_bind(request: Request):
    params = await read_params(request)
    state = params.get("state")
    # 与收款码列表一致：0=正常 1=禁用
    if state not in ("0", "1"):
        raise ValidationError("状态参数错误")
    with Session(database.engine) as db_sess:
        qrcode = admin.bind_qrcode(db_sess, parse_id(params.get("id")), state == "0")
        return success(admin.qrcode_row(qrcode), "设置二维码状态成功")


@app.api_route("/api/config/get", methods=["GET", "POST"], dependencies=ADMIN)
async def admin_config_get():
    with Session(database.engine) as db_sess:
        return success(admin.get_settings(db_sess))


@app.api_route("/api/config/save", methods=["POST"], dependencies=ADMIN)
async def admin_config_save(request: Request):
    params = await read_params(request)
    with Session(database.engine) as db_sess:
        saved = admin.save_settings(db_sess, params)
    return success({"saved": saved}, "保存成功")
