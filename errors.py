class VmqError(Exception):
    """业务错误，msg 会原样返回给调用方。"""

    default_msg = "请求失败"

    def __init__(self, msg: str = ""):
        self.msg = msg or self.default_msg
        super().__init__(self.msg)


class ValidationError(VmqError):
    default_msg = "参数不完整"


class AuthError(VmqError):
    # 不区分失败原因，统一提示
    default_msg = "签名校验不通过"


class MonitorOfflineError(VmqError):
    default_msg = "监控端状态异常，请检查"


class DuplicateOrderError(VmqError):
    default_msg = "商户订单号已存在，请勿重复提交"


class CapacityExhausted(VmqError):
    default_msg = "订单超出负荷，请稍后重试"


class NoPaymentTarget(VmqError):
    default_msg = "暂无可用支付二维码"


class NotFound(VmqError):
    default_msg = "订单不存在"


class InvalidStateTransition(VmqError):
    default_msg = "只能关闭未支付的订单"
