"""
支付流程业务异常。

所有异常带稳定的 error_code，路由层据此返回 {"code": -1, "msg", "error"}。
"""


class PaymentFlowError(Exception):
    """支付/履约流程异常基类。"""
    error_code = "PAYMENT_FLOW_ERROR"


class InsufficientFundsError(PaymentFlowError):
    """钱包余额不足以完成扣款。"""
    error_code = "INSUFFICIENT_FUNDS"


class InvalidAmountError(PaymentFlowError):
    """金额非法（非正数、格式错误、比例越界等）。"""
    error_code = "INVALID_AMOUNT"


class OrderNotFoundError(PaymentFlowError):
    error_code = "ORDER_NOT_FOUND"


class ProductUnavailableError(PaymentFlowError):
    """商品不存在、已下架或库存不足。"""
    error_code = "PRODUCT_UNAVAILABLE"


class OrderStateError(PaymentFlowError):
    """订单当前状态不满足操作前置条件。"""
    error_code = "ORDER_STATE"


class ForbiddenError(PaymentFlowError):
    """调用者不是该订单/商品的相关方。"""
    error_code = "FORBIDDEN"


class InvalidOtpError(PaymentFlowError):
    error_code = "INVALID_OTP"


class OtpUnavailableError(PaymentFlowError):
    """存储的配送码无法解密，需要重新获取。"""
    error_code = "OTP_UNAVAILABLE"


class OtpLockedError(PaymentFlowError):
    """连续输错 OTP 次数过多，暂时锁定。"""
    error_code = "OTP_LOCKED"


class EscrowNotReadyError(PaymentFlowError):
    """未确认收货或尾款未付清，不能释放托管资金。"""
    error_code = "ESCROW_NOT_READY"


class AlreadyReleasedError(PaymentFlowError):
    error_code = "ALREADY_RELEASED"
