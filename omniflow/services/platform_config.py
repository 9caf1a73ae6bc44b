"""
平台配置服务：管理 system_config 表的读写。

提供默认佣金率、默认定金比例等运行时可调配置，以及敏感字段加密。
使用 Fernet 对称加密保护配送 OTP，密钥由 OTP_ENCRYPTION_KEY（未配置时为 JWT_SECRET）
通过 PBKDF2 派生，支持多密钥轮换。
"""

import base64
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from omniflow.database import get_db
from omniflow.services.errors import OtpUnavailableError

logger = logging.getLogger(__name__)

# system_config 中可由管理员修改的比例类配置
COMMISSION_RATE_KEY = "default_commission_rate"
DEPOSIT_PERCENT_KEY = "default_deposit_percent"

SETTING_ENV_DEFAULTS = {
    COMMISSION_RATE_KEY: ("DEFAULT_COMMISSION_RATE", "0.02"),
    DEPOSIT_PERCENT_KEY: ("DEFAULT_DEPOSIT_PERCENT", "0.25"),
}


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


@lru_cache(maxsize=4)
def _fernet_for(secret: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"omniflow-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _otp_fernet() -> MultiFernet:
    """
    配送码加密密钥。

    OTP_ENCRYPTION_KEY 可配置多个密钥（逗号分隔）：第一个用于加密，
    其余只用于解密轮换前写入的旧密文。未配置时回退到 JWT_SECRET。
    """
    raw = os.getenv("OTP_ENCRYPTION_KEY", "")
    keys = [s.strip() for s in raw.split(",") if s.strip()]
    if not keys:
        keys = [os.getenv("JWT_SECRET", "default-secret-key")]
    return MultiFernet([_fernet_for(k) for k in keys])


def encrypt_otp(otp: str) -> str:
    """加密配送码，返回密文。"""
    return _otp_fernet().encrypt(otp.encode("utf-8")).decode("utf-8")


def decrypt_otp(ciphertext: str) -> str:
    """
    解密配送码。

    Raises:
        OtpUnavailableError: 现有密钥都无法解密（轮换密钥时未保留旧密钥）。
    """
    try:
        return _otp_fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise OtpUnavailableError("配送码已失效，请重新获取")


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        existing = db.execute(
            "SELECT id FROM system_config WHERE config_key = ?", (key,)
        ).fetchone()
        if existing:
            db.execute(
                "UPDATE system_config SET config_value = ?, updated_at = ? WHERE config_key = ?",
                (value, now, key),
            )
        else:
            db.execute(
                "INSERT INTO system_config (config_key, config_value, updated_at) VALUES (?, ?, ?)",
                (key, value, now),
            )
        db.commit()
    finally:
        db.close()


# ── 比例类配置 ────────────────────────────────────────────


def parse_rate(value) -> Decimal:
    """
    解析 [0, 1] 区间内的比例值。

    Raises:
        PlatformConfigError: 格式错误或越界。
    """
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PlatformConfigError(f"比例格式无效: {value}")
    if not rate.is_finite() or rate < 0 or rate > 1:
        raise PlatformConfigError(f"比例必须在 0 到 1 之间: {value}")
    return rate


def get_rate_setting(key: str) -> Decimal:
    """读取比例配置：system_config 优先，其次环境变量默认值。"""
    env_name, fallback = SETTING_ENV_DEFAULTS[key]
    stored = get_config(key)
    if stored is not None:
        try:
            return parse_rate(stored)
        except PlatformConfigError:
            logger.warning("system_config 中 %s 的值无效(%s)，使用环境变量默认值", key, stored)
    return parse_rate(os.getenv(env_name, fallback))


def set_rate_setting(key: str, value) -> Decimal:
    """校验并保存比例配置，返回规范化后的值。"""
    if key not in SETTING_ENV_DEFAULTS:
        raise PlatformConfigError(f"未知配置项: {key}")
    rate = parse_rate(value)
    set_config(key, str(rate))
    logger.info("平台配置已更新: %s=%s", key, rate)
    return rate


def get_default_commission_rate() -> Decimal:
    return get_rate_setting(COMMISSION_RATE_KEY)


def get_default_deposit_percent() -> Decimal:
    return get_rate_setting(DEPOSIT_PERCENT_KEY)


def get_settings() -> dict:
    """管理后台展示用的全部可调配置。"""
    return {
        COMMISSION_RATE_KEY: str(get_default_commission_rate()),
        DEPOSIT_PERCENT_KEY: str(get_default_deposit_percent()),
        "platform_wallet_user_id": platform_wallet_user_id(),
    }


def platform_wallet_user_id() -> str:
    """接收佣金和订阅收入的平台钱包用户 ID。"""
    return os.getenv("PLATFORM_WALLET_USER_ID", "platform")
