"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接，transaction() 获取写事务。
"""

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/omniflow.db")

# 写锁等待时间（秒），并发结算时排队而不是立即报 database is locked
BUSY_TIMEOUT = 10.0


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """
    获取一个已持有写锁的连接（BEGIN IMMEDIATE）。

    钱包扣款、订单状态变更等多语句操作必须在同一事务内完成：
    正常退出时提交，任何异常都回滚，保证不会留下部分状态。
    """
    conn = get_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallets (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL UNIQUE,
    balance         DECIMAL(12,2) NOT NULL DEFAULT 0 CHECK (balance >= 0),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS wallet_transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    type            VARCHAR(32)  NOT NULL,
    amount          DECIMAL(12,2) NOT NULL,
    balance_after   DECIMAL(12,2) NOT NULL,
    order_id        INTEGER,
    reference       VARCHAR(128),
    note            TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS stores (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        VARCHAR(64)  NOT NULL,
    name            VARCHAR(128) NOT NULL,
    commission_rate DECIMAL(6,4),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        VARCHAR(64)  NOT NULL,
    store_id        INTEGER      REFERENCES stores(id),
    name            VARCHAR(256) NOT NULL,
    price           DECIMAL(12,2) NOT NULL,
    discount        DECIMAL(5,2) DEFAULT 0,
    stock_quantity  INTEGER      NOT NULL DEFAULT 0 CHECK (stock_quantity >= 0),
    commission_rate DECIMAL(6,4),
    deposit_percent DECIMAL(6,4),
    delivery_fee    DECIMAL(12,2) DEFAULT 0,
    installment_plan TEXT,
    active          INTEGER      DEFAULT 1,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        VARCHAR(64)  NOT NULL,
    seller_id       VARCHAR(64)  NOT NULL,
    store_id        INTEGER,
    product_id      INTEGER      NOT NULL REFERENCES products(id),
    quantity        INTEGER      NOT NULL DEFAULT 1,
    variant         TEXT,
    unit_price      DECIMAL(12,2) NOT NULL,
    delivery_fee    DECIMAL(12,2) DEFAULT 0,
    total_price     DECIMAL(12,2) NOT NULL,
    deposit_amount  DECIMAL(12,2) NOT NULL,
    balance_due     DECIMAL(12,2) NOT NULL,
    commission_rate DECIMAL(6,4) NOT NULL,
    status          VARCHAR(32)  NOT NULL DEFAULT 'pending',
    delivered       INTEGER      DEFAULT 0,
    delivery_otp    TEXT         NOT NULL,
    otp_attempts    INTEGER      DEFAULT 0,
    otp_locked_until DATETIME,
    balance_paid    INTEGER      DEFAULT 0,
    escrow_released INTEGER      DEFAULT 0,
    seller_credit   DECIMAL(12,2),
    commission_amount DECIMAL(12,2),
    delivery_method VARCHAR(32),
    delivery_location TEXT,
    contact_phone   VARCHAR(32),
    payment_method  VARCHAR(16)  DEFAULT 'wallet',
    rating          INTEGER,
    rating_submitted INTEGER     DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    delivered_at    DATETIME,
    balance_paid_at DATETIME,
    escrow_released_at DATETIME
);

CREATE TABLE IF NOT EXISTS installment_orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        VARCHAR(64)  NOT NULL,
    seller_id       VARCHAR(64)  NOT NULL,
    store_id        INTEGER,
    product_id      INTEGER      NOT NULL REFERENCES products(id),
    quantity        INTEGER      NOT NULL DEFAULT 1,
    variant         TEXT,
    total_price     DECIMAL(12,2) NOT NULL,
    initial_amount  DECIMAL(12,2) NOT NULL,
    amount_paid     DECIMAL(12,2) NOT NULL DEFAULT 0,
    installment_amount DECIMAL(12,2) NOT NULL,
    installments_total INTEGER   NOT NULL,
    installments_paid INTEGER    NOT NULL DEFAULT 0,
    interval_days   INTEGER      NOT NULL,
    next_due_date   DATE,
    commission_rate DECIMAL(6,4) NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'active',
    escrow_released INTEGER      DEFAULT 0,
    delivery_method VARCHAR(32),
    delivery_location TEXT,
    contact_phone   VARCHAR(32),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    completed_at    DATETIME
);

CREATE TABLE IF NOT EXISTS installment_payments (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        INTEGER      NOT NULL REFERENCES installment_orders(id),
    buyer_id        VARCHAR(64)  NOT NULL,
    seq             INTEGER      NOT NULL,
    amount          DECIMAL(12,2) NOT NULL,
    due_date        DATE         NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'pending',
    paid_at         DATETIME
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    plan_name       VARCHAR(64)  NOT NULL,
    amount          DECIMAL(12,2) NOT NULL,
    starts_at       DATETIME     NOT NULL,
    expires_at      DATETIME     NOT NULL,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notifications (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         VARCHAR(64)  NOT NULL,
    title           VARCHAR(128) NOT NULL,
    message         TEXT         NOT NULL,
    is_read         INTEGER      DEFAULT 0,
    push_status     INTEGER      DEFAULT 0,
    push_attempts   INTEGER      DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_wallets_user
    ON wallets(user_id);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_user
    ON wallet_transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_wallet_tx_type
    ON wallet_transactions(type);
CREATE INDEX IF NOT EXISTS idx_products_owner
    ON products(owner_id);
CREATE INDEX IF NOT EXISTS idx_orders_buyer
    ON orders(buyer_id);
CREATE INDEX IF NOT EXISTS idx_orders_seller
    ON orders(seller_id);
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_escrow_pending
    ON orders(delivered, balance_paid, escrow_released);
CREATE INDEX IF NOT EXISTS idx_installment_orders_buyer
    ON installment_orders(buyer_id);
CREATE INDEX IF NOT EXISTS idx_installment_payments_order
    ON installment_payments(order_id, seq);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user
    ON subscriptions(user_id, expires_at);
CREATE INDEX IF NOT EXISTS idx_notifications_user
    ON notifications(user_id, is_read);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""

ALL_TABLES = (
    "notifications",
    "subscriptions",
    "installment_payments",
    "installment_orders",
    "orders",
    "products",
    "stores",
    "wallet_transactions",
    "wallets",
    "system_config",
    "admin",
)


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 迁移：为已有数据库添加新列
        _migrate_schema(conn)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def drop_all(conn: sqlite3.Connection) -> None:
    """删除全部业务表（测试重建数据库用）。"""
    for table in ALL_TABLES:
        conn.execute(f"DROP TABLE IF EXISTS {table}")
    conn.commit()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    # orders 表早期版本没有 OTP 限流字段
    try:
        conn.execute("SELECT otp_attempts FROM orders LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE orders ADD COLUMN otp_attempts INTEGER DEFAULT 0")
        conn.execute("ALTER TABLE orders ADD COLUMN otp_locked_until DATETIME")


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
