"""尾款支付服务单元测试。"""

import os
import sqlite3
import tempfile
from decimal import Decimal

import pytest

# 在导入 omniflow 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="settlement_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-settlement-tests"

import omniflow.database as _db_mod
from omniflow.database import drop_all, init_db
from omniflow.models.schemas import DepositPolicy
from omniflow.services.errors import (
    ForbiddenError,
    InsufficientFundsError,
    OrderNotFoundError,
    OrderStateError,
)
from omniflow.services.order_service import OrderService
from omniflow.services.product_service import ProductService
from omniflow.services.settlement_service import SettlementService
from omniflow.services.wallet_service import WalletService

BUYER = "buyer-1"
SELLER = "seller-1"


@pytest.fixture(autouse=True)
def _setup_db():
    """每个测试前重建数据库。"""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    drop_all(conn)
    conn.close()
    init_db()
    yield


@pytest.fixture
def svc():
    return SettlementService()


@pytest.fixture
def wallets():
    return WalletService()


def _order_with_balance_due(wallets, funds="1000"):
    """价格 600、定金 200、尾款 400 的订单。"""
    product = ProductService().create_product(SELLER, "测试商品", "600", 5)
    wallets.top_up(BUYER, funds)
    return OrderService().create_order_with_deposit(
        BUYER, product.id, policy=DepositPolicy(fixed_amount=Decimal("200")),
    )


class TestPayRemainingBalance:
    """pay_remaining_balance 测试。"""

    def test_pays_full_balance(self, svc, wallets):
        order = _order_with_balance_due(wallets)
        paid = svc.pay_remaining_balance(order.id, BUYER)
        assert paid.balance_paid is True
        assert paid.balance_due == Decimal("0.00")
        assert paid.balance_paid_at is not None
        assert wallets.get_balance(BUYER) == Decimal("400.00")

    def test_insufficient_funds_changes_nothing(self, svc, wallets):
        """钱包 50、尾款 400：报余额不足，订单和钱包都不变。"""
        order = _order_with_balance_due(wallets, funds="250")
        assert wallets.get_balance(BUYER) == Decimal("50.00")

        with pytest.raises(InsufficientFundsError):
            svc.pay_remaining_balance(order.id, BUYER)

        assert wallets.get_balance(BUYER) == Decimal("50.00")
        after = OrderService().get_order(order.id)
        assert after.balance_paid is False
        assert after.balance_due == Decimal("400.00")

    def test_second_payment_rejected(self, svc, wallets):
        order = _order_with_balance_due(wallets)
        svc.pay_remaining_balance(order.id, BUYER)
        with pytest.raises(OrderStateError):
            svc.pay_remaining_balance(order.id, BUYER)
        assert wallets.get_balance(BUYER) == Decimal("400.00")

    def test_only_buyer_can_pay(self, svc, wallets):
        order = _order_with_balance_due(wallets)
        wallets.top_up(SELLER, "1000")
        with pytest.raises(ForbiddenError):
            svc.pay_remaining_balance(order.id, SELLER)

    def test_unknown_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.pay_remaining_balance(4242, BUYER)

    def test_nothing_due_for_full_deposit(self, svc, wallets):
        product = ProductService().create_product(SELLER, "测试商品", "100", 5)
        wallets.top_up(BUYER, "1000")
        order = OrderService().create_order_with_deposit(
            BUYER, product.id, policy=DepositPolicy(percent=Decimal("1")),
        )
        with pytest.raises(OrderStateError):
            svc.pay_remaining_balance(order.id, BUYER)

    def test_records_ledger_entry(self, svc, wallets):
        order = _order_with_balance_due(wallets)
        svc.pay_remaining_balance(order.id, BUYER)
        txs = wallets.list_transactions(BUYER, tx_type="balance_payment")
        assert len(txs) == 1
        assert txs[0].amount == Decimal("-400.00")
        assert txs[0].order_id == order.id

    def test_does_not_mark_delivered(self, svc, wallets):
        order = _order_with_balance_due(wallets)
        paid = svc.pay_remaining_balance(order.id, BUYER)
        assert paid.delivered is False
        assert paid.escrow_released is False
