"""托管释放引擎单元测试：前置条件、幂等、并发、资金守恒、佣金解析。"""

import os
import sqlite3
import tempfile
import threading
from decimal import Decimal

import pytest

# 在导入 omniflow 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="escrow_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-escrow-tests"

import omniflow.database as _db_mod
from omniflow.database import drop_all, get_db, init_db
from omniflow.models.schemas import DepositPolicy
from omniflow.services.delivery_service import DeliveryService
from omniflow.services.errors import (
    AlreadyReleasedError,
    EscrowNotReadyError,
    OrderNotFoundError,
)
from omniflow.services.escrow_service import EscrowService, split_commission
from omniflow.services.order_service import OrderService
from omniflow.services.platform_config import COMMISSION_RATE_KEY, set_rate_setting
from omniflow.services.product_service import ProductService
from omniflow.services.settlement_service import SettlementService
from omniflow.services.wallet_service import WalletService

BUYER = "buyer-1"
SELLER = "seller-1"
PLATFORM = "platform"


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
    return EscrowService()


@pytest.fixture
def wallets():
    return WalletService()


def _place_order(product_kwargs=None, store_rate=None, price="600"):
    products = ProductService()
    product_kwargs = dict(product_kwargs or {})
    if store_rate is not None:
        store = products.create_store(SELLER, "测试店铺", commission_rate=store_rate)
        product_kwargs["store_id"] = store.id
    product = products.create_product(SELLER, "测试商品", price, 5, **product_kwargs)
    WalletService().top_up(BUYER, "1000")
    return OrderService().create_order_with_deposit(
        BUYER, product.id, policy=DepositPolicy(fixed_amount=Decimal("200")),
    )


def _deliver(order_id):
    OrderService().update_order_status(order_id, SELLER, "delivered")
    otp = OrderService().get_delivery_otp(order_id, BUYER)
    DeliveryService().confirm_delivery(order_id, otp, buyer_id=BUYER)


def _ready_order(**kwargs):
    order = _place_order(**kwargs)
    _deliver(order.id)
    SettlementService().pay_remaining_balance(order.id, BUYER)
    return order


def _total_money() -> Decimal:
    db = get_db()
    try:
        rows = db.execute("SELECT balance FROM wallets").fetchall()
    finally:
        db.close()
    return sum((Decimal(str(r["balance"])) for r in rows), Decimal("0"))


class TestSplitCommission:
    def test_parts_sum_to_total(self):
        credit, commission = split_commission(Decimal("600.00"), Decimal("0.02"))
        assert (credit, commission) == (Decimal("588.00"), Decimal("12.00"))

    def test_rounds_half_up(self):
        credit, commission = split_commission(Decimal("0.25"), Decimal("0.1"))
        assert commission == Decimal("0.03")
        assert credit + commission == Decimal("0.25")


class TestReleasePreconditions:
    """释放前置条件测试。"""

    def test_not_delivered(self, svc):
        order = _place_order()
        SettlementService().pay_remaining_balance(order.id, BUYER)
        with pytest.raises(EscrowNotReadyError):
            svc.release_escrow_to_seller(order.id)

    def test_not_paid(self, svc):
        order = _place_order()
        _deliver(order.id)
        with pytest.raises(EscrowNotReadyError):
            svc.release_escrow_to_seller(order.id)

    def test_unknown_order(self, svc):
        with pytest.raises(OrderNotFoundError):
            svc.release_escrow_to_seller(31337)

    def test_try_release_is_silent_when_not_ready(self, svc):
        order = _place_order()
        assert svc.try_release(order.id) is None
        assert OrderService().get_order(order.id).escrow_released is False


class TestRelease:
    """释放与幂等测试。"""

    def test_release_pays_seller_and_platform(self, svc, wallets):
        order = _ready_order()
        result = svc.release_escrow_to_seller(order.id)

        assert result.released is True
        assert result.seller_credit == Decimal("588.00")
        assert result.commission == Decimal("12.00")
        assert wallets.get_balance(SELLER) == Decimal("588.00")
        assert wallets.get_balance(PLATFORM) == Decimal("12.00")

        after = OrderService().get_order(order.id)
        assert after.escrow_released is True
        assert after.status == "completed"
        assert after.seller_credit == Decimal("588.00")
        assert after.commission_amount == Decimal("12.00")

    def test_second_release_is_noop(self, svc, wallets):
        order = _ready_order()
        svc.release_escrow_to_seller(order.id)
        again = svc.release_escrow_to_seller(order.id)

        assert again.released is False
        assert again.already_released is True
        assert wallets.get_balance(SELLER) == Decimal("588.00")
        assert len(wallets.list_transactions(SELLER, tx_type="escrow_release")) == 1

    def test_strict_release_raises(self, svc):
        order = _ready_order()
        svc.release_escrow_to_seller(order.id)
        with pytest.raises(AlreadyReleasedError):
            svc.release_escrow_to_seller(order.id, strict=True)

    def test_concurrent_release_single_payout(self, wallets):
        """多线程同时释放，只有一次入账。"""
        order = _ready_order()
        results = []
        errors = []

        def worker():
            try:
                results.append(EscrowService().release_escrow_to_seller(order.id))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for r in results if r.released) == 1
        assert wallets.get_balance(SELLER) == Decimal("588.00")
        assert wallets.get_balance(PLATFORM) == Decimal("12.00")
        assert len(wallets.list_transactions(SELLER, tx_type="escrow_release")) == 1

    def test_money_is_conserved(self, svc):
        """托管释放前后：钱包总额 + 托管中金额 = 充值总额。"""
        order = _ready_order()
        held_before = Decimal("600.00")
        assert _total_money() + held_before == Decimal("1000.00")

        svc.release_escrow_to_seller(order.id)
        assert _total_money() == Decimal("1000.00")

    def test_sweep_releases_ready_orders(self, svc, wallets):
        ready = _ready_order()
        pending = _place_order()

        assert svc.pending_release_ids() == [ready.id]
        assert svc.sweep() == 1
        assert svc.sweep() == 0
        assert OrderService().get_order(ready.id).escrow_released is True
        assert OrderService().get_order(pending.id).escrow_released is False


class TestCommissionResolution:
    """佣金率解析顺序：商品 → 店铺 → 平台配置 → 环境默认值。"""

    def test_env_default(self):
        order = _place_order()
        assert order.commission_rate == Decimal("0.02")

    def test_system_config_overrides_env(self):
        set_rate_setting(COMMISSION_RATE_KEY, "0.05")
        order = _place_order()
        assert order.commission_rate == Decimal("0.05")

    def test_store_overrides_platform(self):
        set_rate_setting(COMMISSION_RATE_KEY, "0.05")
        order = _place_order(store_rate="0.08")
        assert order.commission_rate == Decimal("0.08")

    def test_product_overrides_store(self):
        order = _place_order(product_kwargs={"commission_rate": "0.1"}, store_rate="0.08")
        assert order.commission_rate == Decimal("0.1")

    def test_rate_snapshotted_at_creation(self, svc, wallets):
        """下单后修改平台费率不影响在途订单。"""
        order = _ready_order()
        set_rate_setting(COMMISSION_RATE_KEY, "0.5")
        result = svc.release_escrow_to_seller(order.id)
        assert result.commission == Decimal("12.00")
        assert wallets.get_balance(SELLER) == Decimal("588.00")

    def test_zero_commission(self, svc, wallets):
        order = _ready_order(product_kwargs={"commission_rate": "0"})
        result = svc.release_escrow_to_seller(order.id)
        assert result.commission == Decimal("0.00")
        assert wallets.get_balance(SELLER) == Decimal("600.00")
        assert wallets.get_balance(PLATFORM) == Decimal("0.00")
