"""高级卖家订阅服务单元测试。"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

# 在导入 omniflow 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="subscription_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-subscription-tests"

import omniflow.database as _db_mod
from omniflow.database import drop_all, get_db, init_db
from omniflow.services.errors import InsufficientFundsError, InvalidAmountError
from omniflow.services.subscription_service import (
    SUBSCRIPTION_PLANS,
    SubscriptionService,
    list_plans,
    resolve_plan,
)
from omniflow.services.wallet_service import WalletService

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
    return SubscriptionService()


@pytest.fixture
def wallets():
    return WalletService()


def _parse(ts: str) -> datetime:
    return datetime.strptime(ts, "%Y-%m-%d %H:%M:%S")


class TestPlanCatalog:
    """套餐价格表。"""

    def test_catalog_prices(self):
        assert SUBSCRIPTION_PLANS == {
            "Basic": Decimal("200.00"),
            "Pro": Decimal("500.00"),
            "Elite": Decimal("1000.00"),
        }

    def test_lookup_ignores_case(self):
        assert resolve_plan(" pro ") == ("Pro", Decimal("500.00"))

    @pytest.mark.parametrize("name", ["Gold", "", "  ", None])
    def test_unknown_plan(self, name):
        with pytest.raises(InvalidAmountError):
            resolve_plan(name)

    def test_list_plans(self):
        plans = list_plans()
        assert [p["plan_name"] for p in plans] == ["Basic", "Pro", "Elite"]
        assert plans[0] == {"plan_name": "Basic", "price": "200.00", "days": 30}


class TestSubscribeWithWallet:
    """subscribe_with_wallet 测试。"""

    def test_debits_user_and_credits_platform(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        sub = svc.subscribe_with_wallet(SELLER, "Basic", "200")

        assert sub.amount == Decimal("200.00")
        assert wallets.get_balance(SELLER) == Decimal("800.00")
        assert wallets.get_balance(PLATFORM) == Decimal("200.00")
        revenue = wallets.list_transactions(PLATFORM, tx_type="subscription_revenue")
        assert len(revenue) == 1

    def test_amount_omitted_charges_catalog_price(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        sub = svc.subscribe_with_wallet(SELLER, "elite")
        assert sub.plan_name == "Elite"
        assert sub.amount == Decimal("1000.00")
        assert wallets.get_balance(SELLER) == Decimal("0.00")

    @pytest.mark.parametrize("plan,amount", [
        ("Gold", "0.01"),
        ("Basic", "0.01"),
        ("Pro", "200"),
        ("Elite", "1500"),
    ])
    def test_price_mismatch_rejected(self, svc, wallets, plan, amount):
        """未知套餐或金额与价格表不符：不扣款、不开通。"""
        wallets.top_up(SELLER, "2000")
        with pytest.raises(InvalidAmountError):
            svc.subscribe_with_wallet(SELLER, plan, amount)
        assert wallets.get_balance(SELLER) == Decimal("2000.00")
        assert wallets.get_balance(PLATFORM) == Decimal("0.00")
        assert svc.get_subscription_status(SELLER)["is_premium"] is False

    def test_thirty_days(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        sub = svc.subscribe_with_wallet(SELLER, "Pro", "500")
        assert _parse(sub.expires_at) - _parse(sub.starts_at) == timedelta(days=30)

    def test_renewal_extends_from_current_expiry(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        first = svc.subscribe_with_wallet(SELLER, "Pro", "500")
        second = svc.subscribe_with_wallet(SELLER, "Pro", "500")
        assert second.starts_at == first.expires_at
        assert _parse(second.expires_at) - _parse(first.expires_at) == timedelta(days=30)

    def test_insufficient_funds_no_subscription(self, svc, wallets):
        wallets.top_up(SELLER, "100")
        with pytest.raises(InsufficientFundsError):
            svc.subscribe_with_wallet(SELLER, "Basic", "200")
        assert wallets.get_balance(SELLER) == Decimal("100.00")
        assert wallets.get_balance(PLATFORM) == Decimal("0.00")
        assert svc.get_subscription_status(SELLER)["is_premium"] is False

    def test_empty_plan_name(self, svc):
        with pytest.raises(InvalidAmountError):
            svc.subscribe_with_wallet(SELLER, "  ", "200")


class TestSubscriptionStatus:
    def test_not_premium_by_default(self, svc):
        assert svc.get_subscription_status(SELLER) == {
            "is_premium": False, "plan_name": None, "expires_at": None,
        }

    def test_active_subscription(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        sub = svc.subscribe_with_wallet(SELLER, "Pro", "500")
        status = svc.get_subscription_status(SELLER)
        assert status["is_premium"] is True
        assert status["plan_name"] == "Pro"
        assert status["expires_at"] == sub.expires_at

    def test_expired_subscription(self, svc, wallets):
        wallets.top_up(SELLER, "1000")
        svc.subscribe_with_wallet(SELLER, "Pro", "500")
        past = (datetime.now() - timedelta(days=1)).strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute("UPDATE subscriptions SET expires_at = ?", (past,))
            db.commit()
        finally:
            db.close()
        assert svc.get_subscription_status(SELLER)["is_premium"] is False
