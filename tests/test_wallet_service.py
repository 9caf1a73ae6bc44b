"""钱包账本服务单元测试。"""

import os
import sqlite3
import tempfile
from decimal import Decimal

import pytest

# 在导入 omniflow 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="wallet_svc_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-wallet-tests"

import omniflow.database as _db_mod
from omniflow.database import drop_all, get_db, init_db
from omniflow.services.errors import InsufficientFundsError, InvalidAmountError
from omniflow.services.wallet_service import WalletService, to_amount


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
    return WalletService()


class TestToAmount:
    """金额解析测试。"""

    def test_rounds_half_up_to_cent(self):
        assert to_amount("10.005") == Decimal("10.01")
        assert to_amount(3) == Decimal("3.00")

    def test_invalid_amount_raises(self):
        with pytest.raises(InvalidAmountError):
            to_amount("abc")


class TestAdjustBalance:
    """adjust_balance 原子加减款测试。"""

    def test_missing_wallet_reads_zero(self, svc):
        assert svc.get_balance("nobody") == Decimal("0.00")

    def test_credit_creates_wallet(self, svc):
        balance = svc.adjust_balance("u1", Decimal("100"), "topup")
        assert balance == Decimal("100.00")
        assert svc.get_balance("u1") == Decimal("100.00")

    def test_debit_reduces_balance(self, svc):
        svc.top_up("u1", "100")
        balance = svc.adjust_balance("u1", Decimal("-30.50"), "deposit", order_id=1)
        assert balance == Decimal("69.50")

    def test_overdraft_rejected_and_balance_unchanged(self, svc):
        """扣款后余额为负时拒绝，余额和流水均不变。"""
        svc.top_up("u1", "50")
        with pytest.raises(InsufficientFundsError):
            svc.adjust_balance("u1", Decimal("-50.01"), "balance_payment", order_id=1)
        assert svc.get_balance("u1") == Decimal("50.00")
        assert len(svc.list_transactions("u1")) == 1

    def test_debit_exact_balance_to_zero(self, svc):
        svc.top_up("u1", "20")
        assert svc.adjust_balance("u1", Decimal("-20"), "deposit") == Decimal("0.00")

    def test_debit_missing_wallet_rejected(self, svc):
        with pytest.raises(InsufficientFundsError):
            svc.adjust_balance("ghost", Decimal("-1"), "deposit")

    def test_zero_delta_rejected(self, svc):
        with pytest.raises(InvalidAmountError):
            svc.adjust_balance("u1", Decimal("0"), "topup")

    def test_unknown_reason_rejected(self, svc):
        with pytest.raises(InvalidAmountError):
            svc.adjust_balance("u1", Decimal("5"), "gift")


class TestTopUp:
    """top_up 测试。"""

    def test_top_up_records_transaction(self, svc):
        svc.top_up("u1", "25.00", reference="mpesa:ABC123")
        txs = svc.list_transactions("u1")
        assert len(txs) == 1
        assert txs[0].type == "topup"
        assert txs[0].amount == Decimal("25.00")
        assert txs[0].balance_after == Decimal("25.00")
        assert txs[0].reference == "mpesa:ABC123"

    def test_top_up_non_positive_rejected(self, svc):
        with pytest.raises(InvalidAmountError):
            svc.top_up("u1", "-5")


class TestLedger:
    """流水与余额一致性测试。"""

    def test_transactions_sum_to_balance(self, svc):
        svc.top_up("u1", "100")
        svc.adjust_balance("u1", Decimal("-40"), "deposit", order_id=7)
        svc.adjust_balance("u1", Decimal("15"), "adjustment")
        txs = svc.list_transactions("u1")
        assert sum(t.amount for t in txs) == svc.get_balance("u1") == Decimal("75.00")
        # 最新在前
        assert txs[0].balance_after == Decimal("75.00")

    def test_filter_by_type(self, svc):
        svc.top_up("u1", "100")
        svc.adjust_balance("u1", Decimal("-40"), "deposit", order_id=7)
        txs = svc.list_transactions("u1", tx_type="deposit")
        assert [t.type for t in txs] == ["deposit"]
        assert txs[0].order_id == 7

    def test_balance_never_negative_in_db(self, svc):
        svc.top_up("u1", "10")
        for _ in range(3):
            try:
                svc.adjust_balance("u1", Decimal("-4"), "deposit")
            except InsufficientFundsError:
                pass
        db = get_db()
        try:
            row = db.execute("SELECT balance FROM wallets WHERE user_id = 'u1'").fetchone()
        finally:
            db.close()
        assert Decimal(str(row["balance"])) == Decimal("2")
