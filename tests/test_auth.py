"""认证模块单元测试：密码哈希、JWT 角色声明、管理员登录与锁定。"""

import os
import sqlite3
import tempfile

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

# 在导入 omniflow 模块之前设置测试数据库路径
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="auth_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-auth"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "admin123"

import omniflow.database as _db_mod
from omniflow.database import drop_all, get_db, init_db
from omniflow.main import app
from omniflow.services.auth import (
    ROLE_ADMIN,
    ROLE_USER,
    create_token,
    get_current_admin,
    get_current_user,
    hash_password,
    verify_password,
    verify_token,
)


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
def client():
    return TestClient(app)


def _login(client, password="admin123"):
    return client.post("/v1/admin/auth/login", json={
        "username": "admin", "password": password,
    }).json()


# ── 密码哈希测试 ──


class TestPasswordHashing:
    """密码哈希和验证测试。"""

    def test_hash_and_verify(self):
        hashed = hash_password("mypassword")
        assert verify_password("mypassword", hashed)

    def test_wrong_password_fails(self):
        hashed = hash_password("mypassword")
        assert not verify_password("wrongpassword", hashed)

    def test_different_hashes_for_same_password(self):
        """同一密码两次哈希结果不同（bcrypt salt）。"""
        assert hash_password("test") != hash_password("test")


# ── JWT 令牌测试 ──


class TestJWTToken:
    """JWT 令牌生成和验证测试。"""

    def test_admin_token_by_default(self):
        payload = verify_token(create_token("admin"))
        assert payload["sub"] == "admin"
        assert payload["role"] == ROLE_ADMIN
        assert "exp" in payload

    def test_user_token_role(self):
        payload = verify_token(create_token("buyer-1", role=ROLE_USER))
        assert payload["sub"] == "buyer-1"
        assert payload["role"] == ROLE_USER

    def test_invalid_token_raises(self):
        with pytest.raises(ValueError):
            verify_token("invalid.token.here")

    def test_tampered_token_raises(self):
        token = create_token("admin")
        tampered = token[:-1] + ("a" if token[-1] != "a" else "b")
        with pytest.raises(ValueError):
            verify_token(tampered)


# ── 登录接口测试 ──


class TestLoginRoute:
    """POST /v1/admin/auth/login 路由测试。"""

    def test_login_success(self, client):
        data = _login(client)
        assert data["code"] == 1
        assert verify_token(data["token"])["role"] == ROLE_ADMIN

    def test_login_wrong_password(self, client):
        data = _login(client, password="wrongpass")
        assert data["code"] == -1
        assert "错误" in data["msg"]

    def test_login_wrong_username(self, client):
        resp = client.post("/v1/admin/auth/login", json={
            "username": "nonexistent", "password": "admin123",
        })
        assert resp.json()["code"] == -1


# ── 账号锁定测试 ──


class TestAccountLockout:
    """连续 5 次失败锁定 15 分钟测试。"""

    def test_lockout_after_5_failures(self, client):
        for _ in range(5):
            _login(client, password="wrong")
        data = _login(client)
        assert data["code"] == -1
        assert "锁定" in data["msg"]

    def test_4_failures_not_locked(self, client):
        for _ in range(4):
            _login(client, password="wrong")
        assert _login(client)["code"] == 1

    def test_success_resets_fail_count(self, client):
        for _ in range(3):
            _login(client, password="wrong")
        _login(client)
        for _ in range(4):
            _login(client, password="wrong")
        assert _login(client)["code"] == 1

    def test_lockout_expires(self, client):
        for _ in range(5):
            _login(client, password="wrong")
        db = get_db()
        try:
            db.execute(
                "UPDATE admin SET locked_until = datetime('now', 'localtime', '-1 minute') "
                "WHERE username = 'admin'"
            )
            db.commit()
        finally:
            db.close()
        assert _login(client)["code"] == 1


# ── 依赖项角色校验 ──


def _role_guarded_app() -> TestClient:
    guarded = FastAPI()

    @guarded.get("/admin-only")
    async def admin_only(admin: dict = Depends(get_current_admin)):
        return {"sub": admin["sub"]}

    @guarded.get("/user-only")
    async def user_only(user_id: str = Depends(get_current_user)):
        return {"user_id": user_id}

    return TestClient(guarded)


class TestRoleDependencies:
    """get_current_admin / get_current_user 测试。"""

    def test_admin_token_on_admin_route(self):
        tc = _role_guarded_app()
        resp = tc.get("/admin-only", headers={"Authorization": f"Bearer {create_token('admin')}"})
        assert resp.status_code == 200
        assert resp.json()["sub"] == "admin"

    def test_user_token_on_user_route(self):
        tc = _role_guarded_app()
        token = create_token("buyer-1", role=ROLE_USER)
        resp = tc.get("/user-only", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user_id"] == "buyer-1"

    def test_user_token_rejected_on_admin_route(self):
        tc = _role_guarded_app()
        token = create_token("buyer-1", role=ROLE_USER)
        resp = tc.get("/admin-only", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_admin_token_rejected_on_user_route(self):
        tc = _role_guarded_app()
        resp = tc.get("/user-only", headers={"Authorization": f"Bearer {create_token('admin')}"})
        assert resp.status_code == 401

    def test_missing_token_returns_401(self):
        assert _role_guarded_app().get("/user-only").status_code == 401

    def test_invalid_token_returns_401(self):
        resp = _role_guarded_app().get(
            "/admin-only", headers={"Authorization": "Bearer invalid.token.here"}
        )
        assert resp.status_code == 401

    def test_cookie_token(self):
        resp = _role_guarded_app().get("/admin-only", cookies={"token": create_token("admin")})
        assert resp.status_code == 200
