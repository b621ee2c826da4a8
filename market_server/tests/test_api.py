import httpx
import pytest
import pytest_asyncio

from market_server.app import app
from market_server.config import Settings
from market_server.db.redis_schema import FEED_PRICE_KEY, SESSION_KEY_PREFIX
from market_server.services import ServiceContainer


def _settings(**overrides):
    values = dict(RATE_LIMIT_MAX=1000, SESSION_TTL_HOURS=1, FEED_DEFAULT_LIMIT=50)
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest_asyncio.fixture
async def client(fake_redis, fast_hashing):
    ServiceContainer.initialize(fake_redis, _settings())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _login_token(username, is_admin=False, password="secret1"):
    auth_service = ServiceContainer.get_auth_service()
    await auth_service.create_user(username, password, is_admin)
    return await auth_service.create_session(username)


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


# ============================================
# 行情流
# ============================================

@pytest.mark.asyncio
async def test_submit_then_feed(client):
    resp = await client.post("/api/v1/submit", json={"code": " ab c1 ", "price": 12.5, "server": " s1 "})
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "ok"
    assert body["item"]["code"] == "ABC1"
    assert body["item"]["server"] == "s1"

    await client.post("/api/v1/submit", json={"code": "XYZ", "price": 99})

    by_time = (await client.get("/api/v1/feed")).json()
    assert {item["code"] for item in by_time} == {"XYZ", "ABC1"}
    assert by_time[0]["ts"] >= by_time[1]["ts"]
    assert set(by_time[0]) >= {"code", "price", "ts"}

    by_price = (await client.get("/api/v1/feed", params={"sort": "price", "limit": 1})).json()
    assert [item["code"] for item in by_price] == ["XYZ"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload, detail",
    [
        ({"code": "AB", "price": 1}, "invalid code format"),
        ({"code": "AB-CD", "price": 1}, "invalid code format"),
        ({"code": "   ", "price": 1}, "invalid data"),
        ({"code": "ABCD", "price": 0}, "invalid data"),
        ({"code": "ABCD", "price": -3}, "invalid data"),
        ({"code": "ABCD"}, "invalid data"),
    ],
)
async def test_submit_rejects_invalid_input(client, fake_redis, payload, detail):
    resp = await client.post("/api/v1/submit", json=payload)
    assert resp.status_code == 400
    assert resp.json()["detail"] == detail
    assert not fake_redis.zsets


@pytest.mark.asyncio
async def test_feed_limit_is_bounded(client):
    assert (await client.get("/api/v1/feed", params={"limit": 201})).status_code == 422
    assert (await client.get("/api/v1/feed", params={"limit": 0})).status_code == 422


@pytest.mark.asyncio
async def test_store_failures_map_to_500(client, fake_redis):
    fake_redis.fail("zadd")
    resp = await client.post("/api/v1/submit", json={"code": "ABCD", "price": 1})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "failed to submit"

    fake_redis.fail("zrevrange")
    resp = await client.get("/api/v1/feed")
    assert resp.status_code == 500
    assert resp.json()["detail"] == "failed to fetch feed"


@pytest.mark.asyncio
async def test_submit_is_rate_limited_per_client(client, fake_redis):
    ServiceContainer.initialize(fake_redis, _settings(RATE_LIMIT_MAX=2))
    for _ in range(2):
        resp = await client.post("/api/v1/submit", json={"code": "ABCD", "price": 1})
        assert resp.status_code == 201

    resp = await client.post("/api/v1/submit", json={"code": "ABCD", "price": 1})
    assert resp.status_code == 429
    assert resp.json()["detail"] == "Too many requests, please try again later."

    other = await client.post(
        "/api/v1/submit",
        json={"code": "ABCD", "price": 1},
        headers={"X-Forwarded-For": "10.0.0.9, 10.0.0.1"},
    )
    assert other.status_code == 201


@pytest.mark.asyncio
async def test_rate_limit_fails_open_when_counter_unavailable(client, fake_redis):
    ServiceContainer.initialize(fake_redis, _settings(RATE_LIMIT_MAX=1))
    fake_redis.fail("incr")
    for _ in range(3):
        resp = await client.post("/api/v1/submit", json={"code": "ABCD", "price": 1})
        assert resp.status_code == 201


@pytest.mark.asyncio
async def test_feedback_from_guest_and_user(client):
    resp = await client.post("/api/v1/feedback", json={"code": " abc ", "reason": "looks fake"})
    assert resp.status_code == 201
    assert resp.json()["reporter"] == "guest"
    assert resp.json()["code"] == "ABC"

    token = await _login_token("alice")
    resp = await client.post("/api/v1/feedback", json={"code": "abc", "reason": "again"}, headers=_bearer(token))
    assert resp.json()["reporter"] == "alice"

    assert (await client.post("/api/v1/feedback", json={"code": "abc", "reason": " "})).status_code == 400
    too_long = await client.post("/api/v1/feedback", json={"code": "abc", "reason": "x" * 301})
    assert too_long.status_code == 400
    assert too_long.json()["detail"] == "reason too long"


# ============================================
# 账号
# ============================================

@pytest.mark.asyncio
async def test_register_login_me_logout(client, fake_redis):
    captcha = (await client.get("/api/v1/auth/captcha")).json()
    resp = await client.post("/api/v1/auth/register", json={
        "username": "alice", "password": "secret1",
        "captchaId": captcha["captchaId"], "captchaCode": captcha["code"].lower(),
    })
    assert resp.status_code == 201
    assert resp.json()["username"] == "alice"

    # 验证码只能使用一次
    reused = await client.post("/api/v1/auth/login", json={
        "username": "alice", "password": "secret1",
        "captchaId": captcha["captchaId"], "captchaCode": captcha["code"],
    })
    assert reused.status_code == 400
    assert reused.json()["detail"] == "invalid captcha"

    captcha = (await client.get("/api/v1/auth/captcha")).json()
    resp = await client.post("/api/v1/auth/login", json={
        "username": "alice", "password": "secret1",
        "captchaId": captcha["captchaId"], "captchaCode": captcha["code"],
    })
    assert resp.status_code == 200
    token = resp.json()["token"]
    assert resp.json()["isAdmin"] is False
    assert fake_redis.ttls[SESSION_KEY_PREFIX + token] == 3600

    me = await client.get("/api/v1/auth/me", headers=_bearer(token))
    assert me.json()["username"] == "alice"

    assert (await client.post("/api/v1/auth/logout", headers=_bearer(token))).status_code == 200
    after = await client.get("/api/v1/auth/me", headers=_bearer(token))
    assert after.status_code == 401
    assert after.json()["detail"] == "Session expired"


@pytest.mark.asyncio
async def test_register_validation(client):
    captcha = (await client.get("/api/v1/auth/captcha")).json()
    short = await client.post("/api/v1/auth/register", json={
        "username": "al", "password": "secret1",
        "captchaId": captcha["captchaId"], "captchaCode": captcha["code"],
    })
    assert short.status_code == 400

    wrong = await client.post("/api/v1/auth/register", json={
        "username": "alice", "password": "secret1",
        "captchaId": captcha["captchaId"], "captchaCode": "????",
    })
    assert wrong.status_code == 400
    assert wrong.json()["detail"] == "invalid captcha"


@pytest.mark.asyncio
async def test_login_rejects_bad_password_and_banned_account(client):
    auth_service = ServiceContainer.get_auth_service()
    await auth_service.create_user("bob", "secret1")

    async def _login(password):
        captcha = (await client.get("/api/v1/auth/captcha")).json()
        return await client.post("/api/v1/auth/login", json={
            "username": "bob", "password": password,
            "captchaId": captcha["captchaId"], "captchaCode": captcha["code"],
        })

    assert (await _login("nope-nope")).status_code == 401
    await auth_service.set_banned("bob", True)
    resp = await _login("secret1")
    assert resp.status_code == 403
    assert resp.json()["detail"] == "account banned"


# ============================================
# 管理
# ============================================

@pytest.mark.asyncio
async def test_admin_routes_require_admin(client):
    resp = await client.get("/api/v1/admin/logs")
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Not authenticated"

    token = await _login_token("alice")
    resp = await client.get("/api/v1/admin/logs", headers=_bearer(token))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "admin required"


@pytest.mark.asyncio
async def test_admin_delete_by_code(client):
    token = await _login_token("root", is_admin=True)
    for code, price in [("ABC", 1), ("abc", 2), ("XYZ", 3)]:
        await client.post("/api/v1/submit", json={"code": code, "price": price})

    resp = await client.delete("/api/v1/admin/prices/abc", headers=_bearer(token))
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "removed_time": 2, "removed_price": 2}

    feed = (await client.get("/api/v1/feed")).json()
    assert [item["code"] for item in feed] == ["XYZ"]

    logs = (await client.get("/api/v1/admin/logs", headers=_bearer(token))).json()
    assert logs[0]["type"] == "price_deleted"
    assert logs[0]["actor"] == "root"
    assert logs[0]["metadata"]["removedTime"] == "2"


@pytest.mark.asyncio
async def test_admin_delete_partial_failure_is_audited(client, fake_redis):
    token = await _login_token("root", is_admin=True)
    await client.post("/api/v1/submit", json={"code": "ABC", "price": 1})
    fake_redis.fail("zscan", lambda key, *rest: key == FEED_PRICE_KEY)

    resp = await client.delete("/api/v1/admin/prices/ABC", headers=_bearer(token))
    assert resp.status_code == 500
    assert resp.json()["detail"] == "failed to delete code"

    logs = (await client.get("/api/v1/admin/logs", headers=_bearer(token))).json()
    assert logs[0]["type"] == "price_delete_failed"
    assert logs[0]["metadata"]["removedTime"] == "1"
    assert logs[0]["metadata"]["removedPrice"] == "0"


@pytest.mark.asyncio
async def test_admin_resolve_feedback_with_delete(client):
    token = await _login_token("root", is_admin=True)
    await client.post("/api/v1/submit", json={"code": "ABC", "price": 1})
    feedback = (await client.post("/api/v1/feedback", json={"code": "abc", "reason": "fake"})).json()

    pending = (await client.get(
        "/api/v1/admin/feedback", params={"includeResolved": "false"}, headers=_bearer(token)
    )).json()
    assert [item["id"] for item in pending] == [feedback["id"]]

    url = f"/api/v1/admin/feedback/{feedback['id']}/resolve"
    assert (await client.post(url, json={"action": "archive"}, headers=_bearer(token))).status_code == 400

    resp = await client.post(url, json={"action": "DELETE"}, headers=_bearer(token))
    assert resp.status_code == 200
    resolved = resp.json()
    assert resolved["resolved"] is True
    assert resolved["resolvedBy"] == "root"
    assert resolved["removedTime"] == 1
    assert (await client.get("/api/v1/feed")).json() == []

    again = await client.post(url, json={"action": "keep"}, headers=_bearer(token))
    assert again.status_code == 400
    assert again.json()["detail"] == "feedback already resolved"

    missing = await client.post("/api/v1/admin/feedback/nope/resolve", json={"action": "keep"}, headers=_bearer(token))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_manual_cleanup(client):
    token = await _login_token("root", is_admin=True)
    await client.post("/api/v1/submit", json={"code": "ABC", "price": 1})

    resp = await client.post("/api/v1/admin/prices/cleanup", headers=_bearer(token))
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "mode": "clear", "removed_time": 1, "removed_price": 1}

    logs = (await client.get("/api/v1/admin/logs", params={"limit": 1}, headers=_bearer(token))).json()
    assert logs[0]["type"] == "cleanup_finished"
    assert logs[0]["actor"] == "root"


@pytest.mark.asyncio
async def test_admin_user_management(client):
    token = await _login_token("root", is_admin=True)
    bob_token = await _login_token("bob")

    resp = await client.post(
        "/api/v1/admin/users", json={"username": "carol", "password": "secret1"}, headers=_bearer(token)
    )
    assert resp.status_code == 201
    assert "passwordHash" not in resp.json()

    dup = await client.post(
        "/api/v1/admin/users", json={"username": "carol", "password": "secret1"}, headers=_bearer(token)
    )
    assert dup.status_code == 400

    users = (await client.get("/api/v1/admin/users", headers=_bearer(token))).json()
    assert [u["username"] for u in users] == ["bob", "carol", "root"]

    resp = await client.patch("/api/v1/admin/users/bob/ban", json={"banned": True}, headers=_bearer(token))
    assert resp.json()["banned"] is True
    me = await client.get("/api/v1/auth/me", headers=_bearer(bob_token))
    assert me.status_code == 403

    missing = await client.patch("/api/v1/admin/users/nobody/ban", json={"banned": True}, headers=_bearer(token))
    assert missing.status_code == 404

    assert (await client.delete("/api/v1/admin/users/carol", headers=_bearer(token))).status_code == 200
    users = (await client.get("/api/v1/admin/users", headers=_bearer(token))).json()
    assert [u["username"] for u in users] == ["bob", "root"]

    types = [entry["type"] for entry in (await client.get("/api/v1/admin/logs", headers=_bearer(token))).json()]
    assert types[:3] == ["user_deleted", "user_ban_changed", "user_created"]


@pytest.mark.asyncio
async def test_health_reports_redis(client, fake_redis):
    assert (await client.get("/health")).json()["checks"]["redis"] == "connected"
    fake_redis.fail("ping")
    assert (await client.get("/health")).json()["status"] == "degraded"
