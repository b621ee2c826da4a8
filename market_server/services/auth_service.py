"""
账号服务 - 用户、密码、验证码、会话
所有数据都存放在 Redis 中
"""
import asyncio
import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import replace
from typing import Optional

from ..db.redis_schema import (
    CAPTCHA_KEY_PREFIX,
    SESSION_KEY_PREFIX,
    USER_INDEX_KEY,
    USER_KEY_PREFIX,
)
from ..errors import AccountBanned, InvalidCredentials, UserAlreadyExists, UserNotFound
from ..models import User

logger = logging.getLogger(__name__)

CAPTCHA_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CAPTCHA_LENGTH = 4
CAPTCHA_TTL_SECONDS = 5 * 60

# 单次哈希耗时百毫秒级, 调用方通过 asyncio.to_thread 放到线程池执行
PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    iterations = iterations or PBKDF2_ITERATIONS
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def random_code(length: int = CAPTCHA_LENGTH) -> str:
    return "".join(secrets.choice(CAPTCHA_CHARSET) for _ in range(length))


class AuthService:
    def __init__(self, redis, session_ttl_seconds: int = 72 * 3600):
        self.redis = redis
        self.session_ttl_seconds = session_ttl_seconds

    # ------------------------------------------------------------------
    # 用户
    # ------------------------------------------------------------------

    async def register(self, username: str, password: str) -> User:
        return await self.create_user(username, password, is_admin=False)

    async def create_user(self, username: str, password: str, is_admin: bool = False) -> User:
        if await self.redis.exists(USER_KEY_PREFIX + username):
            raise UserAlreadyExists("username already exists")

        user = User(
            id=str(uuid.uuid4()),
            username=username,
            password_hash=await asyncio.to_thread(hash_password, password),
            is_admin=is_admin,
        )
        await self._save_user(user)
        return user

    async def get_user(self, username: str) -> User:
        raw = await self.redis.get(USER_KEY_PREFIX + username)
        if raw is None:
            raise UserNotFound(username)
        user = User.from_json(raw)
        if user is None:
            raise UserNotFound(username)
        return user

    async def list_users(self) -> list[User]:
        usernames = list(await self.redis.smembers(USER_INDEX_KEY))
        if not usernames:
            # 旧数据可能没有写入用户索引
            async for key in self.redis.scan_iter(match=USER_KEY_PREFIX + "*", count=200):
                name = key[len(USER_KEY_PREFIX):]
                if name:
                    usernames.append(name)

        users = []
        for username in sorted(usernames):
            try:
                users.append(await self.get_user(username))
            except UserNotFound:
                continue
        return users

    async def set_banned(self, username: str, banned: bool) -> User:
        user = replace(await self.get_user(username), banned=banned)
        await self._save_user(user)
        return user

    async def delete_user(self, username: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(USER_KEY_PREFIX + username)
        pipe.srem(USER_INDEX_KEY, username)
        await pipe.execute()

    async def is_banned(self, username: str) -> bool:
        return (await self.get_user(username)).banned

    async def ensure_admin(self, username: str, password: str) -> Optional[User]:
        """启动时确保管理员账号存在, 已存在时提升为管理员并重置密码"""
        if not username or not password:
            return None
        try:
            user = await self.get_user(username)
        except UserNotFound:
            user = await self.create_user(username, password, is_admin=True)
            logger.info(f"✅ 已创建管理员账号 {username}")
            return user

        password_hash = await asyncio.to_thread(hash_password, password)
        user = replace(user, is_admin=True, password_hash=password_hash)
        await self._save_user(user)
        logger.info(f"✅ 已更新管理员账号 {username}")
        return user

    async def authenticate(self, username: str, password: str) -> User:
        try:
            user = await self.get_user(username)
        except UserNotFound:
            raise InvalidCredentials("invalid credentials")
        if user.banned:
            raise AccountBanned("account banned")
        if not await asyncio.to_thread(verify_password, password, user.password_hash):
            raise InvalidCredentials("invalid credentials")
        return user

    async def _save_user(self, user: User) -> None:
        pipe = self.redis.pipeline(transaction=False)
        pipe.set(USER_KEY_PREFIX + user.username, user.to_json())
        pipe.sadd(USER_INDEX_KEY, user.username)
        await pipe.execute()

    # ------------------------------------------------------------------
    # 验证码
    # ------------------------------------------------------------------

    async def create_captcha(self) -> tuple[str, str]:
        captcha_id = str(uuid.uuid4())
        code = random_code()
        await self.redis.set(CAPTCHA_KEY_PREFIX + captcha_id, code, ex=CAPTCHA_TTL_SECONDS)
        return captcha_id, code

    async def verify_captcha(self, captcha_id: str, code: str) -> bool:
        if not captcha_id or not code:
            return False
        expected = await self.redis.get(CAPTCHA_KEY_PREFIX + captcha_id)
        if expected is None:
            return False
        return expected.casefold() == code.casefold()

    async def delete_captcha(self, captcha_id: str) -> None:
        if captcha_id:
            await self.redis.delete(CAPTCHA_KEY_PREFIX + captcha_id)

    # ------------------------------------------------------------------
    # 会话
    # ------------------------------------------------------------------

    async def create_session(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        await self.redis.set(SESSION_KEY_PREFIX + token, username, ex=self.session_ttl_seconds)
        return token

    async def delete_session(self, token: str) -> None:
        await self.redis.delete(SESSION_KEY_PREFIX + token)

    async def resolve_session(self, token: str) -> Optional[str]:
        if not token:
            return None
        username = await self.redis.get(SESSION_KEY_PREFIX + token)
        if isinstance(username, (bytes, bytearray)):
            username = username.decode("utf-8")
        return username or None
