"""
领域对象
PriceRecord 序列化后的 JSON 字符串本身就是有序集合的 member
"""
import json
import math
from dataclasses import dataclass, field, replace
from typing import Any, Optional


def _dumps(data: dict) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def _loads_object(raw: Any) -> Optional[dict]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _is_number(v) -> bool:
    # json.loads 会把 1e999 / NaN / Infinity 解码成非有限浮点数
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


@dataclass(frozen=True)
class PriceRecord:
    code: str
    price: float
    server: str = ""
    timestamp: int = 0

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"code": self.code, "price": self.price}
        if self.server:
            data["server"] = self.server
        data["ts"] = self.timestamp
        return data

    def to_member(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_member(cls, member) -> Optional["PriceRecord"]:
        """解码有序集合 member, 无法解码时返回 None"""
        data = _loads_object(member)
        if data is None:
            return None
        code = data.get("code")
        price = data.get("price")
        if not isinstance(code, str) or not _is_number(price):
            return None
        server = data.get("server") or ""
        ts = data.get("ts") or 0
        if not isinstance(server, str) or not _is_number(ts):
            return None
        return cls(code=code, price=float(price), server=server, timestamp=int(ts))


@dataclass(frozen=True)
class FeedbackMessage:
    id: str
    code: str
    reason: str
    reporter: str
    created_at: int
    resolved: bool = False
    resolved_at: int = 0
    resolved_by: str = ""
    action: str = ""
    removed_time: int = 0
    removed_price: int = 0

    def resolve(self, resolver: str, action: str, at: int, removed_time: int, removed_price: int) -> "FeedbackMessage":
        return replace(
            self,
            resolved=True,
            resolved_at=at,
            resolved_by=resolver,
            action=action,
            removed_time=removed_time,
            removed_price=removed_price,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "code": self.code,
            "reason": self.reason,
            "reporter": self.reporter,
            "createdAt": self.created_at,
            "resolved": self.resolved,
        }
        optional = {
            "resolvedAt": self.resolved_at,
            "resolvedBy": self.resolved_by,
            "action": self.action,
            "removedTime": self.removed_time,
            "removedPrice": self.removed_price,
        }
        data.update({k: v for k, v in optional.items() if v})
        return data

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw) -> Optional["FeedbackMessage"]:
        data = _loads_object(raw)
        if data is None or not isinstance(data.get("id"), str):
            return None
        try:
            return cls(
                id=data["id"],
                code=str(data.get("code", "")),
                reason=str(data.get("reason", "")),
                reporter=str(data.get("reporter", "")),
                created_at=int(data.get("createdAt", 0)),
                resolved=bool(data.get("resolved", False)),
                resolved_at=int(data.get("resolvedAt", 0)),
                resolved_by=str(data.get("resolvedBy", "")),
                action=str(data.get("action", "")),
                removed_time=int(data.get("removedTime", 0)),
                removed_price=int(data.get("removedPrice", 0)),
            )
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class AdminLogEntry:
    type: str
    message: str
    actor: str = ""
    timestamp: int = 0
    id: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "actor": self.actor,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    def to_json(self) -> str:
        return _dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw) -> Optional["AdminLogEntry"]:
        data = _loads_object(raw)
        if data is None:
            return None
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            return None
        try:
            return cls(
                id=str(data.get("id", "")),
                type=str(data.get("type", "")),
                message=str(data.get("message", "")),
                actor=str(data.get("actor", "")),
                timestamp=int(data.get("timestamp", 0)),
                metadata={str(k): str(v) for k, v in metadata.items()},
            )
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class User:
    id: str
    username: str
    password_hash: str
    is_admin: bool = False
    banned: bool = False

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "isAdmin": self.is_admin,
            "banned": self.banned,
        }

    def to_json(self) -> str:
        data = self.to_public()
        data["passwordHash"] = self.password_hash
        return _dumps(data)

    @classmethod
    def from_json(cls, raw) -> Optional["User"]:
        data = _loads_object(raw)
        if data is None or not isinstance(data.get("username"), str):
            return None
        return cls(
            id=str(data.get("id", "")),
            username=data["username"],
            password_hash=str(data.get("passwordHash", "")),
            is_admin=bool(data.get("isAdmin", False)),
            banned=bool(data.get("banned", False)),
        )
