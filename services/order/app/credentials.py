"""
Order Service: API キーの保存と認証

DB にはキーのハッシュとマスク済みプレビューのみを保存する。
生のキーは issue_api_key の戻り値として一度だけ返す。
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .api_keys import (
    InvalidApiKey,
    generate_public_key,
    generate_secret_key,
    hash_api_key,
    mask_api_key,
    validate_api_key_format,
    verify_api_key,
)
from .db import api_keys

logger = logging.getLogger(__name__)


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "name": row.name,
        "key_preview": row.key_preview,
        "permissions": json.loads(row.permissions or "{}"),
        "is_active": bool(row.is_active),
        "last_used": row.last_used.isoformat() if row.last_used else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def issue_api_key(
    session: AsyncSession,
    user_id: str,
    name: str,
    permissions: dict | None = None,
    kind: str = "secret",
) -> tuple[dict, str]:
    """新しいキーを発行し (保存したレコード, 生のキー) を返す。"""
    raw_key = generate_public_key() if kind == "public" else generate_secret_key()
    now = datetime.now(timezone.utc)
    values = {
        "id": str(uuid4()),
        "user_id": user_id,
        "name": name,
        "key_hash": hash_api_key(raw_key),
        "key_preview": mask_api_key(raw_key),
        "permissions": json.dumps(permissions or {}),
        "is_active": True,
        "created_at": now,
    }
    await session.execute(insert(api_keys).values(**values))
    await session.commit()
    logger.info("Issued %s API key %s for user %s", kind, values["key_preview"], user_id)

    record = {
        "id": values["id"],
        "user_id": user_id,
        "name": name,
        "key_preview": values["key_preview"],
        "permissions": permissions or {},
        "is_active": True,
        "last_used": None,
        "created_at": now.isoformat(),
    }
    return record, raw_key


async def authenticate_api_key(session: AsyncSession, raw_key: str) -> dict:
    """
    提示されたキーを検証する。

    形式チェックで明らかに不正な入力を DB に触れずに弾き、
    ハッシュで引いた後に定数時間比較で照合する。
    """
    if not raw_key or not validate_api_key_format(raw_key):
        raise InvalidApiKey("Malformed API key")

    key_hash = hash_api_key(raw_key)
    result = await session.execute(select(api_keys).where(api_keys.c.key_hash == key_hash))
    row = result.fetchone()
    if row is None or not verify_api_key(raw_key, row.key_hash):
        raise InvalidApiKey("Unknown API key")
    if not row.is_active:
        raise InvalidApiKey("API key has been revoked")

    now = datetime.now(timezone.utc)
    await session.execute(update(api_keys).where(api_keys.c.id == row.id).values(last_used=now))
    await session.commit()

    record = _to_dict(row)
    record["permissions_json"] = row.permissions
    record["last_used"] = now.isoformat()
    return record


async def list_api_keys(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(api_keys)
        .where(api_keys.c.user_id == user_id)
        .order_by(api_keys.c.created_at.desc())
    )
    return [_to_dict(row) for row in result.fetchall()]


async def revoke_api_key(session: AsyncSession, key_id: str) -> bool:
    result = await session.execute(
        update(api_keys).where(api_keys.c.id == key_id).values(is_active=False)
    )
    await session.commit()
    if result.rowcount:
        logger.info("Revoked API key %s", key_id)
    return bool(result.rowcount)
