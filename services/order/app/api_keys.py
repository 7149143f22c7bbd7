"""
Order Service: 外部連携用 API キー

キーは生成時に一度だけ利用者へ返し、DB にはハッシュのみ保存する。
検証は提示されたキーを再ハッシュし、定数時間比較で照合する。
"""

import hashlib
import hmac
import json
import re
import secrets
import time

SECRET_KEY_PATTERN = re.compile(r"^sk_[a-z0-9]+_[a-f0-9]{64}$")
PUBLIC_KEY_PATTERN = re.compile(r"^pk_[a-f0-9]{32}$")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class InvalidApiKey(Exception):
    pass


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_secret_key(prefix: str = "sk") -> str:
    """
    sk_<発行時刻(ms, base36)>_<256bit の乱数(hex)> 形式の秘密キーを生成する。
    時刻部分は監査用。
    """
    timestamp = _to_base36(int(time.time() * 1000))
    return f"{prefix}_{timestamp}_{secrets.token_hex(32)}"


def generate_public_key() -> str:
    return f"pk_{secrets.token_hex(16)}"


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def verify_api_key(key: str, hashed: str) -> bool:
    return hmac.compare_digest(hash_api_key(key), hashed)


def validate_api_key_format(key: str) -> bool:
    return bool(SECRET_KEY_PATTERN.fullmatch(key) or PUBLIC_KEY_PATTERN.fullmatch(key))


def mask_api_key(key: str) -> str:
    if not key or len(key) < 12:
        return key
    return f"{key[:8]}****{key[-4:]}"


def has_permissions(permissions: str, required: list[str]) -> bool:
    """permissions は {"transactions": true, ...} 形式の JSON 文字列。"""
    try:
        granted = json.loads(permissions)
    except (TypeError, ValueError):
        return False
    if not isinstance(granted, dict):
        return False
    return all(granted.get(name) is True for name in required)
