"""
Order Service: ガーナの携帯番号 → キャリア判定

購入したバンドルのキャリアと、配信先番号のキャリアが一致するかを確認する。
番号は正規化 (0 始まりの 10 桁) してから先頭 3 桁のプレフィックスで判定する。
"""

import re
from enum import Enum

from pydantic import BaseModel


class GhanaNetwork(str, Enum):
    MTN = "mtn"
    TELECEL = "telecel"
    AIRTELTIGO = "airteltigo"
    AT_BIGTIME = "at_bigtime"
    AT_ISHARE = "at_ishare"


# AT 系の 3 商品は同じ番号帯を共有する
NETWORK_PREFIXES: dict[GhanaNetwork, list[str]] = {
    GhanaNetwork.MTN: ["024", "025", "053", "054", "055", "059"],
    GhanaNetwork.TELECEL: ["020", "050"],
    GhanaNetwork.AIRTELTIGO: ["026", "027", "056", "057"],
    GhanaNetwork.AT_BIGTIME: ["026", "027", "056", "057"],
    GhanaNetwork.AT_ISHARE: ["026", "027", "056", "057"],
}

NETWORK_DISPLAY_NAMES = {
    "mtn": "MTN Ghana",
    "telecel": "Telecel",
    "airteltigo": "AirtelTigo",
    "at_bigtime": "AT Bigtime",
    "at_ishare": "AT ishare",
}

COUNTRY_CODE = "233"
PHONE_LENGTH = 10


class PhoneValidation(BaseModel):
    is_valid: bool
    normalized: str
    detected_network: GhanaNetwork | None = None
    matches_expected: bool
    error: str | None = None


def normalize_phone_number(phone: str) -> str:
    """
    数字以外を取り除き、国番号 233 をローカルの 0 に置き換える。
    0 で始まらない場合は先頭に 0 を補う。
    """
    normalized = re.sub(r"[^0-9]", "", phone)
    if normalized.startswith(COUNTRY_CODE):
        normalized = "0" + normalized[len(COUNTRY_CODE):]
    if not normalized.startswith("0"):
        normalized = "0" + normalized
    return normalized


def is_valid_phone_length(phone: str) -> bool:
    return len(normalize_phone_number(phone)) == PHONE_LENGTH


def detect_network(phone: str) -> GhanaNetwork | None:
    """プレフィックス表で最初に一致したキャリアを返す。一致しなければ None。"""
    normalized = normalize_phone_number(phone)
    if len(normalized) != PHONE_LENGTH:
        return None

    prefix = normalized[:3]
    for network, prefixes in NETWORK_PREFIXES.items():
        if prefix in prefixes:
            return network
    return None


def network_prefixes(network: str) -> list[str]:
    try:
        return NETWORK_PREFIXES[GhanaNetwork(network.lower())]
    except ValueError:
        return []


def network_display_name(network: str) -> str:
    return NETWORK_DISPLAY_NAMES.get(network.lower(), network.upper())


def validate_phone_network(phone: str, expected_network: str) -> bool:
    """
    番号が期待キャリアの番号帯に属するか。

    AT Bigtime / AT ishare は AirtelTigo と番号帯を共有するので、
    detect_network の結果ではなく期待キャリア側のプレフィックス表で判定する。
    """
    if detect_network(phone) is None:
        return False
    return normalize_phone_number(phone)[:3] in network_prefixes(expected_network)


def network_mismatch_error(phone: str, expected_network: str) -> str:
    normalized = normalize_phone_number(phone)
    prefix = normalized[:3]

    if len(normalized) != PHONE_LENGTH:
        return (
            "Phone number must be exactly 10 digits including the prefix "
            "(e.g., 0241234567)"
        )

    expected_name = network_display_name(expected_network)
    valid_prefixes = ", ".join(network_prefixes(expected_network))

    detected = detect_network(phone)
    if detected is None:
        return (
            f"Invalid phone number. The prefix '{prefix}' does not belong to any "
            "supported network (MTN, Telecel, or AirtelTigo). "
            f"{expected_name} numbers start with: {valid_prefixes}"
        )

    detected_name = network_display_name(detected.value)
    return (
        f"Phone number mismatch! This number ({prefix}) belongs to {detected_name}, "
        f"but you selected {expected_name}. "
        f"{expected_name} numbers start with: {valid_prefixes}"
    )


def validate_phone_number_detailed(
    phone: str,
    expected_network: str | None = None,
) -> PhoneValidation:
    normalized = normalize_phone_number(phone)

    if len(normalized) != PHONE_LENGTH:
        return PhoneValidation(
            is_valid=False,
            normalized=normalized,
            matches_expected=False,
            error="Phone number must be exactly 10 digits",
        )

    detected = detect_network(normalized)
    if detected is None:
        error = f"Invalid prefix '{normalized[:3]}'. Not a valid Ghana mobile number"
        if expected_network:
            error = network_mismatch_error(normalized, expected_network)
        return PhoneValidation(
            is_valid=False,
            normalized=normalized,
            matches_expected=False,
            error=error,
        )

    if expected_network and not validate_phone_network(normalized, expected_network):
        return PhoneValidation(
            is_valid=False,
            normalized=normalized,
            detected_network=detected,
            matches_expected=False,
            error=network_mismatch_error(normalized, expected_network),
        )

    return PhoneValidation(
        is_valid=True,
        normalized=normalized,
        detected_network=detected,
        matches_expected=True,
    )
