import pytest

from app.network import (
    NETWORK_PREFIXES,
    GhanaNetwork,
    detect_network,
    is_valid_phone_length,
    network_display_name,
    network_mismatch_error,
    normalize_phone_number,
    validate_phone_network,
    validate_phone_number_detailed,
)


@pytest.mark.parametrize(
    "raw",
    ["0241234567", "241234567", "233241234567", "+233 24 123 4567", "024-123-4567", "(024) 123 4567"],
)
def test_normalize_local_and_international_forms(raw):
    normalized = normalize_phone_number(raw)
    assert normalized == "0241234567"
    assert len(normalized) == 10
    assert is_valid_phone_length(raw)


def test_normalize_keeps_wrong_lengths_detectable():
    assert normalize_phone_number("02412345") == "02412345"
    assert not is_valid_phone_length("02412345")
    assert not is_valid_phone_length("024123456789")
    assert not is_valid_phone_length("")


@pytest.mark.parametrize(
    "raw",
    [
        "０２４１２３４５６７",  # 全角
        "024١٢٣٤٥٦٧",  # アラビア・インド数字
    ],
)
def test_normalize_ignores_non_ascii_digits(raw):
    assert not normalize_phone_number(raw).startswith("0241234567")
    assert not is_valid_phone_length(raw)
    assert detect_network(raw) is None


def test_detect_network_for_every_known_prefix():
    for network, prefixes in NETWORK_PREFIXES.items():
        for prefix in prefixes:
            detected = detect_network(f"{prefix}1234567")
            if network in (GhanaNetwork.AT_BIGTIME, GhanaNetwork.AT_ISHARE):
                # AT 系は AirtelTigo と番号帯を共有する
                assert detected == GhanaNetwork.AIRTELTIGO
            else:
                assert detected == network


@pytest.mark.parametrize("prefix", ["021", "023", "028", "051", "058", "099", "012"])
def test_detect_network_unknown_prefix(prefix):
    assert detect_network(f"{prefix}1234567") is None


def test_detect_network_rejects_wrong_length():
    assert detect_network("0241234") is None


def test_validate_phone_network_shared_airteltigo_prefixes():
    assert validate_phone_network("0261234567", "airteltigo")
    assert validate_phone_network("0261234567", "at_bigtime")
    assert validate_phone_network("0571234567", "AT_ISHARE")
    assert not validate_phone_network("0261234567", "mtn")
    assert not validate_phone_network("0211234567", "mtn")


def test_mismatch_error_lists_expected_prefixes():
    message = network_mismatch_error("0201234567", "mtn")
    assert "belongs to Telecel" in message
    assert "you selected MTN Ghana" in message
    assert "024, 025, 053, 054, 055, 059" in message


def test_unknown_prefix_error_lists_expected_prefixes():
    result = validate_phone_number_detailed("0211234567", "telecel")
    assert not result.is_valid
    assert result.detected_network is None
    assert "'021'" in result.error
    assert "Telecel numbers start with: 020, 050" in result.error


def test_detailed_validation_success():
    result = validate_phone_number_detailed("+233 55 123 4567", "mtn")
    assert result.is_valid
    assert result.normalized == "0551234567"
    assert result.detected_network == GhanaNetwork.MTN
    assert result.matches_expected
    assert result.error is None


def test_detailed_validation_length_error():
    result = validate_phone_number_detailed("05512345")
    assert not result.is_valid
    assert result.error == "Phone number must be exactly 10 digits"


def test_display_names():
    assert network_display_name("MTN") == "MTN Ghana"
    assert network_display_name("at_ishare") == "AT ishare"
    assert network_display_name("glo") == "GLO"
