"""
Tests for the DEXtools market data provider (HTTP session mocked).
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from core.exceptions import DataUnavailable
from core.market_data import DexToolsProvider, _parse_decimal


def _session(payload=None, json_error=None, http_error=None, get_error=None):
    session = MagicMock()
    response = MagicMock()
    if json_error is not None:
        response.json.side_effect = json_error
    else:
        response.json.return_value = payload
    if http_error is not None:
        response.raise_for_status.side_effect = http_error
    session.get.return_value = response
    if get_error is not None:
        session.get.side_effect = get_error
    return session


TOKEN_PAYLOAD = {
    "statusCode": 200,
    "data": {
        "price": "1.25",
        "volume24h": 5000,
        "marketCap": 250000,
        "liquidity": 12000.5,
    },
}


def test_fetch_parses_snapshot():
    session = _session(TOKEN_PAYLOAD)
    provider = DexToolsProvider(api_key="k", base_url="https://example.test/v1/", chain="bsc", session=session)

    snapshot = provider.fetch("0xabc")

    assert snapshot.asset == "0xabc"
    assert snapshot.price == Decimal("1.25")
    assert snapshot.volume == Decimal("5000")
    assert snapshot.market_cap == Decimal("250000")
    assert snapshot.liquidity == Decimal("12000.5")
    assert snapshot.is_complete
    session.get.assert_called_once_with(
        "https://example.test/v1/token",
        params={"chain": "bsc", "address": "0xabc"},
        headers={"Accept": "application/json", "X-API-Key": "k"},
        timeout=10.0,
    )


def test_invalid_fields_become_missing():
    payload = {"data": {"price": "n/a", "volume24h": -5, "marketCap": None}}
    snapshot = DexToolsProvider(api_key="k", session=_session(payload)).fetch("0xabc")
    assert snapshot.price is None
    assert snapshot.volume is None
    assert snapshot.market_cap is None
    assert not snapshot.is_complete


@pytest.mark.parametrize("kwargs", [
    {"http_error": requests.HTTPError("500 Server Error", response=MagicMock(status_code=500))},
    {"get_error": requests.Timeout("slow")},
    {"get_error": requests.ConnectionError("down")},
    {"json_error": ValueError("not json")},
    {"payload": {"error": "rate limited"}},
    {"payload": ["not", "a", "dict"]},
])
def test_failures_raise_data_unavailable(kwargs):
    provider = DexToolsProvider(api_key="k", session=_session(**kwargs))
    with pytest.raises(DataUnavailable) as exc_info:
        provider.fetch("0xabc")
    assert "0xabc" in exc_info.value.source


def test_network_error_keeps_original():
    error = requests.Timeout("slow")
    provider = DexToolsProvider(api_key="k", session=_session(get_error=error))
    with pytest.raises(DataUnavailable) as exc_info:
        provider.fetch("0xabc")
    assert exc_info.value.original is error


def test_no_api_key_header_when_unset():
    session = _session(TOKEN_PAYLOAD)
    DexToolsProvider(api_key=None, session=session).fetch("0xabc")
    assert "X-API-Key" not in session.get.call_args.kwargs["headers"]


def test_from_config_reads_key_from_env(monkeypatch):
    monkeypatch.setenv("TEST_DEXTOOLS_KEY", "secret")
    provider = DexToolsProvider.from_config({
        "api_key_env": "TEST_DEXTOOLS_KEY",
        "base_url": "https://example.test/v2",
        "chain": "bsc",
        "timeout_seconds": 3,
    })
    assert provider.api_key == "secret"
    assert provider.base_url == "https://example.test/v2"
    assert provider.chain == "bsc"
    assert provider.timeout == 3.0


@pytest.mark.parametrize("raw,expected", [
    ("0.5", Decimal("0.5")),
    (12, Decimal("12")),
    (0, Decimal("0")),
    (None, None),
    (True, None),
    ("NaN", None),
    ("-1", None),
    ({}, None),
])
def test_parse_decimal(raw, expected):
    assert _parse_decimal(raw) == expected
