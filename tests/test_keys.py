"""Tests for querycache.keys: composite key building and parsing."""

import pytest

from querycache.keys import make_query_key, parse_query_key


# ── Building ───────────────────────────────────────────────────
@pytest.mark.parametrize(
    "args, expected",
    [
        (("balance", "addr1"), "balance:addr1"),
        (("balance", " addr1 "), "balance:addr1"),
        (("tokens", "addr1", "devnet"), "tokens:addr1:devnet"),
        (("slot",), "slot"),
        (("tx", "sig", 10), "tx:sig:10"),
        (("rpc", "https://api.devnet.solana.com"), "rpc:https%3A%2F%2Fapi.devnet.solana.com"),
    ],
)
def test_make_query_key(args, expected):
    assert make_query_key(*args) == expected


@pytest.mark.parametrize(
    "args",
    [
        ("",),
        ("   ",),
        ("balance", ""),
        ("balance", "addr1", "  "),
    ],
)
def test_make_query_key_rejects_empty_components(args):
    with pytest.raises(ValueError):
        make_query_key(*args)


# ── Parsing ────────────────────────────────────────────────────
def test_parse_query_key_restores_components():
    key = make_query_key("rpc", "https://api.devnet.solana.com", "getBalance")
    assert parse_query_key(key) == (
        "rpc",
        ["https://api.devnet.solana.com", "getBalance"],
    )


def test_parse_plain_key():
    assert parse_query_key("balance:addr1") == ("balance", ["addr1"])


@pytest.mark.parametrize("key", ["", "   "])
def test_parse_query_key_rejects_empty(key):
    with pytest.raises(ValueError):
        parse_query_key(key)
