"""Tests for drawguard.broker — MT API client with mocked HTTP responses."""

from datetime import datetime, timezone

import httpx
import pytest

from drawguard.broker.models import AccountSummary
from drawguard.broker.mtapi_client import MtApiClient
from drawguard.config import Config
from drawguard.errors import BrokerError, SessionExpiredError, TransientBrokerError


def _make_config() -> Config:
    return Config(
        broker_base_url="http://mtapi.test:5000",
        live_feed_url="ws://mtapi.test:5001/events",
        db_path="data/drawguard.db",
        log_level="INFO",
        health_port=8080,
        poll_interval_seconds=240,
        poll_concurrency=5,
        broker_timeout_seconds=30.0,
        reconnect_attempts=3,
        session_ttl_hours=24,
        trading_timezone="Asia/Tehran",
        broker_timezone="Europe/Istanbul",
        daily_reset_time="01:30",
        order_history_start="2025-06-01",
    )


def _client() -> MtApiClient:
    return MtApiClient(_make_config(), retry_base_delay=0.0)


# ── Mock MT API responses ───────────────────────────────────────────────

SESSION_ID = "0f8c2b1e-4d6a-4b7e-9a51-3c2d1e0f9a8b"

MOCK_ACCOUNT_SUMMARY = {
    "balance": 10000.0,
    "equity": 10150.5,
    "currency": "USD",
    "margin": 120.0,
    "freeMargin": 10030.5,
    "leverage": 100,
}

MOCK_ORDER_HISTORY = {
    "orders": [
        {
            "ticket": 5001,
            "symbol": "",
            "dealType": "Balance",
            "lots": 0,
            "profit": 10000.0,
            "openTime": "2025-06-02T10:00:00",
            "closeTime": "2025-06-02T10:00:00",
            "comment": "Demo deposit",
        },
        {
            "ticket": 5002,
            "symbol": "EURUSD",
            "orderType": "Buy",
            "lots": 0.5,
            "openPrice": 1.0921,
            "closePrice": 1.0954,
            "profit": 165.0,
            "swap": -1.2,
            "commission": -3.5,
            "openTime": "2025-06-10T11:00:00",
            "closeTime": "2025-06-10T13:30:00",
            "comment": "",
        },
        {
            "ticket": 5003,
            "symbol": "XAUUSD",
            "orderType": "Sell",
            "lots": 0.1,
            "openPrice": 2330.1,
            "profit": -12.0,
            "openTime": "2025-06-10T14:00:00",
            "closeTime": "1970-01-01T00:00:00",
        },
        {"symbol": "ignored, no ticket"},
    ]
}


def _responder(status=200, json_body=None, text=None, calls=None):
    async def _mock_get(self, url, *, headers=None, params=None, timeout=None):
        if calls is not None:
            calls.append({"url": url, "params": params})
        kwargs = {"json": json_body} if json_body is not None else {"text": text or ""}
        return httpx.Response(status, request=httpx.Request("GET", url), **kwargs)
    return _mock_get


# ── Tests ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_connect_returns_session_id(monkeypatch):
    """ConnectEx answers with a bare (sometimes quoted) session id."""
    calls = []
    monkeypatch.setattr(
        httpx.AsyncClient, "get", _responder(text=f'"{SESSION_ID}"\n', calls=calls)
    )

    session_id = await _client().connect("1001", "investor", "Demo-Server")

    assert session_id == SESSION_ID
    assert calls[0]["url"] == "http://mtapi.test:5000/ConnectEx"
    assert calls[0]["params"]["user"] == "1001"
    assert calls[0]["params"]["server"] == "Demo-Server"


@pytest.mark.asyncio
async def test_connect_rejects_short_session_id(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(text="error"))
    with pytest.raises(BrokerError):
        await _client().connect("1001", "investor", "Demo-Server")


@pytest.mark.asyncio
async def test_connect_invalid_credentials(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(status=401, text="denied"))
    with pytest.raises(BrokerError, match="Invalid credentials"):
        await _client().connect("1001", "wrong", "Demo-Server")


@pytest.mark.asyncio
async def test_account_summary(monkeypatch):
    """AccountSummary fields populated correctly from mock JSON."""
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(json_body=MOCK_ACCOUNT_SUMMARY))

    summary = await _client().account_summary(SESSION_ID)

    assert isinstance(summary, AccountSummary)
    assert summary.balance == 10000.0
    assert summary.equity == 10150.5
    assert summary.currency == "USD"
    assert summary.free_margin == 10030.5
    assert summary.leverage == 100.0


@pytest.mark.asyncio
async def test_account_summary_without_equity(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(json_body={"balance": 1.0}))
    with pytest.raises(BrokerError):
        await _client().account_summary(SESSION_ID)


@pytest.mark.asyncio
async def test_session_rejected(monkeypatch):
    """401 means the session is gone; no retry."""
    calls = []
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(status=401, text="", calls=calls))
    with pytest.raises(SessionExpiredError):
        await _client().account_summary(SESSION_ID)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_errors_retried_then_transient(monkeypatch):
    calls = []
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(status=503, text="", calls=calls))
    with pytest.raises(TransientBrokerError):
        await _client().account_summary(SESSION_ID)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transport_error_retried(monkeypatch):
    attempts = []

    async def _mock_get(self, url, *, headers=None, params=None, timeout=None):
        attempts.append(url)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused")
        return httpx.Response(
            200, json=MOCK_ACCOUNT_SUMMARY, request=httpx.Request("GET", url)
        )

    monkeypatch.setattr(httpx.AsyncClient, "get", _mock_get)
    summary = await _client().account_summary(SESSION_ID)
    assert summary.equity == 10150.5
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_client_error_not_retried(monkeypatch):
    calls = []
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(status=400, text="bad", calls=calls))
    with pytest.raises(BrokerError) as excinfo:
        await _client().account_summary(SESSION_ID)
    assert not isinstance(excinfo.value, TransientBrokerError)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_order_history_parsing(monkeypatch):
    """Orders parsed, timestamps moved from broker time to UTC."""
    calls = []
    monkeypatch.setattr(
        httpx.AsyncClient, "get", _responder(json_body=MOCK_ORDER_HISTORY, calls=calls)
    )

    orders = await _client().order_history(
        SESSION_ID,
        datetime(2025, 6, 1, tzinfo=timezone.utc),
        datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc),
    )

    assert [o.order_id for o in orders] == [5001, 5002, 5003]

    deposit, trade, still_open = orders
    assert deposit.type == "balance"
    assert deposit.is_demo_deposit is True

    assert trade.type == "buy"
    assert trade.volume == 0.5
    assert trade.is_demo_deposit is False
    # Istanbul is UTC+3
    assert trade.time_open == "2025-06-10T08:00:00+00:00"
    assert trade.time_close == "2025-06-10T10:30:00+00:00"

    assert still_open.time_close is None
    assert still_open.price_close is None

    params = calls[0]["params"]
    assert params["from"] == "2025-06-01T03:00:00"
    assert params["to"] == "2025-06-10T15:00:00"
    assert params["sort"] == "CloseTime"


@pytest.mark.asyncio
async def test_disconnect_never_raises(monkeypatch):
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(status=500, text=""))
    await _client().disconnect(SESSION_ID)


@pytest.mark.asyncio
async def test_order_history_skips_orders_without_times(monkeypatch):
    body = {"orders": [
        {"ticket": 6001, "symbol": "EURUSD", "orderType": "Buy", "profit": 5.0},
        {"ticket": 6002, "symbol": "EURUSD", "orderType": "Buy", "profit": 7.0,
         "openTime": "1970-01-01T00:00:00", "closeTime": "1970-01-01T00:00:00"},
        {"ticket": 6003, "symbol": "EURUSD", "orderType": "Sell", "profit": -3.0,
         "openTime": "2025-06-10T11:00:00", "closeTime": "2025-06-10T12:00:00"},
    ]}
    monkeypatch.setattr(httpx.AsyncClient, "get", _responder(json_body=body))

    orders = await _client().order_history(
        SESSION_ID,
        datetime(2025, 6, 1, tzinfo=timezone.utc),
        datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc),
    )

    assert [o.order_id for o in orders] == [6003]
    assert orders[0].time_open == "2025-06-10T08:00:00+00:00"
