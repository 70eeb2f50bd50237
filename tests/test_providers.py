from decimal import Decimal

import pytest
import requests
from binance.exceptions import BinanceAPIException

from meridian.errors import (
    DuplicateOrderError,
    InsufficientBalanceError,
    QuoteError,
    RateLimitedError,
    RpcError,
    TransactionError,
)
from meridian.providers.alerts import AlertDispatcher, AlertEvent, AlertSink, AlertType, WebhookAlertSink
from meridian.providers.binance import BinanceVenue, map_binance_error
from meridian.providers.paper import DryRunVenue
from meridian.providers.Telegram import TelegramNotifier
from meridian.providers.venue import BalanceInfo, QuoteRequest, adverse_slippage_bps
from meridian.utils.trading_mode import Side

from conftest import START, ScriptedVenue


def api_error(status, code, msg):
    return BinanceAPIException(None, status, f'{{"code": {code}, "msg": "{msg}"}}')


def buy_request(amount="100", **kwargs):
    return QuoteRequest(side=Side.BUY, amount=Decimal(amount), amount_is_base=False, slippage_bps=50, **kwargs)


# =========================
# Dry run
# =========================
class TestDryRunVenue:
    def _venue(self, clock, quote="1000"):
        inner = ScriptedVenue(clock)
        return DryRunVenue(
            inner,
            clock=clock,
            fee_pct=Decimal("0.1"),
            starting_balances=BalanceInfo(base=Decimal("0"), quote=Decimal(quote)),
        )

    def test_fills_at_quote_and_charges_fee(self, clock):
        venue = self._venue(clock)
        result = venue.execute_swap(venue.get_quote(buy_request()), "abc")

        assert result.success
        assert result.fees_quote == Decimal("0.1")
        assert result.output_amount == Decimal("0.999")
        assert venue.get_balances() == BalanceInfo(base=Decimal("0.999"), quote=Decimal("900"))
        assert venue.inner.executed_ids == []

    def test_buy_can_spend_whole_quote_balance(self, clock):
        venue = self._venue(clock, quote="100")
        result = venue.execute_swap(venue.get_quote(buy_request()), "abc")

        assert result.success
        assert venue.get_balances() == BalanceInfo(base=Decimal("0.999"), quote=Decimal("0"))

    def test_repeated_id_is_rejected(self, clock):
        venue = self._venue(clock)
        venue.execute_swap(venue.get_quote(buy_request()), "abc")
        again = venue.execute_swap(venue.get_quote(buy_request()), "abc")
        assert not again.success
        assert again.error.code == DuplicateOrderError.code
        assert venue.get_balances().base == Decimal("0.999")

    def test_insufficient_balance(self, clock):
        venue = self._venue(clock, quote="50")
        result = venue.execute_swap(venue.get_quote(buy_request()), "abc")
        assert result.error.code == InsufficientBalanceError.code

    def test_expired_quote(self, clock):
        venue = self._venue(clock)
        quote = venue.get_quote(buy_request())
        clock.advance(31)
        result = venue.execute_swap(quote, "abc")
        assert result.error.code == "QUOTE_EXPIRED"
        assert result.error.retryable

    def test_balances_seeded_from_inner_when_not_given(self, clock):
        inner = ScriptedVenue(clock, quote=Decimal("250"))
        venue = DryRunVenue(inner, clock=clock)
        assert venue.get_balances().quote == Decimal("250")


class TestSlippage:
    def test_adverse_direction_per_side(self):
        assert adverse_slippage_bps(Side.BUY, Decimal("100"), Decimal("100.5")) == Decimal("50")
        assert adverse_slippage_bps(Side.SELL, Decimal("100"), Decimal("100.5")) == Decimal("-50")


# =========================
# Alerts
# =========================
class RecordingSink(AlertSink):
    name = "recording"

    def __init__(self, name="recording", ok=True, explode=False):
        self.name = name
        self.events = []
        self.ok = ok
        self.explode = explode

    def deliver(self, event):
        if self.explode:
            raise RuntimeError("sink down")
        self.events.append(event)
        return self.ok


class TestAlertDispatcher:
    def _event(self):
        return AlertEvent(
            type=AlertType.CIRCUIT_BREAKER,
            title="bot-a paused",
            message="MAX_DRAWDOWN",
            metadata={"instance_id": "bot-a", "drawdown": Decimal("12.5")},
            timestamp=START,
        )

    def test_fans_out_and_records(self):
        sink = RecordingSink()
        recorded = []
        dispatcher = AlertDispatcher([sink], on_recorded=lambda e, r: recorded.append(r), background=False)
        dispatcher.emit(self._event())
        assert len(sink.events) == 1
        assert recorded == [{"recording": True}]

    def test_sink_failure_never_reaches_caller(self):
        good = RecordingSink()
        recorded = []
        dispatcher = AlertDispatcher(
            [RecordingSink("broken", explode=True), good],
            on_recorded=lambda e, r: recorded.append(r),
            background=False,
        )
        dispatcher.emit(self._event())
        assert len(good.events) == 1
        assert recorded == [{"broken": False, "recording": True}]

    def test_payload_is_json_friendly(self):
        payload = self._event().to_payload()
        assert payload["type"] == "CIRCUIT_BREAKER"
        assert payload["metadata"]["drawdown"] == "12.5"
        assert payload["timestamp"].startswith("2024-03-01T12:00:00")


class FakeResponse:
    def __init__(self, status):
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"HTTP {self.status}")


class FakeHttp:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append(json)
        return FakeResponse(self.statuses.pop(0))


class TestWebhookSink:
    def test_retries_then_succeeds(self):
        http = FakeHttp([500, 200])
        sink = WebhookAlertSink("https://hooks.example/alerts", retries=2, session=http)
        assert sink.deliver(AlertEvent(AlertType.BOT_STARTED, "up", "started"))
        assert len(http.posts) == 2

    def test_gives_up(self):
        http = FakeHttp([500, 502, 503])
        sink = WebhookAlertSink("https://hooks.example/alerts", retries=2, session=http)
        assert not sink.deliver(AlertEvent(AlertType.BOT_STARTED, "up", "started"))


class TestTelegramText:
    def test_alert_text_is_escaped(self):
        notifier = TelegramNotifier(bot=None, chat_id=1)
        text = notifier._build_alert_text(
            AlertEvent(AlertType.TRADE_FAILED, "BUY <failed>", "code=RPC_ERROR", {"instance_id": "bot-a"}, START)
        )
        assert text.startswith("❌ <b>BUY &lt;failed&gt;</b>")
        assert "<code>bot-a</code>" in text

    def test_dev_mode_sends_nothing(self, monkeypatch):
        monkeypatch.setenv("TELEGRAM_DEV_MODE", "true")
        assert TelegramNotifier(bot=None, chat_id=1).send_sync("hi") is False

    def test_status_text(self):
        text = TelegramNotifier(bot=None, chat_id=1).build_status_text(
            "bot-a", {"paused": True, "pause_reason": "MAX_DRAWDOWN", "last_price": "100.5"}
        )
        assert "MAX_DRAWDOWN" in text
        assert "100.500000" in text


# =========================
# Binance
# =========================
class TestBinanceErrorMapping:
    def test_rate_limit(self):
        assert isinstance(map_binance_error(api_error(429, -1003, "Too many requests")), RateLimitedError)

    def test_server_error_is_transient(self):
        error = map_binance_error(api_error(503, -1000, "Service unavailable"))
        assert isinstance(error, RpcError) and error.retryable

    def test_duplicate(self):
        error = map_binance_error(api_error(400, -2010, "Duplicate order sent."))
        assert isinstance(error, DuplicateOrderError)

    def test_insufficient_balance(self):
        error = map_binance_error(api_error(400, -2010, "Account has insufficient balance for requested action."))
        assert isinstance(error, InsufficientBalanceError)
        assert not error.retryable

    def test_transport_error(self):
        assert isinstance(map_binance_error(requests.ConnectionError("reset")), RpcError)

    def test_anything_else_is_terminal(self):
        assert isinstance(map_binance_error(api_error(400, -1013, "Filter failure: LOT_SIZE")), TransactionError)


class FakeClient:
    """Minimal stand-in for binance.client.Client."""

    def __init__(self):
        self.orders = {}
        self.created = []
        self.book = {
            "asks": [["100", "0.5"], ["101", "2"]],
            "bids": [["99.9", "1"], ["99", "5"]],
        }
        self.create_error = None

    def get_symbol_info(self, symbol):
        return {
            "symbol": symbol,
            "filters": [
                {"filterType": "LOT_SIZE", "stepSize": "0.001"},
                {"filterType": "NOTIONAL", "minNotional": "5"},
            ],
        }

    def get_order_book(self, symbol, limit):
        return self.book

    def get_account(self):
        return {"balances": [
            {"asset": "BNB", "free": "1.5"},
            {"asset": "USDT", "free": "250"},
        ]}

    def get_symbol_ticker(self, symbol):
        return {"price": "100.1"}

    def get_avg_price(self, symbol):
        return {"price": "100.05"}

    def create_order(self, **params):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(params)
        order = {
            "orderId": 7,
            "status": "FILLED",
            "executedQty": "1.000",
            "cummulativeQuoteQty": "100.5",
            "fills": [{"price": "100.5", "qty": "1", "commission": "0.1005", "commissionAsset": "USDT"}],
        }
        self.orders[params["newClientOrderId"]] = order
        return order

    def get_order(self, symbol, origClientOrderId):
        return self.orders[origClientOrderId]

    def ping(self):
        return {}

    def get_server_time(self):
        return {"serverTime": 1709294400000}


class TestBinanceVenue:
    def _venue(self, clock, client=None):
        return BinanceVenue(
            client or FakeClient(),
            symbol="bnbusdt",
            base_asset="bnb",
            quote_asset="usdt",
            clock=clock,
        )

    def test_balances(self, clock):
        balances = self._venue(clock).get_balances()
        assert balances == BalanceInfo(base=Decimal("1.5"), quote=Decimal("250"), native_for_gas=Decimal("1.5"))

    def test_quote_walks_the_book(self, clock):
        quote = self._venue(clock).get_quote(
            QuoteRequest(side=Side.BUY, amount=Decimal("1"), amount_is_base=True, slippage_bps=50)
        )
        assert quote.price == Decimal("100.5")
        assert quote.price_impact_bps == Decimal("50")
        assert quote.input_amount == Decimal("100.5")

    def test_thin_book_is_a_quote_error(self, clock):
        with pytest.raises(QuoteError):
            self._venue(clock).get_quote(
                QuoteRequest(side=Side.SELL, amount=Decimal("10"), amount_is_base=True, slippage_bps=50)
            )

    def test_excluded_source(self, clock):
        with pytest.raises(QuoteError):
            self._venue(clock).get_quote(buy_request(excluded_sources=("binance",)))

    def test_market_order_with_client_id(self, clock):
        client = FakeClient()
        venue = self._venue(clock, client)
        quote = venue.get_quote(QuoteRequest(side=Side.BUY, amount=Decimal("1.0004"), amount_is_base=True, slippage_bps=50))
        result = venue.execute_swap(quote, "abc")

        assert result.success
        assert client.created[0]["newClientOrderId"] == "abc"
        assert client.created[0]["quantity"] == "1.000"
        assert result.fees_quote == Decimal("0.1005")
        assert result.tx_id == "7"

    def test_duplicate_of_filled_order_returns_original(self, clock):
        client = FakeClient()
        venue = self._venue(clock, client)
        quote = venue.get_quote(buy_request())
        venue.execute_swap(quote, "abc")

        client.create_error = api_error(400, -2010, "Duplicate order sent.")
        again = venue.execute_swap(quote, "abc")
        assert again.success
        assert len(client.created) == 1

    def test_rejection_becomes_failure_result(self, clock):
        client = FakeClient()
        client.create_error = api_error(400, -2010, "Account has insufficient balance for requested action.")
        venue = self._venue(clock, client)
        result = venue.execute_swap(venue.get_quote(buy_request()), "abc")
        assert not result.success
        assert result.error.code == InsufficientBalanceError.code

    def test_below_exchange_minimum(self, clock):
        venue = self._venue(clock)
        result = venue.execute_swap(venue.get_quote(buy_request("2")), "abc")
        assert result.error.code == TransactionError.code

    def test_connectivity_and_reference_price(self, clock):
        venue = self._venue(clock)
        status = venue.check_connectivity()
        assert status.connected
        assert status.block_height == 1709294400000
        assert venue.get_reference_price() == Decimal("100.05")
        assert venue.get_liquidity(Side.BUY) == Decimal("252")
