from datetime import UTC, datetime

from ctrader_live_feed.cli.app import _accounts_table, _choose_symbol, _format_event
from ctrader_live_feed.core.events import (
    ErrorReported,
    Instrument,
    Reconnecting,
    SpotTick,
    StageChanged,
    TradingAccount,
)


def test_format_spot_tick_uses_five_decimals() -> None:
    tick = SpotTick(
        account_id=1001,
        symbol_id=1,
        symbol_name="EURUSD",
        bid=1.08512,
        ask=None,
        timestamp=datetime(2026, 1, 5, 9, 30, 15, tzinfo=UTC),
    )

    line = _format_event(tick)

    assert line is not None
    assert "EURUSD" in line
    assert "bid=1.08512" in line
    assert "ask=-" in line
    assert "09:30:15" in line


def test_format_spot_tick_without_name_falls_back_to_id() -> None:
    line = _format_event(SpotTick(account_id=1, symbol_id=41, symbol_name=None, bid=2000.5, ask=2000.7))

    assert line is not None
    assert "ID 41" in line


def test_format_status_events() -> None:
    stage = _format_event(StageChanged(previous="awaiting_subscribe_ack", current="streaming", detail="EURUSD"))
    retry = _format_event(Reconnecting(attempt=2, max_attempts=20, delay_seconds=10.0, reason="connection closed"))
    error = _format_event(ErrorReported(code="CH_CLIENT_AUTH_FAILURE", description="bad", stage="x", fatal=True))

    assert stage is not None and "streaming" in stage and "EURUSD" in stage
    assert retry is not None and "attempt 2/20" in retry
    assert error is not None and error.startswith("[red]")


def test_choose_symbol_prompts_until_resolvable() -> None:
    instruments = [Instrument(symbol_id=1, symbol_name="EURUSD"), Instrument(symbol_id=41, symbol_name="XAUUSD")]
    answers = iter(["BTCUSD", " xauusd "])

    chosen = _choose_symbol(instruments, lambda text: next(answers))

    assert chosen == "xauusd"


def test_accounts_table_lists_each_account() -> None:
    table = _accounts_table(
        [
            TradingAccount(account_id=1001, is_live=False, trader_login=555, broker="Demo Broker"),
            TradingAccount(account_id=2002),
        ]
    )

    assert table.row_count == 2
