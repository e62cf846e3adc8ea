import csv
import json
import logging

import pytest

from spotbot.ledger import HEADER, TradeLedger, TradeRecord
from spotbot.logger import JsonLineFormatter


def _record(**overrides):
    values = dict(
        timestamp="2026-10-19T12:00:00+00:00",
        side="SELL",
        symbol="ETHUSDT",
        quantity=0.123456789123,
        price=2500.5,
        usd_value=0.123456789123 * 2500.5,
        order_id="1234",
        strategy="macd_PROFIT_TARGET",
        pnl=12.3456789123,
    )
    values.update(overrides)
    return TradeRecord(**values)


def test_ledger_writes_header_once(tmp_path):
    path = tmp_path / "trades.csv"
    ledger = TradeLedger(str(path))
    ledger.record(_record(side="BUY", strategy="macd", pnl=0.0))
    ledger.record(_record())

    with open(path, newline='') as f:
        rows = list(csv.reader(f))
    assert rows[0] == HEADER
    assert len(rows) == 3


def test_ledger_round_trip_at_ledger_precision(tmp_path):
    ledger = TradeLedger(str(tmp_path / "trades.csv"), decimals=8)
    ledger.record(_record())

    (read_back,) = ledger.read()
    assert read_back == _record().rounded(8)
    assert read_back.quantity == 0.12345679
    assert read_back.strategy == "macd_PROFIT_TARGET"


def test_missing_order_id_is_marked(tmp_path):
    row = _record(order_id="").to_row()
    assert row["Order_ID"] == "N/A"


def test_disabled_ledger_only_logs(caplog):
    ledger = TradeLedger(None)
    with caplog.at_level(logging.INFO):
        ledger.record(_record())
    assert ledger.read() == []
    assert "Trade logged: SELL ETHUSDT (macd_PROFIT_TARGET)" in caplog.text
    assert caplog.records[-1].context["pnl"] == pytest.approx(12.34567891)


def test_json_line_formatter():
    record = logging.LogRecord("spotbot", logging.WARNING, __file__, 1, "Stop loss for %s", ("BTCUSDT",), None)
    record.context = {"pnl_pct": -2.5}

    entry = json.loads(JsonLineFormatter().format(record))
    assert entry["level"] == "warning"
    assert entry["message"] == "Stop loss for BTCUSDT"
    assert entry["context"] == {"pnl_pct": -2.5}
    assert entry["timestamp"].endswith("+00:00")


def test_json_line_formatter_without_context():
    record = logging.LogRecord("spotbot", logging.INFO, __file__, 1, "hello", (), None)
    assert json.loads(JsonLineFormatter().format(record))["context"] == {}
