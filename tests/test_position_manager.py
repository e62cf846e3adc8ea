import pytest

from spotbot.config import RiskLimits
from spotbot.datastructures import ExitReason
from spotbot.exchange_connector import ExchangeError
from spotbot.ledger import TradeLedger
from spotbot.position_manager import ExitDecision, exit_decision

from conftest import add_position, build_engine, make_balance, make_signal


@pytest.mark.parametrize("pnl_pct, held, expected", [
    (10.0, 100, ExitDecision.HOLD),
    (-5.0, 100, ExitDecision.STOP_LOSS),
    (0.0, 100, ExitDecision.HOLD),
    (5.0, 400, ExitDecision.PROFIT_TARGET),
    (-5.0, 400, ExitDecision.STOP_LOSS),
    (0.5, 400, ExitDecision.CHECK_SIGNAL),
    (3.5, 300, ExitDecision.PROFIT_TARGET),
    (-2.0, 0, ExitDecision.STOP_LOSS),
])
def test_exit_decision(pnl_pct, held, expected):
    assert exit_decision(pnl_pct, held, 300, profit_target=3.5, stop_loss=2.0) is expected


@pytest.mark.asyncio
async def test_min_hold_blocks_profit_target_and_signal(engine):
    add_position(engine, "BTCUSDT", entry_price=100.0, age=100)
    engine.set_price("BTCUSDT", 110.0)
    engine.aggregator.signal_for.return_value = make_signal(sell=True)

    assert await engine.positions.check_exit("BTCUSDT") is None
    assert "BTCUSDT" in engine.ctx.positions
    engine.aggregator.signal_for.assert_not_awaited()
    engine.connector.place_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_loss_fires_inside_min_hold(engine):
    add_position(engine, "BTCUSDT", quantity=1.0, entry_price=100.0, age=100)
    engine.set_price("BTCUSDT", 95.0)

    assert await engine.positions.check_exit("BTCUSDT") is ExitReason.STOP_LOSS
    assert "BTCUSDT" not in engine.ctx.positions
    order = engine.connector.place_order.await_args.args[0]
    assert order.side == 'SELL'
    assert order.tag == "ema_crossover_STOP_LOSS"
    assert engine.ctx.risk_state.daily_pnl == pytest.approx(-5.0)
    assert engine.ctx.risk_state.consecutive_losses == 1


@pytest.mark.asyncio
async def test_profit_target_after_min_hold(engine):
    add_position(engine, "BTCUSDT", quantity=2.0, entry_price=100.0, age=400)
    engine.set_price("BTCUSDT", 104.0)

    assert await engine.positions.check_exit("BTCUSDT") is ExitReason.PROFIT_TARGET
    stats = engine.ctx.strategy_stats["ema_crossover"]
    assert stats.win_count == 1
    assert stats.cumulative_pnl == pytest.approx(8.0)


@pytest.mark.asyncio
async def test_signal_exit_after_min_hold(engine):
    add_position(engine, "BTCUSDT", entry_price=100.0, age=400)
    engine.set_price("BTCUSDT", 100.5)
    engine.aggregator.signal_for.return_value = make_signal(sell=True)

    assert await engine.positions.check_exit("BTCUSDT") is ExitReason.SIGNAL
    engine.aggregator.signal_for.assert_awaited_once()
    assert engine.aggregator.signal_for.await_args.args[1] == "ema_crossover"


@pytest.mark.asyncio
async def test_no_exit_without_sell_signal(engine):
    add_position(engine, "BTCUSDT", entry_price=100.0, age=400)
    engine.set_price("BTCUSDT", 100.5)
    engine.aggregator.signal_for.return_value = make_signal(buy=True)

    assert await engine.positions.check_exit("BTCUSDT") is None
    assert "BTCUSDT" in engine.ctx.positions


@pytest.mark.asyncio
async def test_failed_sell_keeps_position(engine):
    add_position(engine, "BTCUSDT", entry_price=100.0, age=400)
    engine.set_price("BTCUSDT", 90.0)
    engine.connector.place_order.side_effect = ExchangeError("rejected")

    assert await engine.positions.check_exit("BTCUSDT") is None
    assert "BTCUSDT" in engine.ctx.positions
    assert engine.ctx.strategy_stats["ema_crossover"].trade_count == 0


@pytest.mark.asyncio
async def test_exit_skipped_without_price(engine):
    add_position(engine, "BTCUSDT", entry_price=100.0, age=400)
    assert await engine.positions.check_exit("BTCUSDT") is None
    engine.connector.get_last_trade_price.assert_awaited_once_with("BTCUSDT")


@pytest.mark.asyncio
async def test_entry_opens_position_and_spends_balance(engine):
    instrument = engine.instrument("BTCUSDT")
    engine.set_price("BTCUSDT", 100.0)
    balance = make_balance(usdt=1000.0)

    entered = await engine.positions.try_enter(instrument, make_signal(buy=True), balance)

    assert entered is True
    position = engine.ctx.positions["BTCUSDT"]
    assert position.quantity == pytest.approx(2.0)
    assert position.avg_entry_price == 100.0
    assert position.entry_timestamp == engine.clock()
    assert position.strategy_id == "ema_crossover"
    assert balance.available(instrument.quote) == pytest.approx(800.0)
    order = engine.connector.place_order.await_args.args[0]
    assert (order.side, order.qty, order.tag) == ('BUY', pytest.approx(2.0), "ema_crossover")


@pytest.mark.asyncio
async def test_no_second_entry_on_same_instrument(engine):
    instrument = engine.instrument("BTCUSDT")
    add_position(engine, "BTCUSDT", strategy_id="macd")
    engine.set_price("BTCUSDT", 100.0)

    assert await engine.positions.try_enter(instrument, make_signal(buy=True), make_balance()) is False
    assert engine.ctx.positions["BTCUSDT"].strategy_id == "macd"
    engine.connector.place_order.assert_not_awaited()


def test_per_strategy_cap(engine):
    for symbol in ("ETHUSDT", "SOLUSDT", "BTCUSDC"):
        add_position(engine, symbol, strategy_id="macd")
    engine.ctx.config.RISK = RiskLimits(max_positions_per_strategy=3)

    instrument = engine.instrument("BTCUSDT")
    assert engine.positions.entry_rejection(instrument, "macd") == "max positions reached for macd"
    assert engine.positions.entry_rejection(instrument, "rsi_momentum") is None


def test_per_currency_cap(engine):
    for symbol in ("ETHUSDT", "SOLUSDT"):
        add_position(engine, symbol)
    engine.ctx.config.RISK = RiskLimits(max_positions_per_currency=2)

    assert engine.positions.entry_rejection(engine.instrument("BTCUSDT"), "macd") == "max positions reached for USDT"
    assert engine.positions.entry_rejection(engine.instrument("BTCUSDC"), "macd") is None


@pytest.mark.asyncio
async def test_entry_refused_while_halted(engine):
    for _ in range(3):
        engine.risk.record_close("macd", -1.0)
    engine.set_price("BTCUSDT", 100.0)

    entered = await engine.positions.try_enter(engine.instrument("BTCUSDT"), make_signal(buy=True), make_balance())
    assert entered is False
    assert engine.ctx.positions == {}


@pytest.mark.asyncio
async def test_entry_filtered_when_trade_too_small(engine):
    engine.set_price("BTCUSDT", 100.0)
    entered = await engine.positions.try_enter(
        engine.instrument("BTCUSDT"), make_signal(buy=True), make_balance(usdt=40.0)
    )
    # 20% of 40 is below the $10 minimum trade size
    assert entered is False
    engine.connector.place_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_notional_cap_limits_entry(engine):
    engine.set_price("BTCUSDT", 100.0)
    await engine.positions.try_enter(
        engine.instrument("BTCUSDT"), make_signal(buy=True), make_balance(), notional_cap=50.0
    )
    assert engine.ctx.positions["BTCUSDT"].quantity == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_failed_buy_creates_no_position(engine):
    engine.set_price("BTCUSDT", 100.0)
    engine.connector.place_order.side_effect = ExchangeError("timeout")

    entered = await engine.positions.try_enter(engine.instrument("BTCUSDT"), make_signal(buy=True), make_balance())
    # the attempt consumed the instrument's entry for this cycle
    assert entered is True
    assert engine.ctx.positions == {}


@pytest.mark.asyncio
async def test_round_trip_is_written_to_ledger(make_config, clock, connector, tmp_path):
    engine = build_engine(make_config(), clock, connector, ledger=TradeLedger(str(tmp_path / "trades.csv")))
    engine.set_price("BTCUSDT", 100.0)
    await engine.positions.try_enter(engine.instrument("BTCUSDT"), make_signal(buy=True), make_balance())

    engine.clock.advance(600)
    engine.set_price("BTCUSDT", 110.0)
    await engine.positions.check_exit("BTCUSDT")

    buy, sell = engine.ledger.read()
    assert (buy.side, buy.strategy, buy.order_id) == ('BUY', "ema_crossover", "42")
    assert (sell.side, sell.strategy) == ('SELL', "ema_crossover_PROFIT_TARGET")
    assert sell.pnl == pytest.approx(20.0)
    assert sell.usd_value == pytest.approx(220.0)


@pytest.mark.asyncio
async def test_liquidate_bumps_to_min_notional(engine):
    instrument = engine.instrument("SOLUSDT")
    sold = await engine.positions.liquidate(instrument, 0.01, 100.0, available=1.0, tag="portfolio_REBALANCE")

    assert sold is True
    order = engine.connector.place_order.await_args.args[0]
    assert order.qty == pytest.approx(0.05)
    assert order.tag == "portfolio_REBALANCE"


@pytest.mark.asyncio
async def test_liquidate_skips_dust(engine):
    sold = await engine.positions.liquidate(engine.instrument("SOLUSDT"), 0.01, 100.0, available=0.02, tag="x")
    assert sold is False
    engine.connector.place_order.assert_not_awaited()
