# spotbot/portfolio_manager.py
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from spotbot.config import PortfolioBands
from spotbot.context import EngineContext
from spotbot.data_handler import DataHandler
from spotbot.datastructures import (
    AccountBalance, ExitReason, Holding, Instrument, PortfolioSnapshot, StrategySignal,
)
from spotbot.exchange_connector import ExchangeConnector, ExchangeError
from spotbot.position_manager import PositionManager
from spotbot.risk_manager import RiskManager
from spotbot.signal_aggregator import SignalAggregator

HoldingScorer = Callable[[Holding, PortfolioSnapshot], float]
SignalScorer = Callable[[Instrument, StrategySignal], float]
Candidate = Tuple[Instrument, StrategySignal]


def allocation_score(holding: Holding, snapshot: PortfolioSnapshot) -> float:
    """Lower is weaker: the smallest qualifying allocation is sold first."""
    return holding.value / snapshot.total_value


def first_match_score(instrument: Instrument, signal: StrategySignal) -> float:
    # Every buy signal scores the same, so the first one found wins.
    return 1.0


def cash_fraction(snapshot: PortfolioSnapshot) -> float:
    if snapshot.total_value <= 0:
        return 0.0
    return snapshot.cash / snapshot.total_value


def needs_cash_rebalance(snapshot: PortfolioSnapshot, bands: PortfolioBands) -> bool:
    return snapshot.total_value > 0 and cash_fraction(snapshot) < bands.min_cash_reserve


def has_excess_cash(snapshot: PortfolioSnapshot, bands: PortfolioBands) -> bool:
    return snapshot.total_value > 0 and cash_fraction(snapshot) > bands.max_cash_reserve


def cash_to_raise(snapshot: PortfolioSnapshot, bands: PortfolioBands) -> float:
    return max(0.0, snapshot.total_value * bands.target_cash_reserve - snapshot.cash)


def excess_cash(snapshot: PortfolioSnapshot, bands: PortfolioBands) -> float:
    """Cash above target, never dipping into the minimum reserve."""
    above_target = snapshot.cash - snapshot.total_value * bands.target_cash_reserve
    above_minimum = snapshot.cash - snapshot.total_value * bands.min_cash_reserve
    return min(above_target, above_minimum)


def calculate_allocation(snapshot: PortfolioSnapshot) -> Optional[Dict[str, object]]:
    """Cash and per-asset shares of the portfolio, as percentages."""
    if snapshot.total_value <= 0:
        return None
    return {
        "cash": snapshot.cash / snapshot.total_value * 100,
        "holdings": {asset: holding.value / snapshot.total_value * 100
                     for asset, holding in snapshot.holdings.items()},
        "total_value": snapshot.total_value,
    }


def overweight_holdings(snapshot: PortfolioSnapshot, bands: PortfolioBands) -> List[str]:
    if snapshot.total_value <= 0:
        return []
    return [asset for asset, holding in snapshot.holdings.items()
            if holding.value / snapshot.total_value > bands.max_position_size]


def find_weakest_holding(snapshot: PortfolioSnapshot, bands: PortfolioBands,
                         scorer: HoldingScorer = allocation_score) -> Optional[Holding]:
    """Lowest-scoring holding among those at or above the minimum position size."""
    weakest, lowest = None, None
    for holding in snapshot.holdings.values():
        if holding.value / snapshot.total_value < bands.min_position_size:
            continue
        score = scorer(holding, snapshot)
        if lowest is None or score < lowest:
            weakest, lowest = holding, score
    return weakest


def rank_buy_signals(candidates: List[Candidate],
                     scorer: SignalScorer = first_match_score) -> List[Candidate]:
    """Buy candidates, strongest first; ties keep scan order."""
    buys = [(instrument, signal) for instrument, signal in candidates if signal.buy]
    return sorted(buys, key=lambda candidate: -scorer(*candidate))


def find_strongest_buy_signal(candidates: List[Candidate],
                              scorer: SignalScorer = first_match_score) -> Optional[Candidate]:
    ranked = rank_buy_signals(candidates, scorer)
    return ranked[0] if ranked else None


class PortfolioManager:
    """
    Keeps idle cash inside the reserve bands: sells the weakest holding when
    cash runs low and deploys the surplus on the strongest buy signal when it
    runs high. Entries go through the PositionManager so every cap applies.
    """
    def __init__(self, ctx: EngineContext, connector: ExchangeConnector, data_handler: DataHandler,
                 aggregator: SignalAggregator, positions: PositionManager, risk: RiskManager,
                 holding_scorer: HoldingScorer = allocation_score,
                 signal_scorer: SignalScorer = first_match_score):
        self.ctx = ctx
        self.connector = connector
        self.data_handler = data_handler
        self.aggregator = aggregator
        self.positions = positions
        self.risk = risk
        self.holding_scorer = holding_scorer
        self.signal_scorer = signal_scorer

    @property
    def bands(self) -> PortfolioBands:
        return self.ctx.config.PORTFOLIO

    def instrument_for(self, asset: str) -> Optional[Instrument]:
        for instrument in self.ctx.config.INSTRUMENTS:
            if instrument.base == asset:
                return instrument
        return None

    async def build_snapshot(self, balance: AccountBalance) -> PortfolioSnapshot:
        holdings = {}
        for asset, quantity in balance.assets.items():
            instrument = self.instrument_for(asset)
            if instrument is None or quantity <= 0:
                continue
            price = await self.data_handler.current_price(instrument.symbol)
            if price:
                holdings[asset] = Holding(asset=asset, instrument=instrument, quantity=quantity, price=price)
        total_value = balance.total_cash + sum(h.value for h in holdings.values())
        return PortfolioSnapshot(
            cash_by_currency=dict(balance.cash),
            holdings=holdings,
            total_value=total_value,
        )

    def log_status(self, snapshot: PortfolioSnapshot):
        allocation = calculate_allocation(snapshot)
        if allocation is None:
            return
        logging.info(f"PORTFOLIO: total ${snapshot.total_value:.2f}, "
                     f"cash ${snapshot.cash:.2f} ({allocation['cash']:.1f}%)",
                     extra={"context": {"cash": {c.value: v for c, v in snapshot.cash_by_currency.items()},
                                        "allocation": allocation}})
        for asset, holding in snapshot.holdings.items():
            logging.info(f"  {asset}: {holding.quantity:.6f} (${holding.value:.2f}, "
                         f"{allocation['holdings'][asset]:.1f}%)")
        for asset in overweight_holdings(snapshot, self.bands):
            logging.warning(f"  {asset} is above the {self.bands.max_position_size:.0%} allocation cap")

    async def _fetch_snapshot(self) -> Optional[Tuple[AccountBalance, PortfolioSnapshot]]:
        try:
            balance = await self.connector.get_account_balance()
        except ExchangeError as e:
            logging.error(f"Portfolio check skipped, balance unavailable: {e}")
            return None
        return balance, await self.build_snapshot(balance)

    async def sell_on_signals(self, snapshot: PortfolioSnapshot) -> int:
        """Sells holdings that back no open position when any strategy says sell."""
        sold = 0
        for asset, holding in snapshot.holdings.items():
            if self.positions.position_for_asset(asset) is not None:
                continue
            for signal in await self.aggregator.analyze(holding.instrument):
                if signal.sell:
                    logging.info(f"Selling {asset} holding on {signal.strategy_id} sell signal")
                    if await self.positions.liquidate(holding.instrument, holding.quantity, holding.price,
                                                      holding.quantity, f"portfolio_{signal.strategy_id}_SIGNAL"):
                        sold += 1
                    break
        return sold

    async def raise_cash(self, snapshot: PortfolioSnapshot) -> bool:
        amount = cash_to_raise(snapshot, self.bands)
        holding = find_weakest_holding(snapshot, self.bands, self.holding_scorer)
        if holding is None:
            logging.warning(f"Cash reserve low, but no holding qualifies for sale (need ${amount:.2f})")
            return False

        logging.info(f"Raising ${amount:.2f} cash by selling {holding.asset}")
        position = self.positions.position_for_asset(holding.asset)
        if position is not None:
            pnl = await self.positions.close_position(position.symbol, ExitReason.REBALANCE)
            return pnl is not None
        return await self.positions.liquidate(
            holding.instrument, amount / holding.price, holding.price, holding.quantity, "portfolio_REBALANCE"
        )

    async def deploy_cash(self, snapshot: PortfolioSnapshot, balance: AccountBalance) -> bool:
        amount = excess_cash(snapshot, self.bands)
        candidates = []
        for instrument in self.ctx.config.INSTRUMENTS:
            if instrument.symbol in self.ctx.positions:
                continue
            candidates.extend((instrument, signal) for signal in await self.aggregator.analyze(instrument))

        for instrument, signal in rank_buy_signals(candidates, self.signal_scorer):
            logging.info(f"Deploying up to ${amount:.2f} excess cash on {instrument.symbol} ({signal.strategy_id})")
            if await self.positions.try_enter(instrument, signal, balance, notional_cap=amount):
                return True
        logging.info(f"Excess cash ${amount:.2f} but no deployable buy signal")
        return False

    async def rebalance(self) -> Optional[str]:
        """One rebalance check. Returns the action taken, if any."""
        if not self.bands.enabled:
            return None
        if self.risk.is_halted():
            logging.warning("Trading halted, skipping portfolio rebalance")
            return None

        fetched = await self._fetch_snapshot()
        if fetched is None:
            return None
        balance, snapshot = fetched
        self.log_status(snapshot)

        if self.bands.sell_on_signal and snapshot.holdings:
            if await self.sell_on_signals(snapshot):
                fetched = await self._fetch_snapshot()
                if fetched is None:
                    return None
                balance, snapshot = fetched

        if needs_cash_rebalance(snapshot, self.bands):
            await self.raise_cash(snapshot)
            return "raise_cash"
        if has_excess_cash(snapshot, self.bands):
            await self.deploy_cash(snapshot, balance)
            return "deploy_cash"
        return None

    async def run(self):
        """Runs a rebalance check on a fixed interval, interleaved with scans."""
        logging.info(f"PortfolioManager is running every {self.bands.rebalance_interval}s.")
        while True:
            await asyncio.sleep(self.bands.rebalance_interval)
            async with self.ctx.cycle_lock:
                try:
                    await self.rebalance()
                except ExchangeError as e:
                    logging.error(f"Portfolio rebalance aborted: {e}")
                except Exception:
                    logging.critical("Unexpected error in portfolio rebalance", exc_info=True)
