# spotbot/ledger.py
import csv
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional

HEADER = ["Timestamp", "Type", "Symbol", "Quantity", "Price", "USD_Value", "Order_ID", "Strategy", "PnL"]


@dataclass(frozen=True)
class TradeRecord:
    timestamp: str
    side: str
    symbol: str
    quantity: float
    price: float
    usd_value: float
    order_id: str
    strategy: str
    pnl: float = 0.0

    def rounded(self, decimals: int) -> "TradeRecord":
        return TradeRecord(
            timestamp=self.timestamp,
            side=self.side,
            symbol=self.symbol,
            quantity=round(self.quantity, decimals),
            price=round(self.price, decimals),
            usd_value=round(self.usd_value, decimals),
            order_id=self.order_id,
            strategy=self.strategy,
            pnl=round(self.pnl, decimals),
        )

    def to_row(self, decimals: int = 8) -> Dict[str, str]:
        r = self.rounded(decimals)
        return dict(zip(HEADER, [
            r.timestamp, r.side, r.symbol, repr(r.quantity), repr(r.price),
            repr(r.usd_value), r.order_id or "N/A", r.strategy, repr(r.pnl),
        ]))

    @classmethod
    def from_row(cls, row: Dict[str, str]) -> "TradeRecord":
        return cls(
            timestamp=row["Timestamp"],
            side=row["Type"],
            symbol=row["Symbol"],
            quantity=float(row["Quantity"]),
            price=float(row["Price"]),
            usd_value=float(row["USD_Value"]),
            order_id=row["Order_ID"],
            strategy=row["Strategy"],
            pnl=float(row["PnL"] or 0),
        )


class TradeLedger:
    """Append-only CSV record of every executed order."""

    def __init__(self, path: Optional[str], decimals: int = 8):
        self.path = Path(path) if path else None
        self.decimals = decimals

    def record(self, trade: TradeRecord):
        if self.path is not None:
            is_new = not self.path.exists()
            with open(self.path, 'a', newline='') as f:
                writer = csv.DictWriter(f, fieldnames=HEADER)
                if is_new:
                    writer.writeheader()
                writer.writerow(trade.to_row(self.decimals))
        logging.info(f"Trade logged: {trade.side} {trade.symbol} ({trade.strategy})",
                     extra={"context": asdict(trade.rounded(self.decimals))})

    def read(self) -> List[TradeRecord]:
        if self.path is None or not self.path.exists():
            return []
        with open(self.path, newline='') as f:
            return [TradeRecord.from_row(row) for row in csv.DictReader(f)]
