import csv
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterator

from loguru import logger

from meridian.utils.money import as_utc

FIELDS = [
    "timestamp",
    "date",
    "instance_id",
    "preset",
    "symbol",
    "side",
    "code",
    "client_order_id",
    "status",
    "price",
    "base_qty",
    "quote_amount",
    "fees",
    "trade_pnl",
    "cumulative_pnl",
]


class TradeReporter:
    """Append-only CSV journal of executed trades."""

    def __init__(self, file_path: str | Path = "reports/trades/trades.csv") -> None:
        self.file_path = Path(file_path)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self._cumulative_pnl = self._load_last_cumulative()

    def _load_last_cumulative(self) -> Decimal:
        if not self.file_path.exists():
            return Decimal("0")

        with self.file_path.open("r", newline="") as f:
            rows = list(csv.DictReader(f))
        if not rows:
            return Decimal("0")
        try:
            return Decimal(rows[-1].get("cumulative_pnl") or "0")
        except InvalidOperation:
            logger.warning(f"Unreadable cumulative_pnl in {self.file_path}, starting from 0")
            return Decimal("0")

    @property
    def cumulative_pnl(self) -> Decimal:
        return self._cumulative_pnl

    def record_trade(
        self,
        *,
        instance_id: str,
        preset: str | None,
        symbol: str,
        side: str,
        code: str,
        client_order_id: str,
        status: str,
        price: Decimal,
        base_qty: Decimal,
        quote_amount: Decimal,
        fees: Decimal,
        trade_pnl: Decimal,
        timestamp: datetime | None = None,
    ) -> dict:
        now = timestamp or datetime.now(timezone.utc)
        self._cumulative_pnl += trade_pnl

        row = {
            "timestamp": now.isoformat(),
            "date": now.strftime("%Y-%m-%d"),
            "instance_id": instance_id,
            "preset": preset or "",
            "symbol": symbol,
            "side": side,
            "code": code,
            "client_order_id": client_order_id,
            "status": status,
            "price": f"{price:.8f}",
            "base_qty": f"{base_qty:.8f}",
            "quote_amount": f"{quote_amount:.8f}",
            "fees": f"{fees:.8f}",
            "trade_pnl": f"{trade_pnl:.8f}",
            "cumulative_pnl": f"{self._cumulative_pnl:.8f}",
        }

        file_exists = self.file_path.exists()
        with self.file_path.open("a", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDS)
            if not file_exists:
                writer.writeheader()
            writer.writerow(row)
        return row

    def _rows(self, instance_id: str | None, side: str | None) -> Iterator[dict]:
        if not self.file_path.exists():
            return
        with self.file_path.open("r", newline="") as f:
            for row in csv.DictReader(f):
                if instance_id and row.get("instance_id") != instance_id:
                    continue
                if side and row.get("side") != side:
                    continue
                yield row

    def get_recent_trades(
        self,
        *,
        instance_id: str | None = None,
        limit: int = 10,
        side: str | None = None,
    ) -> list[dict]:
        return list(deque(self._rows(instance_id, side), maxlen=max(limit, 1)))

    def get_trades_since(
        self,
        *,
        instance_id: str,
        since: datetime,
        side: str | None = None,
    ) -> list[dict]:
        results = []
        for row in self._rows(instance_id, side):
            ts = _parse_timestamp(row.get("timestamp"))
            if ts is not None and ts >= as_utc(since):
                results.append(row)
        return results


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def summarize(trades: list[dict]) -> dict:
    """Win rate and PnL figures over journal rows (SELL rows carry the PnL)."""
    pnls = [Decimal(t.get("trade_pnl") or "0") for t in trades if t.get("side") == "SELL"]
    wins = sum(1 for p in pnls if p > 0)
    total = sum(pnls, Decimal("0"))

    running = Decimal("0")
    peak = Decimal("0")
    max_drawdown = Decimal("0")
    for pnl in pnls:
        running += pnl
        peak = max(peak, running)
        max_drawdown = max(max_drawdown, peak - running)

    return {
        "trades": len(trades),
        "sells": len(pnls),
        "win_rate": Decimal(wins) / len(pnls) if pnls else Decimal("0"),
        "realized_pnl": total,
        "avg_pnl": total / len(pnls) if pnls else Decimal("0"),
        "max_drawdown": max_drawdown,
        "fees": sum((Decimal(t.get("fees") or "0") for t in trades), Decimal("0")),
    }
