#!/usr/bin/env python3
import argparse
from typing import Iterable

from meridian.reporting.trade_reporter import TradeReporter, summarize


def _print_trades(trades: Iterable[dict]) -> None:
    for idx, trade in enumerate(trades, start=1):
        print(
            f"{idx:>2}. {trade.get('timestamp', '')} | {trade.get('symbol', '')} | {trade.get('side', '')} "
            f"| {trade.get('code', '')} | price={trade.get('price', '')} | pnl={trade.get('trade_pnl', '0')}"
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="Quick review of recent journaled trades.")
    parser.add_argument("--instance", default=None, help="Instance id to filter trades.")
    parser.add_argument("--limit", type=int, default=20, help="Number of trades to load.")
    parser.add_argument("--side", default=None, help="Trade side to filter (BUY or SELL).")
    parser.add_argument("--file", default="reports/trades/trades.csv", help="Trade journal path.")
    args = parser.parse_args()

    reporter = TradeReporter(args.file)
    trades = reporter.get_recent_trades(instance_id=args.instance, limit=args.limit, side=args.side)

    if not trades:
        print("No trades found for the given filters.")
        return 1

    stats = summarize(trades)

    print("Last trades:")
    _print_trades(trades)
    print("")
    print("Summary:")
    print(f"- trades: {stats['trades']}")
    print(f"- sells: {stats['sells']}")
    print(f"- win_rate: {stats['win_rate']:.2f}")
    print(f"- realized_pnl: {stats['realized_pnl']:.4f}")
    print(f"- avg_pnl: {stats['avg_pnl']:.4f}")
    print(f"- max_drawdown: {stats['max_drawdown']:.4f}")
    print(f"- fees: {stats['fees']:.4f}")
    print(f"- journal cumulative_pnl: {reporter.cumulative_pnl:.4f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
