#!/usr/bin/env python3
"""PnL summary from the transaction log and portfolio snapshots."""
import argparse
import sys

from analytics.portfolio import PortfolioTracker
from core.ledger import Ledger
from tools.config_validator import load_settings


def render(ledger: Ledger, tracker: PortfolioTracker) -> str:
    lines = ["", "=" * 60, "TURNTRADER PNL SUMMARY", "=" * 60]

    txs = ledger.transactions()
    buys = [t for t in txs if t.transaction_type == "BUY"]
    sells = [t for t in txs if t.is_sell]

    lines.append("\nBUYS:")
    lines.append(f"  Total spent:             ${sum(t.amount_in_usd for t in buys):.2f}")
    lines.append(f"  Number of buys:          {len(buys)}")

    lines.append("\nSELLS:")
    lines.append(f"  Total proceeds:          ${sum(t.amount_in_usd for t in sells):.2f}")
    lines.append(f"  Number of sells:         {len(sells)}")
    lines.append(f"  Realized PnL:            ${ledger.total_profit_usd():.2f}")

    lines.append("\nOPEN POSITIONS:")
    positions = ledger.positions()
    if not positions:
        lines.append("  (none)")
    for asset, pos in sorted(positions.items()):
        lines.append(
            f"  {asset:<8} {pos.total_amount:.8f} @ ${pos.average_buy_price:.4f} "
            f"(invested ${pos.total_invested:.2f})"
        )

    summary = tracker.summary()
    lines.append("\nPORTFOLIO:")
    if summary is None:
        lines.append("  No snapshots recorded")
    else:
        lines.append(f"  Snapshots:               {summary.total_snapshots}")
        lines.append(f"  Current value:           ${summary.current_value_usdc:.2f} ({summary.current_value_btc:.6f} BTC)")
        lines.append(f"  Change since first:      ${summary.value_change_usdc:+.2f} ({summary.value_change_percent:+.2f}%)")
        lines.append(f"  BTC change since first:  {summary.btc_change_percent:+.2f}%")
    lines.append("=" * 60)
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Ledger and portfolio PnL summary")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    args = parser.parse_args(argv)

    settings = load_settings(args.config_dir)
    ledger = Ledger(settings.data.transactions_file)
    ledger.load()
    tracker = PortfolioTracker(exchange=None, snapshot_file=settings.data.portfolio_file)
    print(render(ledger, tracker))
    return 0


if __name__ == "__main__":
    sys.exit(main())
