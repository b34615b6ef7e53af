# main.py
import asyncio
import sys
import time

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from arbgate.config import AppConfig, ConfigStore, load_config
from arbgate.errors import ConfigError
from arbgate.logger import setup_console_logger
from arbgate.service import ArbitragePipeline

CONFIG_PATH = "config.yaml"

# --- UI HELPER FUNCTIONS ---

def startup_selection(config: AppConfig):
    """Interactive CLI to pick which pools and order-book streams to monitor."""
    print("\n🚀 ARBGATE: DEX/CEX ARBITRAGE MONITOR \n")
    pools = [p.venue for p in config.feeds.pools]
    streams = [s.venue for s in config.feeds.streams]

    choices = [questionary.Choice(v, checked=True) for v in pools + streams]
    selected = questionary.checkbox("Select Venues to Monitor:", choices=choices).ask()
    if not selected or len(selected) < 2:
        print("Need at least 2 venues for arbitrage. Exiting.")
        sys.exit()

    config.feeds.pools = [p for p in config.feeds.pools if p.venue in selected]
    config.feeds.streams = [s for s in config.feeds.streams if s.venue in selected]
    return config


def generate_dashboard(pipeline: ArbitragePipeline):
    """
    Creates the Rich Console Dashboard layout.
    Shows the ranked opportunities, market coverage and circuit breaker status.
    """
    view = pipeline.get_opportunities(limit=15)
    now = time.time()

    # 1. Opportunity Table
    opp_table = Table(title="🎯 Live Opportunities")
    opp_table.add_column("Type", style="cyan")
    opp_table.add_column("Buy", style="green")
    opp_table.add_column("Sell", style="magenta")
    opp_table.add_column("Spread", justify="right")
    opp_table.add_column("Net Profit", justify="right", style="green")
    opp_table.add_column("Conf.", justify="right")
    opp_table.add_column("Flags", justify="right")
    opp_table.add_column("Expires", justify="right")

    for opp in view["opportunities"]:
        opp_table.add_row(
            opp.type.value,
            f"{opp.buy_venue} @ {opp.buy_price:,.2f}",
            f"{opp.sell_venue} @ {opp.sell_price:,.2f}",
            f"{opp.spread_pct:.3f}%",
            f"${opp.net_profit:,.2f}",
            f"{opp.rank_score}",
            str(len(opp.risk_flags)),
            f"{opp.time_to_expiry(now):.0f}s",
        )

    # 2. Market Table
    market = view["market"]
    stats = view["stats"]
    market_table = Table(title="📡 Market Feed")
    market_table.add_column("Metric", style="cyan")
    market_table.add_column("Value", justify="right")
    market_table.add_row("DEX venues", str(market["dex_venues"]))
    market_table.add_row("CEX venues", str(market["cex_venues"]))
    last = market["last_update"]
    market_table.add_row("Last update", f"{now - last:.1f}s ago" if last else "-")
    best = market["best_prices"] or {}
    market_table.add_row("Best DEX ask", f"${best.get('best_dex_ask', 0.0):,.2f}")
    market_table.add_row("Best CEX bid", f"${best.get('best_cex_bid', 0.0):,.2f}")
    market_table.add_row("Opportunities", str(stats["total"]))
    market_table.add_row("Avg spread", f"{stats['average_spread_pct']:.3f}%")
    market_table.add_row("Potential profit", f"${stats['total_potential_profit']:,.2f}")

    # Layout Construction
    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="bottom")
    )
    layout["top"].split_row(
        Layout(Panel(opp_table), ratio=3),
        Layout(Panel(market_table), ratio=1)
    )

    summary = pipeline.gate.risk_summary()
    if summary["circuit_breaker"]["active"]:
        remaining = summary["circuit_breaker"]["remaining_seconds"] or 0.0
        footer = Panel(f"[bold]⛔ CIRCUIT BREAKER ACTIVE - resumes in {remaining:.0f}s[/bold]",
                       style="white on red")
    else:
        footer = Panel(
            f"[bold gold1]RISK {summary['risk_score']}/100 | "
            f"DAILY VOLUME {summary['daily_volume_used_pct']:.1f}% | "
            f"DRAWDOWN {summary['current_drawdown_pct']:.2f}%[/bold gold1]",
            style="white on blue")
    layout["bottom"].update(footer)
    layout["bottom"].size = 3

    return layout

# --- MAIN CONTROLLER ---

async def run(pipeline: ArbitragePipeline, store: ConfigStore):
    try:
        print("Connecting price feeds...")
        await pipeline.start(config_store=store)

        console = Console()
        with Live(console=console, refresh_per_second=4) as live:
            while True:
                live.update(generate_dashboard(pipeline))
                await asyncio.sleep(0.25)
    finally:
        print("Shutting down resources...")
        await pipeline.stop()


if __name__ == "__main__":
    try:
        config = load_config(CONFIG_PATH)
    except ConfigError as e:
        print(f"❌ {e}")
        sys.exit(1)

    try:
        config = startup_selection(config)
        logger = setup_console_logger("Arbgate", config.log_level)
        store = ConfigStore(CONFIG_PATH, logger, config)
        pipeline = ArbitragePipeline(config, logger)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(run(pipeline, store))
    except KeyboardInterrupt:
        print("\n🛑 Monitor Stopped by User.")
        sys.exit()
