"""
Liquidify CLI: run fee cycles from the command line.

Usage:
    python -m liquidify run [--config liquidify.toml] [--mode live|paper] [--interval 300]
    python -m liquidify once [--mode live|paper]
    python -m liquidify check <mint>
    python -m liquidify status
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from liquidify.config import LiquidifyConfig, load_config

if TYPE_CHECKING:
    from liquidify.adapters.base import BaseAdapter
    from liquidify.core.batch import BatchRunner, TokenRegistry
    from liquidify.core.events import EventBus
    from liquidify.core.telemetry import OutcomeTally, TelemetryExporter


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="liquidify",
        description="Creator-fee buyback and liquidity engine for pump.fun tokens",
    )
    parser.add_argument(
        "-c", "--config",
        default="liquidify.toml",
        help="Path to config file (default: liquidify.toml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command")

    # run
    run_p = sub.add_parser("run", help="Run batches on an interval until interrupted")
    run_p.add_argument("--mode", choices=["live", "paper"], default="paper")
    run_p.add_argument("--interval", type=float, default=None, help="Seconds between batch starts")

    # once
    once_p = sub.add_parser("once", help="Run a single batch and exit")
    once_p.add_argument("--mode", choices=["live", "paper"], default="paper")

    # check
    check_p = sub.add_parser("check", help="Resolve graduation status and pool for a mint")
    check_p.add_argument("mint", help="Token mint address")

    # status
    sub.add_parser("status", help="Show config and registry status")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Load config
    config_path = Path(args.config)
    if config_path.exists():
        config = load_config(config_path)
    else:
        if args.command == "run" and args.mode == "live":
            print(f"Config not found: {config_path}")
            print("Copy liquidify.example.toml to liquidify.toml or run: python -m liquidify status")
            sys.exit(1)
        config = load_config(None)

    # Dispatch
    if args.command == "run":
        interval = args.interval if args.interval is not None else config.interval_seconds
        asyncio.run(cmd_run(config, mode=args.mode, interval_s=interval))
    elif args.command == "once":
        report = asyncio.run(cmd_once(config, mode=args.mode))
        sys.exit(1 if report.failed else 0)
    elif args.command == "check":
        asyncio.run(cmd_check(config, mint=args.mint))
    elif args.command == "status":
        cmd_status(config, config_path)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Runtime:
    """Everything one process needs to run batches, plus what to tear down."""
    runner: BatchRunner
    registry: TokenRegistry
    bus: EventBus
    tally: OutcomeTally
    adapters: list[BaseAdapter] = field(default_factory=list)
    exporter: TelemetryExporter | None = None

    async def start(self) -> None:
        for adapter in self.adapters:
            await adapter.connect()

    async def stop(self) -> None:
        for adapter in reversed(self.adapters):
            try:
                await adapter.disconnect()
            except Exception as e:
                logging.getLogger("liquidify.cli").warning(f"Disconnect failed | {adapter.name} | {e}")
        if self.exporter is not None:
            from liquidify.core.telemetry import default_counters, default_tracker
            self.exporter.export_snapshot(default_tracker(), default_counters())
            self.exporter.close()
        close = getattr(self.registry, "close", None)
        if close:
            close()


def build_runtime(config: LiquidifyConfig, mode: str) -> Runtime:
    """Wire registry, adapters and engine for live or paper mode."""
    from liquidify.adapters.pumpfun.graduation import GraduationResolver
    from liquidify.core.batch import BatchRunner
    from liquidify.core.cycle import CycleEngine
    from liquidify.core.events import EventBus
    from liquidify.core.telemetry import OutcomeTally, TelemetryExporter
    from liquidify.registry import JsonTokenRegistry

    bus = EventBus()
    tally = OutcomeTally()
    tally.attach(bus)

    exporter = None
    if config.telemetry_path:
        exporter = TelemetryExporter(config.telemetry_path)
        bus.subscribe_all(lambda event: exporter.emit(event.event_type.name.lower(), {
            "source": event.source,
            **{k: v for k, v in vars(event).items() if k not in ("event_type", "timestamp_ns", "source")},
        }))

    resolver = GraduationResolver(
        pump_coin_url=config.pump_coin_url,
        dexscreener_url=config.dexscreener_url,
        timeout_s=config.http_timeout_s,
    )

    if mode == "paper":
        from liquidify.adapters.paper import (
            PaperFeeClaim, PaperLedger, PaperLiquidity, PaperRegistry,
            PaperResolver, PaperVenue,
        )

        tokens = JsonTokenRegistry(config.registry_path).all()
        registry = PaperRegistry(tokens)
        ledger = PaperLedger(default_lamports=config.paper_wallet_lamports)
        liquidity = PaperLiquidity(ledger, slippage_pct=config.lp_slippage_pct)
        fees = PaperFeeClaim(ledger, accrue_per_claim=config.paper_fees_per_cycle_lamports)
        bonding = PaperVenue(ledger, "paper_bonding", config.paper_tokens_per_sol)
        market = PaperVenue(ledger, "paper_market", config.paper_tokens_per_sol)
        aggregator = PaperVenue(ledger, "paper_aggregator", config.paper_tokens_per_sol)
        engine = CycleEngine(
            resolver=PaperResolver(upstream=resolver, liquidity=liquidity),
            fee_claimer=fees,
            bonding_venue=bonding,
            market_venue=market,
            aggregator_venue=aggregator,
            liquidity=liquidity,
            balances=ledger,
            transfers=ledger,
            settings=config.cycle_settings(),
            event_bus=bus,
        )
        adapters = [resolver, fees, bonding, market, aggregator, liquidity]
        print(f"📝 Paper mode | wallet: {config.paper_wallet_lamports / 1e9:.4f} SOL | "
              f"fees/cycle: {config.paper_fees_per_cycle_lamports / 1e9:.4f} SOL")
    else:
        from liquidify.adapters.jupiter.adapter import JupiterAdapter
        from liquidify.adapters.pumpportal.adapter import PumpPortalAdapter
        from liquidify.adapters.pumpswap.adapter import PumpSwapLiquidity
        from liquidify.adapters.solana_rpc import SolanaRpc

        registry = JsonTokenRegistry(config.registry_path, config.history_path)
        rpc = SolanaRpc(
            rpc_urls=config.rpc_urls,
            commitment=config.commitment,
            confirm_poll_s=config.confirm_poll_s,
            timeout_s=config.http_timeout_s,
        )
        pumpportal = PumpPortalAdapter(
            rpc,
            trade_url=config.pumpportal_url,
            slippage_pct=config.pumpportal_slippage_pct,
            buy_priority_fee_sol=config.buy_priority_fee_sol,
            claim_priority_fee_sol=config.claim_priority_fee_sol,
        )
        jupiter = JupiterAdapter(
            rpc,
            quote_url=config.jupiter_quote_url,
            swap_url=config.jupiter_swap_url,
            slippage_bps=config.jupiter_slippage_bps,
            max_priority_lamports=config.jupiter_max_priority_lamports,
        )
        liquidity = PumpSwapLiquidity(
            rpc,
            slippage_pct=config.lp_slippage_pct,
            compute_unit_price=config.lp_compute_unit_price,
        )
        engine = CycleEngine(
            resolver=resolver,
            fee_claimer=pumpportal,
            bonding_venue=pumpportal,
            market_venue=pumpportal,
            aggregator_venue=jupiter,
            liquidity=liquidity,
            balances=rpc,
            transfers=rpc,
            settings=config.cycle_settings(),
            event_bus=bus,
        )
        adapters = [rpc, resolver, pumpportal, jupiter, liquidity]
        print(f"🔴 LIVE mode | rpc endpoints: {len(config.rpc_urls)}")

    for adapter in adapters:
        adapter.bind(bus)

    runner = BatchRunner(engine, registry=registry, event_bus=bus)
    return Runtime(
        runner=runner, registry=registry, bus=bus, tally=tally,
        adapters=adapters, exporter=exporter,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_run(config: LiquidifyConfig, mode: str, interval_s: float) -> None:
    """Run batches every `interval_s` seconds until SIGINT/SIGTERM."""
    runtime = build_runtime(config, mode)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends the loop
            pass

    print(f"🚀 Liquidify starting ({mode} mode)")
    print(f"   Registry: {config.registry_path}")
    print(f"   Interval: {interval_s:.0f}s")
    print()

    await runtime.start()
    try:
        await runtime.runner.run_forever(interval_s, stop)
    finally:
        await runtime.stop()
        _print_tally(runtime)


async def cmd_once(config: LiquidifyConfig, mode: str):
    """Run one batch over every eligible token and print per-token results."""
    runtime = build_runtime(config, mode)
    await runtime.start()
    try:
        report = await runtime.runner.run_once()
    finally:
        await runtime.stop()

    print()
    print(f"{'Token':>12} {'State':>10} {'Fees':>12} {'Buyback':>12} {'LP':>12} {'Burned':>16}")
    print("-" * 80)
    for token_id, result in report.results.items():
        print(
            f"{token_id[:12]:>12} "
            f"{result.state.value[:10]:>10} "
            f"{result.fees_claimed / 1e9:>12.6f} "
            f"{result.buyback_spent / 1e9:>12.6f} "
            f"{result.liquidity_spent / 1e9:>12.6f} "
            f"{result.shares_burned:>16,}"
        )
        for note in result.notes:
            print(f"{'':>12}  ⚠ {note}")
        if result.failure_reason:
            print(f"{'':>12}  ❌ {result.failure_reason}")
        for op in result.operations:
            print(f"{'':>12}  ✅ {op.kind}: {op.explorer_url}")

    summary = report.summary()
    print()
    print(f"📊 processed={summary['processed']} skipped={summary['skipped']} "
          f"failed={summary['failed']} | {summary['duration_s']}s")
    _print_tally(runtime)
    return report


async def cmd_check(config: LiquidifyConfig, mint: str) -> None:
    """Resolve graduation status and, for a PumpSwap pool, its reserves."""
    from liquidify.adapters.base import LiquidifyError
    from liquidify.adapters.pumpfun.graduation import GraduationResolver
    from liquidify.adapters.pumpswap.adapter import PumpSwapLiquidity
    from liquidify.adapters.solana_rpc import SolanaRpc

    resolver = GraduationResolver(
        pump_coin_url=config.pump_coin_url,
        dexscreener_url=config.dexscreener_url,
        timeout_s=config.http_timeout_s,
    )
    await resolver.connect()
    try:
        status = await resolver.resolve(mint)
    finally:
        await resolver.disconnect()

    phase = "🎓 graduated" if status.is_graduated else "📈 bonding"
    print(f"🔎 {mint}")
    print(f"   Phase: {phase} (source: {status.source or 'default'})")
    print(f"   Pool: {status.pool_address or '-'}")

    if not status.pool_address:
        return

    rpc = SolanaRpc(rpc_urls=config.rpc_urls, commitment=config.commitment, timeout_s=config.http_timeout_s)
    liquidity = PumpSwapLiquidity(rpc)
    await rpc.connect()
    try:
        pool = await liquidity.get_pool_state(status.pool_address)
        print(f"   Reserves: {pool.quote_reserve / 1e9:,.4f} SOL / {pool.base_reserve:,} token")
        print(f"   LP supply: {pool.lp_supply:,} ({pool.lp_mint})")
        print(f"   Price: {pool.price_sol:.12f} SOL per raw unit")
    except LiquidifyError as e:
        print(f"   ⚠ Not a PumpSwap pool or unreadable: {e}")
    finally:
        await rpc.disconnect()


def cmd_status(config: LiquidifyConfig, config_path: Path) -> None:
    """Show config and registry status."""
    from liquidify import __version__
    from liquidify.registry import JsonTokenRegistry, RegistryError

    print(f"💧 Liquidify v{__version__}")
    print()

    if config_path.exists():
        print(f"✅ Config: {config_path}")
    else:
        print(f"⚠ Config not found: {config_path} (using defaults)")
        print("   Create one from: liquidify.example.toml")

    print(f"   RPC: {', '.join(u[:40] for u in config.rpc_urls)}")
    print(f"   Interval: {config.interval_seconds:.0f}s")
    print(f"   Min spend: {config.min_spend_lamports / 1e9:.6f} SOL | "
          f"Reserve: {config.tx_fee_reserve_lamports / 1e9:.6f} SOL | "
          f"Cap: {config.max_claim_lamports / 1e9:.4f} SOL")
    print()

    try:
        registry = JsonTokenRegistry(config.registry_path)
    except (RegistryError, ValueError) as e:
        print(f"❌ Registry unreadable: {config.registry_path} | {e}")
        return

    tokens = registry.all()
    print(f"📒 Registry: {config.registry_path} | {len(tokens)} tokens")
    for t in tokens:
        wallet = "🔑" if t.wallet_secret else "❌ no wallet"
        mark = "✅" if t.eligible else "⏸"
        cycles = t.totals.get("cycles", 0)
        fees = t.totals.get("total_fees_claimed", 0)
        print(f"   {mark} {t.label:>10} {t.status:>10} {wallet} | cycles={cycles} fees={fees / 1e9:.6f} SOL")


def _print_tally(runtime: Runtime) -> None:
    from liquidify.core.telemetry import default_tracker

    counts = runtime.tally.counters.snapshot()
    if counts:
        print()
        print("🧮 Events:")
        for name, value in sorted(counts.items()):
            print(f"   {name}: {value}")

    latencies = default_tracker().summary()
    if latencies:
        print()
        print(f"{'Call':>32} {'p50 ms':>9} {'p95 ms':>9} {'n':>6}")
        for key, stats in sorted(latencies.items()):
            print(f"{key[:32]:>32} {stats['p50'] * 1000:>9.1f} {stats['p95'] * 1000:>9.1f} {int(stats['count']):>6}")
