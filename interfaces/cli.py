"""
Operator CLI for the trading engine.

Commands:
- backtest: run one strategy over a candle file or freshly fetched candles
- optimize: grid search a strategy's parameters
- walk-forward: validate a parameter set out of sample
- rebalance: run the daily rebalance once and print the report
- status: print persisted engine state, the active session and allocations
- run: start the engine (and the API) until interrupted

Candles come from a JSON file (`--candles`, a list of OHLCV dicts or ccxt
rows) or, without one, from the configured exchange. Rebalance mirrors the
fetched candles into the database and falls back to them if the fetch fails.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from ai.grid_search import OBJECTIVES, GridSearchOptimizer
from ai.walk_forward_engine import WalkForwardValidator
from backtesting.engine import CostModel, run_backtest
from core.config import ConfigError, load_config
from core.engine import build_rebalancer
from data.candles import CandleProcessor, fetch_history
from execution.ledger import AllocationLedger
from monitoring.logger import configure as logger_config, log_event
from persistence.store import Store
from strategies.registry import get_strategy, list_strategies


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, default=str, indent=2))


def _load_candles_from_file(path: str) -> List[Dict[str, float]]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"candles file not found: {path}")
    data = json.loads(p.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("candles file must contain a JSON list")
    return CandleProcessor.normalize(data)


async def _fetch_candles(config: Dict[str, Any], limit: int, store: Optional[Store] = None) -> List[Dict[str, float]]:
    from main import build_gateway

    gateway = build_gateway(config)
    try:
        trading = config["trading"]
        if store is not None:
            return await fetch_history(gateway, store, trading["symbol"], trading["timeframe"], limit)
        return await gateway.fetch_candles(trading["symbol"], trading["timeframe"], limit)
    finally:
        await gateway.close()


async def _candles(args: argparse.Namespace, config: Dict[str, Any]) -> List[Dict[str, float]]:
    if args.candles:
        return _load_candles_from_file(args.candles)
    return await _fetch_candles(config, args.limit)


def _cost_model(config: Dict[str, Any]) -> CostModel:
    return CostModel(initial_balance=float(config["trading"]["paper_initial_balance"]),
                     fee_rate=float(config["trading"]["fee_rate"]),
                     slippage_rate=float(config["exchange"]["paper_slippage_rate"]))


def _parse_params(raw: Optional[str]) -> Optional[Dict[str, float]]:
    if not raw:
        return None
    params = json.loads(raw)
    if not isinstance(params, dict):
        raise ValueError("--params must be a JSON object")
    return {k: float(v) for k, v in params.items()}


def _require_strategy(strategy_id: str) -> bool:
    if get_strategy(strategy_id) is None:
        known = ", ".join(sorted(s.id for s in list_strategies()))
        print(f"Unknown strategy '{strategy_id}'. Known: {known}", file=sys.stderr)
        return False
    return True


async def cmd_backtest(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    if not _require_strategy(args.strategy):
        return 2
    candles = await _candles(args, config)
    result = run_backtest(args.strategy, _parse_params(args.params), candles, _cost_model(config))
    log_event("cli.backtest", result.summary())
    if args.save:
        store = Store(config["database"]["url"])
        trading = config["trading"]
        result_id = store.save_backtest(result.to_dict(), trading["symbol"], trading["timeframe"])
        print(f"Saved backtest #{result_id}")
    _print_json(result.to_dict() if args.trades else result.summary())
    return 0


async def cmd_optimize(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    if not _require_strategy(args.strategy):
        return 2
    candles = await _candles(args, config)
    optimization = config["optimization"]
    optimizer = GridSearchOptimizer(max_workers=optimization["max_workers"],
                                    max_combinations=optimization["max_combinations"],
                                    cost_model=_cost_model(config))
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, optimizer.search, args.strategy, candles, args.optimize_for)
    _print_json(result.to_dict())
    return 0


async def cmd_walk_forward(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    if not _require_strategy(args.strategy):
        return 2
    candles = await _candles(args, config)
    params = _parse_params(args.params) or dict(get_strategy(args.strategy).default_parameters)
    optimization = config["optimization"]
    validator = WalkForwardValidator(in_sample_ratio=optimization["in_sample_ratio"],
                                     min_pass_ratio=optimization["min_pass_ratio"],
                                     cost_model=_cost_model(config))
    result = validator.validate(args.strategy, params, candles)
    _print_json(result.to_dict())
    return 0 if result.passed else 1


async def cmd_rebalance(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    store = Store(config["database"]["url"])
    if args.candles:
        candles = _load_candles_from_file(args.candles)
    else:
        candles = await _fetch_candles(config, args.limit or config["optimization"]["rebalance_candle_limit"],
                                       store=store)
    rebalancer = build_rebalancer(config, store)
    loop = asyncio.get_running_loop()
    report = await loop.run_in_executor(None, rebalancer.run_daily_rebalance, candles)
    _print_json(report.to_dict())
    return 0


async def cmd_status(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    store = Store(config["database"]["url"])
    ledger = AllocationLedger(store, config["trading"]["fee_rate"])
    session = store.get_active_session()
    out = {
        "engine": store.load_engine_state("engine"),
        "regime": store.load_engine_state("current_regime"),
        "session": session,
        "allocations": ledger.get_allocations(session["id"]) if session else [],
        "open_positions": ledger.get_open_positions(session["id"]) if session else [],
        "risk": store.load_risk_state("portfolio"),
    }
    _print_json(out)
    return 0


async def cmd_run(args: argparse.Namespace, config: Dict[str, Any]) -> int:
    from main import run_platform

    await run_platform(config, serve_api=not args.no_api)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="trading-engine", description="Multi-strategy trading engine CLI")
    p.add_argument("--config", default="core/config.yaml", help="Path to YAML config")
    p.add_argument("--environment", choices=("paper", "live"), help="Override environment")
    p.add_argument("--symbol", help="Override trading symbol")
    p.add_argument("--db", help="Override database URL")
    p.add_argument("--log-level", default=None, help="Override log level")
    sub = p.add_subparsers(dest="cmd")

    def _data_args(sp: argparse.ArgumentParser, default_limit: Optional[int] = 1000) -> None:
        sp.add_argument("--candles", help="Path to JSON candles file (default: fetch from exchange)")
        sp.add_argument("--limit", type=int, default=default_limit, help="Candles to fetch")

    sp = sub.add_parser("backtest", help="Backtest one strategy")
    sp.add_argument("--strategy", required=True, help="Strategy id")
    sp.add_argument("--params", help="JSON object of parameters (default: strategy defaults)")
    sp.add_argument("--trades", action="store_true", help="Include the trade list")
    sp.add_argument("--save", action="store_true", help="Persist the result")
    _data_args(sp)

    sp2 = sub.add_parser("optimize", help="Grid search a strategy")
    sp2.add_argument("--strategy", required=True, help="Strategy id")
    sp2.add_argument("--optimize-for", choices=OBJECTIVES, default="sharpe")
    _data_args(sp2)

    sp3 = sub.add_parser("walk-forward", help="Walk-forward validate a parameter set")
    sp3.add_argument("--strategy", required=True, help="Strategy id")
    sp3.add_argument("--params", help="JSON object of parameters (default: strategy defaults)")
    _data_args(sp3)

    sp4 = sub.add_parser("rebalance", help="Run the daily rebalance once")
    _data_args(sp4, default_limit=None)

    sub.add_parser("status", help="Show persisted engine state and the active session")

    sp6 = sub.add_parser("run", help="Start the engine until interrupted")
    sp6.add_argument("--no-api", action="store_true", help="Do not serve the operator API")
    return p


_COMMANDS = {
    "backtest": cmd_backtest,
    "optimize": cmd_optimize,
    "walk-forward": cmd_walk_forward,
    "rebalance": cmd_rebalance,
    "status": cmd_status,
    "run": cmd_run,
}


def config_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if args.environment:
        overrides["environment"] = args.environment
    if args.symbol:
        overrides.setdefault("trading", {})["symbol"] = args.symbol
    if args.db:
        overrides["database"] = {"url": args.db}
    if args.log_level:
        overrides["monitoring"] = {"log_level": args.log_level}
    return load_config(args.config, overrides)


async def _main(argv: List[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 1
    try:
        config = config_from_args(args)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    logger_config(level=config["monitoring"]["log_level"], log_file=config["monitoring"]["log_file"])
    try:
        return await _COMMANDS[args.cmd](args, config)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


def main() -> int:
    try:
        return_code = asyncio.run(_main(sys.argv[1:]))
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return_code = 130
    return return_code


if __name__ == "__main__":
    sys.exit(main())
