"""
REST API for operating the trading engine.

Contract:
- Read endpoints for engine status, the aggregated strategy vote, strategies,
  trades, backtests, the rebalance audit log and recent structured logs.
- Control endpoints: start / stop / manual tick, strategy config patches,
  rebalance and ad-hoc backtests.
- Avoid leaking sensitive data (api keys, secrets, tokens).
"""
from __future__ import annotations

import asyncio
import datetime
import math
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import uvicorn

from backtesting.engine import BacktestError, run_backtest
from monitoring import logger as mon_logger
from strategies.aggregator import config_from_row, init_strategy_configs
from strategies.base import WEIGHT_MAX, WEIGHT_MIN
from strategies.registry import get_strategy

# keys to redact in any returned payloads
_SENSITIVE_KEYS = {k.lower() for k in ("api_key", "apiKey", "secret", "password", "private_key", "token")}

_PATCHABLE_KEYS = {"enabled", "weight", "parameters"}


def _redact(obj: Any) -> Any:
    """Recursively redact sensitive keys and replace non-finite floats with None."""
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lower() in _SENSITIVE_KEYS:
                out[k] = "<REDACTED>"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(v) for v in obj]
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj


def _respond(payload: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(_redact(jsonable_encoder(payload)), status_code=status_code)


def validate_patch(strategy_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate an operator patch of a strategy config.

    Raises:
        ValueError: On unknown keys, wrong types, or out-of-range values
    """
    if not isinstance(patch, dict) or not patch:
        raise ValueError("patch must be a non-empty object")
    unknown = set(patch) - _PATCHABLE_KEYS
    if unknown:
        raise ValueError(f"unknown fields: {sorted(unknown)}")

    changes: Dict[str, Any] = {}
    if "enabled" in patch:
        if not isinstance(patch["enabled"], bool):
            raise ValueError("enabled must be a boolean")
        changes["enabled"] = patch["enabled"]
    if "weight" in patch:
        weight = patch["weight"]
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not math.isfinite(weight):
            raise ValueError("weight must be a number")
        if not WEIGHT_MIN <= weight <= WEIGHT_MAX:
            raise ValueError(f"weight must be within [{WEIGHT_MIN}, {WEIGHT_MAX}]")
        changes["weight"] = float(weight)
    if "parameters" in patch:
        params = patch["parameters"]
        if not isinstance(params, dict):
            raise ValueError("parameters must be an object")
        strategy = get_strategy(strategy_id)
        ranges = strategy.parameter_ranges if strategy else {}
        for name, value in params.items():
            if name not in ranges:
                raise ValueError(f"unknown parameter '{name}'")
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"parameter '{name}' must be a number")
            if not ranges[name].contains(value):
                raise ValueError(f"parameter '{name}'={value} outside [{ranges[name].min}, {ranges[name].max}]")
        changes["parameters"] = params
    return changes


def create_app(engine, store) -> FastAPI:
    """
    Build the operator API bound to a TradingEngine and its Store.

    Args:
        engine: TradingEngine instance
        store: Persistence store shared with the engine
    """
    app = FastAPI(title="Trading Engine API", version="0.2.0")
    # serializes control operations (start/stop/tick/rebalance)
    control_lock = asyncio.Lock()

    @app.get("/health")
    async def health():
        try:
            db_ok = store.ping()
        except Exception:
            db_ok = False
        return _respond({"ok": db_ok, "status": engine.state.status.value,
                         "time": datetime.datetime.utcnow().isoformat() + "Z"})

    @app.get("/engine/status")
    async def engine_status():
        return _respond(engine.get_status())

    @app.post("/engine/start")
    async def engine_start():
        async with control_lock:
            result = await engine.start()
        return _respond(result, 200 if result.get("success") else 409)

    @app.post("/engine/stop")
    async def engine_stop():
        async with control_lock:
            result = await engine.stop()
        return _respond(result, 200 if result.get("success") else 409)

    @app.post("/engine/tick")
    async def engine_tick():
        async with control_lock:
            outcomes = await engine.manual_tick()
        return _respond({"outcomes": [o.to_dict() for o in outcomes]})

    @app.get("/signals")
    async def current_signals():
        try:
            result = await engine.current_signals()
        except Exception as e:
            mon_logger.log_error("api.signals_failed", str(e))
            raise HTTPException(status_code=502, detail=f"signals unavailable: {e}")
        return _respond(result)

    @app.get("/strategies")
    async def list_strategy_configs(enabled_only: bool = Query(False)):
        init_strategy_configs(store)
        out = []
        for row in store.get_configs(enabled_only=enabled_only):
            strategy = get_strategy(row["strategy_id"])
            entry = config_from_row(row).to_dict()
            if strategy is not None:
                entry["parameter_ranges"] = {k: r.to_dict() for k, r in strategy.parameter_ranges.items()}
                entry["required_indicators"] = list(strategy.required_indicators)
            out.append(entry)
        return _respond(out)

    @app.patch("/strategies/{strategy_id}")
    async def patch_strategy(strategy_id: str, patch: Dict[str, Any] = Body(...)):
        if store.get_config(strategy_id) is None:
            raise HTTPException(status_code=404, detail="strategy not found")
        try:
            changes = validate_patch(strategy_id, patch)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if "parameters" in changes:
            current = store.get_config(strategy_id)["parameters"] or {}
            changes["parameters"] = dict(current, **changes["parameters"])
        store.update_config(strategy_id, **changes)
        mon_logger.log_event("strategy.patched", {"strategy_id": strategy_id, "changes": changes})
        return _respond(config_from_row(store.get_config(strategy_id)).to_dict())

    @app.post("/rebalance")
    async def trigger_rebalance():
        result = await engine.rebalance()
        return _respond(result, 200 if result.get("success") else 409)

    @app.get("/trades")
    async def list_trades(session_id: Optional[int] = Query(None), strategy_id: Optional[str] = Query(None),
                          status: Optional[str] = Query(None, pattern="^(open|closed)$"),
                          limit: int = Query(100, ge=1, le=1000), offset: int = Query(0, ge=0)):
        return _respond(store.list_trades(session_id=session_id, strategy_id=strategy_id, status=status,
                                          limit=limit, offset=offset))

    @app.get("/backtests")
    async def list_backtests(strategy_id: Optional[str] = Query(None), limit: int = Query(50, ge=1, le=500),
                             include_trades: bool = Query(False)):
        return _respond(store.list_backtests(strategy_id=strategy_id, limit=limit, include_trades=include_trades))

    @app.get("/rebalance-log")
    async def rebalance_log(strategy_id: Optional[str] = Query(None), limit: int = Query(100, ge=1, le=1000)):
        return _respond(store.list_rebalance_log(strategy_id=strategy_id, limit=limit))

    @app.get("/logs/recent")
    async def recent_logs(limit: int = Query(50, ge=1, le=500), kind: Optional[str] = Query(None),
                          strategy_id: Optional[str] = Query(None)):
        """Return recent structured logs from monitoring.logger (in-memory snapshot)."""
        return _respond(mon_logger.get_recent(limit, kind=kind, strategy_id=strategy_id))

    @app.post("/backtest")
    async def adhoc_backtest(request: Dict[str, Any] = Body(...)):
        strategy_id = request.get("strategy_id")
        if not strategy_id or get_strategy(strategy_id) is None:
            raise HTTPException(status_code=404, detail="strategy not found")
        params = request.get("parameters")
        if params is None:
            row = store.get_config(strategy_id)
            params = (row or {}).get("parameters") or None
        elif not isinstance(params, dict):
            raise HTTPException(status_code=400, detail="parameters must be an object")
        limit = request.get("limit", engine.config["optimization"]["rebalance_candle_limit"])
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise HTTPException(status_code=400, detail="limit must be a positive integer")

        try:
            candles = await engine.gateway.fetch_candles(engine.symbol, engine.timeframe, limit)
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(None, run_backtest, strategy_id, params, candles)
        except BacktestError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            mon_logger.log_error("api.backtest_failed", str(e), {"strategy_id": strategy_id})
            raise HTTPException(status_code=502, detail=f"backtest failed: {e}")

        payload = result.to_dict()
        if request.get("save"):
            payload["id"] = store.save_backtest(payload, engine.symbol, engine.timeframe)
        return _respond(payload)

    return app


# Server for running the API alongside the engine loop (await server.serve())
def build_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8000) -> uvicorn.Server:
    return uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
