"""
Structured logging for the trading engine.

Every engine event, ledger trade and error goes through one LoggerManager:
- a key/value line on the "trading.engine" logger (console and optional rotating file)
- an entry in a bounded in-memory cache that the operator API serves at /logs/recent

Entries that concern a single strategy carry its id at the top level so the
cache can be filtered per strategy. Exchange credentials never reach either sink.

Usage:
    from monitoring.logger import configure, log_event, log_trade, log_error

    configure(level="INFO", log_file="logs/engine.log")
    log_event("engine.start", {"session_id": 3, "strategies": 6})
    log_trade({"trade_id": 12, "strategy_id": "rsi-bb", "side": "buy", "price": 2.41})
    log_strategy_event("rsi-bb", "risk.strategy_block", {"reason": "daily loss limit"}, level="WARNING")
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

SENSITIVE_KEYS = frozenset({"api_key", "apikey", "secret", "password", "private_key", "token"})
REDACTED = "<REDACTED>"

RECENT_CACHE_SIZE = 500
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def scrub_secrets(value: Any, sensitive_keys: Iterable[str] = SENSITIVE_KEYS) -> Any:
    """Return a copy of ``value`` with sensitive keys redacted at any depth (dicts and lists)."""
    keys = {k.lower() for k in sensitive_keys}
    if isinstance(value, dict):
        return {k: REDACTED if isinstance(k, str) and k.lower() in keys else scrub_secrets(v, keys)
                for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [scrub_secrets(v, keys) for v in value]
    return value


def _to_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def _line(event: str, payload: Optional[Dict[str, Any]]) -> str:
    if not payload:
        return event
    return f"{event} {json.dumps(payload, separators=(',', ':'), default=str, sort_keys=True)}"


class LoggerManager:
    """
    Owns the engine logger's handlers and the recent-entry cache.

    All methods are safe to call from the event loop and from optimizer worker threads.
    """

    def __init__(self, name: str = "trading.engine", recent_size: int = RECENT_CACHE_SIZE):
        self.name = name
        self._lock = threading.RLock()
        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.WARNING)
        self._logger.propagate = False
        self._recent: deque = deque(maxlen=recent_size)

    def configure(self, level: str | int = "INFO", log_file: Optional[str] = None,
                  max_bytes: int = 10 * 1024 * 1024, backup_count: int = 5, console: bool = True) -> None:
        """
        Replace the current handlers. Calling it again is safe.

        Args:
            level: level name or number, also applied to the root logger so module loggers follow
            log_file: rotating log file path; parent directories are created
            max_bytes: size at which the file rotates
            backup_count: rotated files kept
            console: attach a stderr handler
        """
        lvl = _to_level(level)
        formatter = logging.Formatter(LOG_FORMAT)
        with self._lock:
            for handler in list(self._logger.handlers):
                self._logger.removeHandler(handler)
                handler.close()

            handlers: List[logging.Handler] = []
            if console:
                handlers.append(logging.StreamHandler())
            if log_file:
                Path(log_file).parent.mkdir(parents=True, exist_ok=True)
                handlers.append(logging.handlers.RotatingFileHandler(
                    log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"))

            for handler in handlers:
                handler.setLevel(lvl)
                handler.setFormatter(formatter)
                self._logger.addHandler(handler)
            self._logger.setLevel(lvl)

        root = logging.getLogger()
        root.setLevel(lvl)
        if not root.handlers:
            logging.basicConfig(level=lvl, format=LOG_FORMAT)

    def _emit(self, lvl: int, kind: str, event: str, payload: Optional[Dict[str, Any]],
              message: Optional[str] = None, exc_info: Any = None) -> None:
        safe = scrub_secrets(payload) if payload else None
        text = f"{event} {message}" if message else event
        self._logger.log(lvl, _line(text, safe), exc_info=exc_info, extra={"event": event, "payload": safe})

        entry = {
            "ts": int(time.time()),
            "kind": kind,
            "event": event,
            "strategy_id": (safe or {}).get("strategy_id"),
            "payload": safe,
        }
        if message is not None:
            entry["message"] = message
        with self._lock:
            self._recent.appendleft(entry)

    def get_recent(self, limit: Optional[int] = None, kind: Optional[str] = None,
                   strategy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first snapshot of cached entries, optionally filtered by kind and strategy."""
        with self._lock:
            items = [e for e in self._recent
                     if (kind is None or e["kind"] == kind)
                     and (strategy_id is None or e["strategy_id"] == strategy_id)]
        return items if limit is None else items[:limit]

    def log_event(self, event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
        self._emit(_to_level(level), "event", event, payload)

    def log_trade(self, trade: Dict[str, Any]) -> None:
        """Record a ledger mutation; the event name follows the trade side (``trade.buy``, ``trade.close``)."""
        self._emit(logging.INFO, "trade", f"trade.{trade.get('side', 'unknown')}", trade)

    def log_error(self, event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None,
                  exc_info: Any = None) -> None:
        self._emit(logging.ERROR, "error", event, payload, message=message, exc_info=exc_info)

    def log_strategy_event(self, strategy_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
                           level: str | int = "INFO") -> None:
        self._emit(_to_level(level), "event", event, dict(payload or {}, strategy_id=strategy_id))


# Module-level default manager
_default_manager = LoggerManager()


def configure(level: str | int = "INFO", log_file: Optional[str] = None, **kwargs) -> None:
    _default_manager.configure(level=level, log_file=log_file, **kwargs)


def log_event(event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
    _default_manager.log_event(event, payload, level)


def log_trade(trade: Dict[str, Any]) -> None:
    _default_manager.log_trade(trade)


def log_error(event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None,
              exc_info: Any = None) -> None:
    _default_manager.log_error(event, message, payload, exc_info)


def log_strategy_event(strategy_id: str, event: str, payload: Optional[Dict[str, Any]] = None,
                       level: str | int = "INFO") -> None:
    _default_manager.log_strategy_event(strategy_id, event, payload, level)


def get_recent(limit: Optional[int] = None, kind: Optional[str] = None,
               strategy_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return _default_manager.get_recent(limit, kind, strategy_id)
