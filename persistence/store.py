"""
store.py - Relational Persistence Store

SQLAlchemy Core tables for every persisted entity (strategy configs,
sessions, allocations, trades, lessons, adaptive state, backtests, the
rebalance audit log, daily performance and key/value engine/risk state),
plus a Store facade with the queries the engine components need.

All timestamps are naive UTC datetimes. Multi-step mutations go through
`Store.begin()` so they commit or roll back as one transaction.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import (JSON, Boolean, Column, DateTime, Float, Integer, MetaData, String,
                        Table, and_, create_engine, delete, func, insert, select, text, update)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from strategies.base import clamp_weight


logger = logging.getLogger(__name__)

metadata = MetaData()

strategy_configs = Table(
    'strategy_configs', metadata,
    Column('strategy_id', String, primary_key=True),
    Column('name', String, nullable=False, default=''),
    Column('category', String, nullable=False, default=''),
    Column('difficulty', String, default=''),
    Column('enabled', Boolean, nullable=False, default=True),
    Column('weight', Float, nullable=False, default=1.0),
    Column('parameters', JSON, nullable=False, default=dict),
    Column('description', String, default=''),
    Column('updated_at', DateTime),
)

sessions = Table(
    'sessions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('started_at', DateTime, nullable=False),
    Column('ended_at', DateTime),
    Column('initial_balance', Float, nullable=False),
    Column('strategy_count', Integer, nullable=False),
    Column('allocation_per_strategy', Float, nullable=False),
    Column('status', String, nullable=False, default='active'),
)

strategy_allocations = Table(
    'strategy_allocations', metadata,
    Column('session_id', Integer, primary_key=True),
    Column('strategy_id', String, primary_key=True),
    Column('initial_usdc', Float, nullable=False),
    Column('current_usdc', Float, nullable=False),
    Column('asset_qty', Float, nullable=False, default=0.0),
    Column('trade_count', Integer, nullable=False, default=0),
    Column('total_pnl', Float, nullable=False, default=0.0),
    Column('updated_at', DateTime),
)

trades = Table(
    'trades', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('session_id', Integer, index=True),
    Column('strategy_id', String, nullable=False, index=True),
    Column('symbol', String, nullable=False),
    Column('side', String, nullable=False),
    Column('entry_price', Float, nullable=False),
    Column('exit_price', Float),
    Column('quantity', Float, nullable=False),
    Column('pnl', Float),
    Column('pnl_percent', Float),
    Column('fee', Float, nullable=False, default=0.0),
    Column('is_paper', Boolean, nullable=False, default=True),
    Column('signal_data', JSON),
    Column('exit_reason', String),
    Column('entry_at', DateTime, nullable=False),
    Column('exit_at', DateTime),
)

strategy_lessons = Table(
    'strategy_lessons', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('strategy_id', String, nullable=False, index=True),
    Column('trade_id', Integer),
    Column('entry_indicators', JSON),
    Column('exit_indicators', JSON),
    Column('pnl', Float, nullable=False),
    Column('pnl_percent', Float),
    Column('hold_duration', Float),
    Column('market_regime', String),
    Column('created_at', DateTime, nullable=False),
)

strategy_adaptive = Table(
    'strategy_adaptive', metadata,
    Column('strategy_id', String, primary_key=True),
    Column('min_confidence', Float, nullable=False, default=0.3),
    Column('win_pattern_count', Integer, nullable=False, default=0),
    Column('loss_pattern_count', Integer, nullable=False, default=0),
    Column('last_analyzed_at', DateTime),
    Column('analysis_data', JSON),
)

backtest_results = Table(
    'backtest_results', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('strategy_id', String, nullable=False, index=True),
    Column('symbol', String),
    Column('timeframe', String),
    Column('parameters', JSON),
    Column('win_rate', Float),
    Column('total_return', Float),
    Column('max_drawdown', Float),
    Column('sharpe_ratio', Float),
    Column('trade_count', Integer),
    Column('avg_trade_pnl', Float),
    Column('profit_factor', Float),
    Column('trades', JSON),
    Column('period_start', Integer),
    Column('period_end', Integer),
    Column('created_at', DateTime, nullable=False),
)

rebalance_log = Table(
    'rebalance_log', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('change_type', String, nullable=False),
    Column('strategy_id', String),
    Column('old_value', JSON),
    Column('new_value', JSON),
    Column('reason', String),
    Column('created_at', DateTime, nullable=False),
)

daily_performance = Table(
    'daily_performance', metadata,
    Column('date', String, primary_key=True),
    Column('trade_count', Integer, nullable=False, default=0),
    Column('win_count', Integer, nullable=False, default=0),
    Column('loss_count', Integer, nullable=False, default=0),
    Column('total_pnl', Float, nullable=False, default=0.0),
    Column('ending_balance', Float),
    Column('created_at', DateTime, nullable=False),
)

candles = Table(
    'candles', metadata,
    Column('symbol', String, primary_key=True),
    Column('timeframe', String, primary_key=True),
    Column('timestamp', Integer, primary_key=True),
    Column('open', Float),
    Column('high', Float),
    Column('low', Float),
    Column('close', Float),
    Column('volume', Float),
)

engine_state = Table(
    'engine_state', metadata,
    Column('key', String, primary_key=True),
    Column('value', JSON),
    Column('updated_at', DateTime),
)

risk_state = Table(
    'risk_state', metadata,
    Column('key', String, primary_key=True),
    Column('value', JSON),
    Column('updated_at', DateTime),
)


def utcnow() -> datetime:
    """Naive UTC now (the store's timestamp convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_midnight(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _row(row) -> Dict[str, Any]:
    return dict(row._mapping) if row is not None else None


class Store:
    """
    Persistence facade over a SQLAlchemy engine.

    Args:
        url: Database URL; "sqlite://" gives a private in-memory database
        echo: Echo SQL statements (debugging)
    """

    def __init__(self, url: str = "sqlite:///trading.db", echo: bool = False):
        self.url = url
        kwargs: Dict[str, Any] = {'echo': echo}
        if url.startswith("sqlite"):
            kwargs['connect_args'] = {'check_same_thread': False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection so every thread sees the same in-memory db
                kwargs['poolclass'] = StaticPool
        self.engine: Engine = create_engine(url, **kwargs)
        metadata.create_all(self.engine)
        logger.info(f"[Store] database ready at {self._safe_url()}")

    def _safe_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Transaction scope: commits on success, rolls back on exception."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        with self.engine.connect() as conn:
            yield conn

    def ping(self) -> bool:
        with self.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def dispose(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Strategy configs
    # ------------------------------------------------------------------
    def insert_config_if_absent(self, config: Dict[str, Any]) -> bool:
        """Insert a strategy config unless one exists. Returns True if inserted."""
        with self.begin() as conn:
            exists = conn.execute(
                select(strategy_configs.c.strategy_id).where(strategy_configs.c.strategy_id == config['strategy_id'])
            ).first()
            if exists:
                return False
            values = {k: v for k, v in config.items() if k in strategy_configs.c}
            values['updated_at'] = utcnow()
            conn.execute(insert(strategy_configs).values(**values))
            return True

    def get_configs(self, enabled_only: bool = False) -> List[Dict[str, Any]]:
        stmt = select(strategy_configs).order_by(strategy_configs.c.strategy_id)
        if enabled_only:
            stmt = stmt.where(strategy_configs.c.enabled.is_(True))
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(stmt)]

    def get_config(self, strategy_id: str, conn: Optional[Connection] = None) -> Optional[Dict[str, Any]]:
        stmt = select(strategy_configs).where(strategy_configs.c.strategy_id == strategy_id)
        if conn is not None:
            return _row(conn.execute(stmt).first())
        with self.connect() as c:
            return _row(c.execute(stmt).first())

    def update_config(self, strategy_id: str, conn: Optional[Connection] = None, **changes: Any) -> bool:
        values = {k: v for k, v in changes.items() if k in strategy_configs.c and k != 'strategy_id'}
        if not values:
            return False
        if 'weight' in values:
            values['weight'] = clamp_weight(values['weight'])
        values['updated_at'] = utcnow()
        stmt = update(strategy_configs).where(strategy_configs.c.strategy_id == strategy_id).values(**values)
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.begin() as c:
            return c.execute(stmt).rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def get_active_session(self) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return _row(conn.execute(
                select(sessions).where(sessions.c.status == 'active').order_by(sessions.c.id.desc())
            ).first())

    def get_session(self, session_id: int) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return _row(conn.execute(select(sessions).where(sessions.c.id == session_id)).first())

    def end_session(self, session_id: int, conn: Optional[Connection] = None) -> bool:
        stmt = (update(sessions)
                .where(and_(sessions.c.id == session_id, sessions.c.status == 'active'))
                .values(status='ended', ended_at=utcnow()))
        if conn is not None:
            return conn.execute(stmt).rowcount > 0
        with self.begin() as c:
            return c.execute(stmt).rowcount > 0

    # ------------------------------------------------------------------
    # Trades (reads; mutations live in execution.ledger)
    # ------------------------------------------------------------------
    def get_trade(self, trade_id: int) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return _row(conn.execute(select(trades).where(trades.c.id == trade_id)).first())

    def list_trades(self, session_id: Optional[int] = None, strategy_id: Optional[str] = None,
                    status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        stmt = select(trades)
        if session_id is not None:
            stmt = stmt.where(trades.c.session_id == session_id)
        if strategy_id is not None:
            stmt = stmt.where(trades.c.strategy_id == strategy_id)
        if status == 'open':
            stmt = stmt.where(trades.c.exit_price.is_(None))
        elif status == 'closed':
            stmt = stmt.where(trades.c.exit_price.isnot(None))
        stmt = stmt.order_by(trades.c.id.desc()).limit(limit).offset(offset)
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(stmt)]

    def closed_trades_between(self, start: datetime, end: Optional[datetime] = None,
                              strategy_id: Optional[str] = None) -> List[Dict[str, Any]]:
        conds = [trades.c.exit_price.isnot(None), trades.c.exit_at >= start]
        if end is not None:
            conds.append(trades.c.exit_at < end)
        if strategy_id is not None:
            conds.append(trades.c.strategy_id == strategy_id)
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(select(trades).where(and_(*conds)).order_by(trades.c.exit_at))]

    def recent_closed_pnls(self, strategy_id: Optional[str] = None, limit: int = 20) -> List[float]:
        """PnL of the most recent closed trades, newest first."""
        stmt = select(trades.c.pnl).where(trades.c.exit_price.isnot(None))
        if strategy_id is not None:
            stmt = stmt.where(trades.c.strategy_id == strategy_id)
        stmt = stmt.order_by(trades.c.exit_at.desc(), trades.c.id.desc()).limit(limit)
        with self.connect() as conn:
            return [float(r.pnl or 0.0) for r in conn.execute(stmt)]

    def losses_since(self, since: datetime, strategy_id: Optional[str] = None) -> float:
        """Absolute sum of realized losses closed at or after `since`."""
        conds = [trades.c.exit_price.isnot(None), trades.c.exit_at >= since, trades.c.pnl < 0]
        if strategy_id is not None:
            conds.append(trades.c.strategy_id == strategy_id)
        with self.connect() as conn:
            total = conn.execute(select(func.coalesce(func.sum(trades.c.pnl), 0.0)).where(and_(*conds))).scalar()
        return abs(float(total or 0.0))

    # ------------------------------------------------------------------
    # Lessons / adaptive state
    # ------------------------------------------------------------------
    def get_lessons(self, strategy_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        stmt = (select(strategy_lessons)
                .where(strategy_lessons.c.strategy_id == strategy_id)
                .order_by(strategy_lessons.c.created_at.desc(), strategy_lessons.c.id.desc())
                .limit(limit))
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(stmt)]

    def add_lesson(self, lesson: Dict[str, Any], conn: Optional[Connection] = None) -> None:
        values = dict(lesson)
        values.setdefault('created_at', utcnow())
        if conn is not None:
            conn.execute(insert(strategy_lessons).values(**values))
            return
        with self.begin() as c:
            c.execute(insert(strategy_lessons).values(**values))

    def get_adaptive(self, strategy_id: str) -> Optional[Dict[str, Any]]:
        with self.connect() as conn:
            return _row(conn.execute(
                select(strategy_adaptive).where(strategy_adaptive.c.strategy_id == strategy_id)
            ).first())

    def upsert_adaptive(self, strategy_id: str, **values: Any) -> None:
        with self.begin() as conn:
            exists = conn.execute(
                select(strategy_adaptive.c.strategy_id).where(strategy_adaptive.c.strategy_id == strategy_id)
            ).first()
            if exists:
                conn.execute(update(strategy_adaptive)
                             .where(strategy_adaptive.c.strategy_id == strategy_id).values(**values))
            else:
                conn.execute(insert(strategy_adaptive).values(strategy_id=strategy_id, **values))

    # ------------------------------------------------------------------
    # Backtests / rebalance log
    # ------------------------------------------------------------------
    def save_backtest(self, result: Dict[str, Any], symbol: str = "", timeframe: str = "",
                      conn: Optional[Connection] = None) -> int:
        values = {
            'strategy_id': result['strategy_id'],
            'symbol': symbol,
            'timeframe': timeframe,
            'parameters': result.get('parameters', {}),
            'win_rate': result.get('win_rate', 0.0),
            'total_return': result.get('total_return', 0.0),
            'max_drawdown': result.get('max_drawdown', 0.0),
            'sharpe_ratio': result.get('sharpe_ratio', 0.0),
            'trade_count': result.get('trade_count', 0),
            'avg_trade_pnl': result.get('avg_trade_pnl', 0.0),
            'profit_factor': result.get('profit_factor', 0.0),
            'trades': result.get('trades', []),
            'period_start': result.get('period_start'),
            'period_end': result.get('period_end'),
            'created_at': utcnow(),
        }
        if conn is not None:
            return conn.execute(insert(backtest_results).values(**values)).inserted_primary_key[0]
        with self.begin() as c:
            return c.execute(insert(backtest_results).values(**values)).inserted_primary_key[0]

    def list_backtests(self, strategy_id: Optional[str] = None, limit: int = 50,
                       include_trades: bool = False) -> List[Dict[str, Any]]:
        cols = [c for c in backtest_results.c if include_trades or c.name != 'trades']
        stmt = select(*cols)
        if strategy_id is not None:
            stmt = stmt.where(backtest_results.c.strategy_id == strategy_id)
        stmt = stmt.order_by(backtest_results.c.id.desc()).limit(limit)
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(stmt)]

    def append_rebalance_changes(self, changes: Sequence[Dict[str, Any]], conn: Optional[Connection] = None) -> int:
        if not changes:
            return 0
        now = utcnow()
        rows = [{
            'change_type': ch['change_type'],
            'strategy_id': ch.get('strategy_id'),
            'old_value': ch.get('old_value'),
            'new_value': ch.get('new_value'),
            'reason': ch.get('reason', ''),
            'created_at': ch.get('created_at') or now,
        } for ch in changes]
        if conn is not None:
            conn.execute(insert(rebalance_log), rows)
        else:
            with self.begin() as c:
                c.execute(insert(rebalance_log), rows)
        return len(rows)

    def list_rebalance_log(self, strategy_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        stmt = select(rebalance_log)
        if strategy_id is not None:
            stmt = stmt.where(rebalance_log.c.strategy_id == strategy_id)
        stmt = stmt.order_by(rebalance_log.c.id.desc()).limit(limit)
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # Daily performance
    # ------------------------------------------------------------------
    def upsert_daily_performance(self, date: str, **values: Any) -> None:
        with self.begin() as conn:
            exists = conn.execute(
                select(daily_performance.c.date).where(daily_performance.c.date == date)
            ).first()
            if exists:
                conn.execute(update(daily_performance).where(daily_performance.c.date == date).values(**values))
            else:
                conn.execute(insert(daily_performance).values(date=date, created_at=utcnow(), **values))

    def peak_ending_balance(self) -> Optional[float]:
        with self.connect() as conn:
            value = conn.execute(select(func.max(daily_performance.c.ending_balance))).scalar()
        return float(value) if value is not None else None

    def list_daily_performance(self, limit: int = 30) -> List[Dict[str, Any]]:
        with self.connect() as conn:
            return [_row(r) for r in conn.execute(
                select(daily_performance).order_by(daily_performance.c.date.desc()).limit(limit))]

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------
    def save_candles(self, symbol: str, timeframe: str, rows: Sequence[Dict[str, float]]) -> int:
        """Replace the stored candles in the time range covered by `rows`."""
        if not rows:
            return 0
        stamps = [int(r['timestamp']) for r in rows]
        with self.begin() as conn:
            conn.execute(delete(candles).where(and_(
                candles.c.symbol == symbol,
                candles.c.timeframe == timeframe,
                candles.c.timestamp.between(min(stamps), max(stamps)),
            )))
            conn.execute(insert(candles), [{
                'symbol': symbol, 'timeframe': timeframe, 'timestamp': int(r['timestamp']),
                'open': r['open'], 'high': r['high'], 'low': r['low'], 'close': r['close'], 'volume': r['volume'],
            } for r in rows])
        return len(rows)

    def load_candles(self, symbol: str, timeframe: str, limit: int = 2000) -> List[Dict[str, float]]:
        stmt = (select(candles.c.timestamp, candles.c.open, candles.c.high, candles.c.low,
                       candles.c.close, candles.c.volume)
                .where(and_(candles.c.symbol == symbol, candles.c.timeframe == timeframe))
                .order_by(candles.c.timestamp.desc()).limit(limit))
        with self.connect() as conn:
            rows = [_row(r) for r in conn.execute(stmt)]
        return list(reversed(rows))

    # ------------------------------------------------------------------
    # Key/value state
    # ------------------------------------------------------------------
    def _put_kv(self, table: Table, key: str, value: Any) -> None:
        with self.begin() as conn:
            exists = conn.execute(select(table.c.key).where(table.c.key == key)).first()
            if exists:
                conn.execute(update(table).where(table.c.key == key).values(value=value, updated_at=utcnow()))
            else:
                conn.execute(insert(table).values(key=key, value=value, updated_at=utcnow()))

    def _get_kv(self, table: Table, key: str) -> Any:
        with self.connect() as conn:
            row = conn.execute(select(table.c.value).where(table.c.key == key)).first()
        return row.value if row is not None else None

    def save_engine_state(self, key: str, value: Any) -> None:
        self._put_kv(engine_state, key, value)

    def load_engine_state(self, key: str) -> Any:
        return self._get_kv(engine_state, key)

    def save_risk_state(self, key: str, value: Any) -> None:
        self._put_kv(risk_state, key, value)

    def load_risk_state(self, key: str) -> Any:
        return self._get_kv(risk_state, key)

    def __repr__(self) -> str:
        return f"Store(url={self._safe_url()})"


def day_bounds(day: datetime) -> tuple:
    """(start, end) naive UTC datetimes for the calendar day containing `day`."""
    start = utc_midnight(day)
    return start, start + timedelta(days=1)
