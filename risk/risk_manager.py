"""
risk_manager.py - Strategy and Portfolio Risk Checks

Stateless-per-call risk checks consulted by the engine and order executor:

- check_exit_condition: pure stop-loss / take-profit classification
- check_strategy_risk: per-strategy daily-loss block and consecutive-loss
  position scaling (pre-trade)
- check_risk: portfolio-wide daily-loss and max-drawdown caps, then sizes a
  position from total balance

Realized history is read from the store; limits come from the per-category
RiskConfig table with a "global" fallback.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.config import RiskConfig
from persistence.store import Store, utc_midnight, utcnow


logger = logging.getLogger(__name__)

CONSECUTIVE_LOSS_LOOKBACK = 20


class ExitReason(str, Enum):
    """Exit classifications (compare equal to their string values)."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"

    def __str__(self):
        return self.value


@dataclass
class RiskDecision:
    """
    Outcome of a pre-trade risk check.

    Attributes:
        allowed: Whether a new entry may be opened
        reason: Why the entry was blocked or scaled (empty when untouched)
        position_size_multiplier: Scale to apply to the next position (1.0 = full)
        quantity: Suggested base quantity (portfolio check only)
        stop_loss_price: Stop price for the suggested position (portfolio check only)
        take_profit_price: Target price for the suggested position (portfolio check only)
        metrics: Inputs the decision was based on
    """
    allowed: bool
    reason: str = ""
    position_size_multiplier: float = 1.0
    quantity: float = 0.0
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'reason': self.reason,
            'position_size_multiplier': self.position_size_multiplier,
            'quantity': self.quantity,
            'stop_loss_price': self.stop_loss_price,
            'take_profit_price': self.take_profit_price,
            'metrics': dict(self.metrics),
        }

    def __repr__(self) -> str:
        if self.allowed:
            return f"RiskDecision(allowed=True, multiplier={self.position_size_multiplier:.2f})"
        return f"RiskDecision(allowed=False, reason={self.reason!r})"


def check_exit_condition(side: str, entry_price: float, current_price: float,
                         config: RiskConfig) -> Optional[ExitReason]:
    """
    Classify whether an open position should be closed.

    Args:
        side: Entry side of the position ("buy" = long, "sell" = short)
        entry_price: Position entry price
        current_price: Current mark price
        config: Risk limits to apply

    Returns:
        ExitReason.STOP_LOSS, ExitReason.TAKE_PROFIT or None
    """
    if entry_price <= 0:
        return None
    if side == "buy":
        pnl_percent = (current_price - entry_price) / entry_price * 100
    else:
        pnl_percent = (entry_price - current_price) / entry_price * 100

    if pnl_percent <= -config.stop_loss_percent:
        return ExitReason.STOP_LOSS
    if pnl_percent >= config.take_profit_percent:
        return ExitReason.TAKE_PROFIT
    return None


def count_consecutive_losses(pnls: List[float]) -> int:
    """Count losing trades from the newest backwards until the first non-loss."""
    count = 0
    for pnl in pnls:
        if pnl < 0:
            count += 1
        else:
            break
    return count


class RiskManager:
    """
    Risk checks over realized trade history.

    Args:
        store: Persistence store (trades, daily performance, risk state)
        risk_configs: Category -> RiskConfig table; must contain "global"
    """

    def __init__(self, store: Store, risk_configs: Optional[Dict[str, RiskConfig]] = None):
        self.store = store
        self.risk_configs = dict(risk_configs or {})
        self.risk_configs.setdefault('global', RiskConfig())

    def get_risk_config(self, category: Optional[str] = None) -> RiskConfig:
        if category and category in self.risk_configs:
            return self.risk_configs[category]
        return self.risk_configs['global']

    def check_exit_condition(self, side: str, entry_price: float, current_price: float,
                             category: Optional[str] = None) -> Optional[ExitReason]:
        return check_exit_condition(side, entry_price, current_price, self.get_risk_config(category))

    def check_strategy_risk(self, strategy_id: str, strategy_balance: float,
                            category: Optional[str] = None) -> RiskDecision:
        """
        Pre-trade check for one strategy.

        Blocks when today's realized losses reach the daily cap on the
        strategy's balance. Consecutive losses never block; they scale the
        next position by `consecutive_loss_reduction`.
        """
        config = self.get_risk_config(category)
        daily_loss = self.store.losses_since(utc_midnight(), strategy_id=strategy_id)
        daily_limit = strategy_balance * config.max_daily_loss_percent / 100
        metrics = {'daily_loss': daily_loss, 'daily_limit': daily_limit}

        if daily_limit > 0 and daily_loss >= daily_limit:
            logger.info(f"[Risk] {strategy_id} blocked: daily loss {daily_loss:.2f} >= {daily_limit:.2f}")
            return RiskDecision(False, f"daily loss limit reached ({daily_loss:.2f} USDC)", 0.0, metrics=metrics)

        consecutive = count_consecutive_losses(
            self.store.recent_closed_pnls(strategy_id, CONSECUTIVE_LOSS_LOOKBACK))
        metrics['consecutive_losses'] = consecutive
        if consecutive >= config.max_consecutive_losses:
            return RiskDecision(
                True,
                f"{consecutive} consecutive losses, position scaled to {config.consecutive_loss_reduction:.0%}",
                config.consecutive_loss_reduction,
                metrics=metrics,
            )
        return RiskDecision(True, "", 1.0, metrics=metrics)

    def check_risk(self, signal_action: str, total_balance: float, current_price: float,
                   category: Optional[str] = None) -> RiskDecision:
        """
        Portfolio-wide check and position sizing.

        Args:
            signal_action: "buy" / "sell" / "hold"
            total_balance: Total equity in quote currency
            current_price: Current price used for sizing
            category: Strategy category for limits (None -> global)

        Returns:
            RiskDecision with suggested quantity and SL/TP prices when allowed
        """
        config = self.get_risk_config(category)
        if signal_action == "hold":
            return RiskDecision(False, "hold signal")

        daily_loss = self.store.losses_since(utc_midnight())
        daily_limit = total_balance * config.max_daily_loss_percent / 100
        peak = self.store.peak_ending_balance()
        drawdown = (peak - total_balance) / peak * 100 if peak and peak > 0 and total_balance < peak else 0.0
        consecutive = count_consecutive_losses(self.store.recent_closed_pnls(None, CONSECUTIVE_LOSS_LOOKBACK))
        metrics = {
            'daily_loss': daily_loss,
            'daily_limit': daily_limit,
            'peak_balance': peak,
            'drawdown_percent': drawdown,
            'consecutive_losses': consecutive,
        }
        self._save_state(metrics)

        if daily_limit > 0 and daily_loss >= daily_limit:
            logger.warning(f"[Risk] portfolio daily loss {daily_loss:.2f} >= {daily_limit:.2f}")
            return RiskDecision(False, f"global daily loss limit reached ({daily_loss:.2f} USDC)", 0.0, metrics=metrics)
        if drawdown >= config.max_drawdown_percent:
            logger.warning(f"[Risk] portfolio drawdown {drawdown:.2f}% >= {config.max_drawdown_percent}%")
            return RiskDecision(False, f"max drawdown reached ({drawdown:.2f}%)", 0.0, metrics=metrics)

        multiplier = 1.0
        reason = ""
        if consecutive >= config.max_consecutive_losses:
            multiplier = config.consecutive_loss_reduction
            reason = f"{consecutive} consecutive losses, position scaled to {multiplier:.0%}"

        if current_price <= 0:
            return RiskDecision(False, "invalid price", 0.0, metrics=metrics)

        position_value = total_balance * config.max_position_percent / 100 * multiplier
        quantity = position_value / current_price
        if signal_action == "buy":
            stop_price = current_price * (1 - config.stop_loss_percent / 100)
            target_price = current_price * (1 + config.take_profit_percent / 100)
        else:
            stop_price = current_price * (1 + config.stop_loss_percent / 100)
            target_price = current_price * (1 - config.take_profit_percent / 100)

        return RiskDecision(True, reason, multiplier, quantity, stop_price, target_price, metrics)

    def reset_daily_risk(self) -> None:
        """Start a new risk day: clear the persisted daily counters."""
        self.store.save_risk_state('daily', {'daily_loss': 0.0, 'reset_at': utcnow().isoformat()})
        logger.info("[Risk] daily risk counters reset")

    def get_state(self) -> Dict[str, Any]:
        return {
            'portfolio': self.store.load_risk_state('portfolio'),
            'daily': self.store.load_risk_state('daily'),
        }

    def _save_state(self, metrics: Dict[str, Any]) -> None:
        data = dict(metrics)
        data['checked_at'] = utcnow().isoformat()
        self.store.save_risk_state('portfolio', data)

    def __repr__(self) -> str:
        return f"RiskManager(categories={sorted(k for k in self.risk_configs if k != 'global')})"
