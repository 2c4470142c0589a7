"""
registry.py - Static strategy registry.

Populated at import with the built-in catalog. Additional strategies can be
registered at startup (tests register synthetic ones).
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from strategies.base import BaseStrategy
from strategies.catalog import BUILTIN_STRATEGIES


logger = logging.getLogger(__name__)

_REGISTRY: Dict[str, BaseStrategy] = {}


def register_strategy(strategy: BaseStrategy, replace: bool = False) -> BaseStrategy:
    """
    Register a strategy instance under its id.

    Raises:
        ValueError: If the id is empty or already registered (and replace is False)
    """
    if not strategy.id:
        raise ValueError("Strategy id must be non-empty")
    if strategy.id in _REGISTRY and not replace:
        raise ValueError(f"Strategy '{strategy.id}' already registered")
    _REGISTRY[strategy.id] = strategy
    logger.debug(f"[Registry] registered {strategy!r}")
    return strategy


def unregister_strategy(strategy_id: str) -> None:
    _REGISTRY.pop(strategy_id, None)


def get_strategy(strategy_id: str) -> Optional[BaseStrategy]:
    return _REGISTRY.get(strategy_id)


def list_strategies() -> List[BaseStrategy]:
    return list(_REGISTRY.values())


for _cls in BUILTIN_STRATEGIES:
    register_strategy(_cls())
