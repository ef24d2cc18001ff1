"""Store package exports."""

from strategy_engine.store.base import NotFoundError, StoreError, StrategyStore
from strategy_engine.store.json_store import JsonStrategyStore

__all__ = [
    "JsonStrategyStore",
    "NotFoundError",
    "StoreError",
    "StrategyStore",
]
