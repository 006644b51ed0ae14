"""Invocation-scoped memoization of lookups shared by render and sync."""
import logging
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


class LookupCache:
    """
    Memoized lookups (department list, special days...) for one invocation.

    Entry points call clear() before doing any work so that nothing computed
    for a previous invocation is reused.
    """

    def __init__(self):
        self._values: Dict[str, Any] = {}

    def get(self, key: str, factory: Callable[[], Any]) -> Any:
        if key not in self._values:
            self._values[key] = factory()
        return self._values[key]

    def clear(self) -> None:
        if self._values:
            logger.debug(f"Clearing cached lookups: {sorted(self._values)}")
        self._values.clear()
