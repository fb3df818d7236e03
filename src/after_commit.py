# after_commit.py
# Best-effort tasks that run once an irreversible carrier action has happened.
# A failing task is logged and skipped; it never affects the other tasks or the caller.

import logging
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)


def fire_and_log(label: str, fn: Callable[..., Any], *args, **kwargs) -> Tuple[bool, Any]:
    """Run fn; on any exception log it with traceback and return (False, None)."""
    try:
        return True, fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"⚠️ {label} failed (ignored): {e}", exc_info=True)
        return False, None


class AfterCommit:
    """
    Ordered list of independent best-effort tasks.

        tasks = AfterCommit("[LABEL] order=123")
        tasks.add("order status", store.update_order, order_id, {...})
        tasks.add("confirmation email", send_email, ...)
        results = tasks.run()      # {"order status": True, "confirmation email": False}
    """

    def __init__(self, context: str = ""):
        self.context = context
        self._tasks: List[Tuple[str, Callable[..., Any], tuple, dict]] = []

    def add(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> "AfterCommit":
        self._tasks.append((label, fn, args, kwargs))
        return self

    def run(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        for label, fn, args, kwargs in self._tasks:
            name = f"{self.context} {label}".strip()
            ok, _ = fire_and_log(name, fn, *args, **kwargs)
            results[label] = ok
        self._tasks = []
        return results
