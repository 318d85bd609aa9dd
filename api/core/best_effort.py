"""
Best-effort side effects.

Cache invalidation and the fast-path buffer flush are allowed to fail
without failing the caller. Running them through `best_effort` makes that
policy visible: the call returns a `BestEffort` result whose failure
variant has already been logged, and callers read `.ok` / `.value` instead
of wrapping the call in their own try/except.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from api.core.metrics_store import log_json

T = TypeVar("T")


@dataclass
class BestEffort(Generic[T]):
    """Outcome of a side effect whose failure is logged and discarded."""

    stage: str
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None

    def value_or(self, default: T) -> T:
        return self.value if self.ok else default


def best_effort(stage: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> BestEffort[T]:
    """
    Run `fn(*args, **kwargs)`; on exception log a warning under
    `<stage>.degrade` and return a failed result instead of raising.
    """
    try:
        value = fn(*args, **kwargs)
    except Exception as e:
        log_json(
            stage=f"{stage}.degrade",
            level="warn",
            error_type=type(e).__name__,
            error=str(e)[:200],
        )
        return BestEffort(stage=stage, ok=False, error=e)
    return BestEffort(stage=stage, ok=True, value=value)
