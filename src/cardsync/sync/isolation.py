"""Run one unit of work so that its failure cannot take down its siblings.

Each subscription's pull or push runs through `run_isolated`: any exception
is logged with its traceback and handed back to the caller instead of
propagating. Exception types listed in `reraise` (typically cancellation)
still propagate.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

__all__ = ["Outcome", "run_isolated"]

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_isolated(
    task: str,
    fn: Callable[[], T],
    *,
    reraise: tuple[type[BaseException], ...] = (),
    context: dict[str, Any] | None = None,
) -> Outcome[T]:
    try:
        return Outcome(value=fn())
    except reraise:
        raise
    except Exception as exc:
        log.exception("%s-failed %s", task, _describe(context))
        return Outcome(error=exc)


def _describe(context: dict[str, Any] | None) -> str:
    return " ".join(f"{k}={v}" for k, v in (context or {}).items())
