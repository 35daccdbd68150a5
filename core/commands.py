"""
core/commands.py -- Optimistic local update with remote confirmation.

Pattern: Command. The caller supplies three steps:

  apply()            change local state immediately; returns whatever the
                     rollback needs (usually the previous value)
  commit()           awaitable remote call; True means the server agreed
  rollback(before)   restore local state from apply()'s return value

run() executes them in order and rolls back when commit() returns False or
raises. The rollback path lives in one place instead of at every call site.

Layer rule: core/ is the kernel. This module may not import from auth/ or cache/.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger("marquee.commands")


class OptimisticUpdate:
    def __init__(
        self,
        apply: Callable[[], Any],
        commit: Callable[[], Awaitable[bool]],
        rollback: Callable[[Any], None],
        name: str = "update",
    ) -> None:
        self._apply = apply
        self._commit = commit
        self._rollback = rollback
        self.name = name

    async def run(self) -> bool:
        """Apply, confirm, roll back on failure. Returns whether the remote call succeeded."""
        before = self._apply()
        try:
            confirmed = bool(await self._commit())
        except Exception:
            logger.warning("Optimistic %s failed remotely; rolling back", self.name, exc_info=True)
            confirmed = False
        if not confirmed:
            self._rollback(before)
            logger.info("Rolled back optimistic %s", self.name)
        return confirmed
