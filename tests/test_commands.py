"""Tests for core/commands.py -- OptimisticUpdate."""

import asyncio

from core.commands import OptimisticUpdate


def _run(commit):
    state = {"items": [1, 2, 3]}

    def apply():
        before = list(state["items"])
        state["items"] = [i for i in before if i != 2]
        return before

    def rollback(before):
        state["items"] = before

    ok = asyncio.run(OptimisticUpdate(apply=apply, commit=commit, rollback=rollback).run())
    return ok, state["items"]


class TestOptimisticUpdate:
    def test_confirmed_keeps_local_change(self):
        async def commit():
            return True

        assert _run(commit) == (True, [1, 3])

    def test_refused_rolls_back(self):
        async def commit():
            return False

        assert _run(commit) == (False, [1, 2, 3])

    def test_exception_rolls_back(self):
        async def commit():
            raise ConnectionError("offline")

        assert _run(commit) == (False, [1, 2, 3])

    def test_apply_runs_before_commit(self):
        order = []

        async def commit():
            order.append("commit")
            return True

        asyncio.run(
            OptimisticUpdate(
                apply=lambda: order.append("apply"),
                commit=commit,
                rollback=lambda before: order.append("rollback"),
            ).run()
        )
        assert order == ["apply", "commit"]
