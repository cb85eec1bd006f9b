"""Bounded in-memory view of recent command results."""

from __future__ import annotations

import copy

from runboard.command.types import CommandResult


class ResultCache:
    """Most-recent-first results, capped at *limit*.

    Entries are addressed by ``run_id``. Evicted entries only leave memory;
    their records stay on disk.
    """

    def __init__(self, limit: int = 50):
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self.limit = limit
        self._items: list[CommandResult] = []

    def replace_all(self, results: list[CommandResult]) -> None:
        ordered = sorted(results, key=lambda r: r.timestamp, reverse=True)
        self._items = ordered[:self.limit]

    def upsert(self, result: CommandResult) -> None:
        for index, existing in enumerate(self._items):
            if existing.run_id == result.run_id:
                self._items[index] = copy.copy(result)
                return
        self._items.insert(0, copy.copy(result))
        del self._items[self.limit:]

    def get(self, run_id: str) -> CommandResult | None:
        for item in self._items:
            if item.run_id == run_id:
                return copy.copy(item)
        return None

    def items(self) -> list[CommandResult]:
        return [copy.copy(item) for item in self._items]

    def __len__(self) -> int:
        return len(self._items)
