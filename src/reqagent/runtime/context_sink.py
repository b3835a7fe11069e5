"""Shared capability between the context budgeter and its producers.

The large-scale loader pushes selected documents through this interface
instead of importing the budgeter.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ContextSink(Protocol):
    def add_enriched_context(self, key: str, content: str) -> None: ...
