"""Per-execution variable scope.

One instance is created per matched trigger (or scheduled entry) and is
passed by reference through the traversal. It is never persisted and
never shared between executions.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator

# Keys that hold bookkeeping/binary data and are hidden from templates.
INTERNAL_KEYS = frozenset({"api_binary"})


@dataclass
class ExecutionContext:
    captures: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    trace_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    executed_nodes: list[str] = field(default_factory=list)
    failed_nodes: list[str] = field(default_factory=list)

    def __getitem__(self, key: str) -> Any:
        return self.variables[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self.variables

    def get(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def template_items(self) -> Iterator[tuple[str, Any]]:
        """Variables visible to template substitution."""
        for key, value in self.variables.items():
            if key not in INTERNAL_KEYS:
                yield key, value

    def expression_scope(self) -> dict[str, Any]:
        """Variables visible to the ``expression`` condition."""
        return {key: value for key, value in self.template_items() if key.isidentifier()}
