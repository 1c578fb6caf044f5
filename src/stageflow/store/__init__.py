"""ExecutionStore implementations.

- InMemoryExecutionStore: process-local, for tests and single-process hosts
- SqlExecutionStore: SQLAlchemy async, survives restarts
"""

from __future__ import annotations

from stageflow.store.memory import InMemoryExecutionStore
from stageflow.store.sql import SqlExecutionStore, create_schema

__all__ = ["InMemoryExecutionStore", "SqlExecutionStore", "create_schema"]
