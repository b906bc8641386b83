"""Plain data carriers shared by the planner, executors and actions."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SqlSnippet:
    sql: str
    datasource_id: int


@dataclass
class ExecutionResult:
    rows: List[Dict[str, Any]]
    sql: List[SqlSnippet]
    summary: str


@dataclass
class ColumnDefinition:
    name: str
    type: str
    comment: Optional[str] = None
    semantic_description: Optional[str] = None


@dataclass
class TableSchema:
    table_name: str
    columns: List[ColumnDefinition] = field(default_factory=list)
    table_comment: Optional[str] = None
    semantic_description: Optional[str] = None


@dataclass
class ActionContext:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    parameters: Dict[str, Any] = field(default_factory=dict)
    action_id: Optional[int] = None


@dataclass
class ActionResult:
    success: bool
    action_id: Optional[int] = None
    data: Any = None
    error: Optional[BaseException] = None
