"""Ordered probing of provider response bodies.

The provider nests the same identifier at different paths depending on the
API version that served the request. Each field is described by an ordered
tuple of ``ExtractionRule`` values; ``extract_first`` applies them in turn and
returns the first value that is present and of the expected kind.
"""

import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple, Union

PathItem = Union[str, int]

NUMBER = "number"
STRING = "string"
LENGTH = "length"


@dataclass(frozen=True)
class ExtractionRule:
    path: Tuple[PathItem, ...]
    kind: str = STRING

    def resolve(self, body: Any) -> Any:
        node = body
        for key in self.path:
            if isinstance(key, int):
                if not isinstance(node, list) or key >= len(node) or key < -len(node):
                    return None
                node = node[key]
            else:
                if not isinstance(node, dict) or key not in node:
                    return None
                node = node[key]
        return node

    def apply(self, body: Any) -> Optional[Any]:
        value = self.resolve(body)
        if value is None:
            return None
        if self.kind == NUMBER:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return None
            if isinstance(value, int):
                return value
            if not math.isfinite(value):
                return None
            return int(value) if value.is_integer() else value
        if self.kind == LENGTH:
            return len(value) if isinstance(value, list) else None
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value
        return None


def rule(path: str, kind: str = STRING) -> ExtractionRule:
    keys: list = []
    for part in path.split("."):
        keys.append(int(part) if part.lstrip("-").isdigit() else part)
    return ExtractionRule(tuple(keys), kind)


def extract_first(body: Any, rules: Iterable[ExtractionRule], default: Any = None) -> Any:
    for item in rules:
        value = item.apply(body)
        if value is not None:
            return value
    return default


TASK_ID_RULES = (
    rule("taskId"),
    rule("result.taskId"),
    rule("task.id"),
)

MATCH_COUNT_RULES = (
    rule("result.companyCount", NUMBER),
    rule("result.companies", LENGTH),
    rule("count", NUMBER),
    rule("companies", LENGTH),
    rule("matchCount", NUMBER),
)

TABLE_ID_RULES = (
    rule("output.table.tableId"),
    rule("table.tableId"),
    rule("tableId"),
    rule("output.tableId"),
    rule("output.table.id"),
    rule("table.id"),
)

WORKBOOK_ID_RULES = (
    rule("workbookId"),
    rule("output.workbookId"),
    rule("table.workbookId"),
    rule("output.table.workbookId"),
    rule("extraData.newlyCreatedWorkbook.id"),
)

SOURCE_ID_RULES = (
    rule("output.source.id"),
    rule("output.sourceId"),
    rule("sourceId"),
    rule("output.table.sourceId"),
    rule("output.source.sourceId"),
    rule("table.sourceId"),
)

RECORD_COUNT_RULES = (
    rule("output.recordCount", NUMBER),
    rule("tableTotalRecordsCount", NUMBER),
    rule("numSourceRecords", NUMBER),
)

VIEW_ID_RULES = (
    rule("table.firstViewId"),
    rule("firstViewId"),
    rule("table.views.0.id"),
    rule("output.table.firstViewId"),
)

FIELD_ID_RULES = (
    rule("id"),
    rule("field.id"),
    rule("fieldId"),
)
