"""
Row values returned by and sent to the records endpoints.

NocoDB exposes the primary key as ``Id`` on v2 tables, but older bases and
some views still return ``id``; ``Row.record_id`` is the single place that
knows about both spellings.
"""

import math
from typing import Any, Dict, Iterable, Union

from nocodb_rest import ValidationError

RecordId = Union[str, int]

ID_FIELDS = ("Id", "id")


def stringify(value: Any) -> str:
    """
    String form used when comparing a field against a match value.

    Same as JavaScript's ``String(value)``: JSON booleans, whole
    floats without the fraction, arrays joined with ``,`` (null items empty).
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None else stringify(item) for item in value)
    if isinstance(value, dict):
        return "[object Object]"
    if value is None:
        return "null"
    return str(value)


class Row(dict):
    """A single record: field name -> value, in server field order."""

    @property
    def record_id(self) -> RecordId:
        """
        The row's identity value.

        Raises:
            ValidationError: If neither ``Id`` nor ``id`` holds a string or
                integer.
        """
        for name in ID_FIELDS:
            value = self.get(name)
            if value is None:
                continue
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                return value
            break
        raise ValidationError("Row does not contain a valid Id field")

    def with_record_id(self, record_id: RecordId) -> "Row":
        """
        Returns a copy carrying ``Id=record_id``.

        Raises:
            ValidationError: If the row already names a different identity.
        """
        for name in ID_FIELDS:
            incoming = self.get(name)
            if incoming is not None and stringify(incoming) != stringify(record_id):
                raise ValidationError(
                    f"Body Id '{stringify(incoming)}' does not match record Id '{stringify(record_id)}'"
                )
        merged = Row(self)
        merged["Id"] = record_id
        return merged

    def matches(self, field: str, expected: str) -> bool:
        """True if ``field`` is set (not None) and its string form is ``expected``."""
        value = self.get(field)
        if value is None:
            return False
        return stringify(value) == expected


def rows_from_list_response(result: Any) -> list:
    """Pulls the ``list`` array out of a records list response."""
    if isinstance(result, dict) and isinstance(result.get("list"), list):
        items: Iterable[Any] = result["list"]
    elif isinstance(result, list):
        items = result
    else:
        return []
    return [Row(item) for item in items if isinstance(item, dict)]


def total_rows(result: Any) -> int:
    """``pageInfo.totalRows`` from a list response, 0 when absent."""
    if not isinstance(result, dict):
        return 0
    page_info: Dict[str, Any] = result.get("pageInfo") or {}
    total = page_info.get("totalRows")
    return total if isinstance(total, int) else 0
