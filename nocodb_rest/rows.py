"""
Row operations for a single NocoDB table: CRUD, bulk CRUD, upsert and bulk
upsert.

Every mutating call is checked against the base's swagger document before it
is sent. All remote calls run one after another, so bulk results come back in
input order and conflicting writes reach the server in submission order.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import quote

from nocodb_rest import (
    ConflictError,
    NocoDBClient,
    NocoDBError,
    NotFoundError,
    ValidationError,
    is_conflict_error,
)
from nocodb_rest.cache import SwaggerCache
from nocodb_rest.row import (
    RecordId,
    Row,
    rows_from_list_response,
    stringify,
    total_rows,
)
from nocodb_rest.swagger import SwaggerDoc, find_operation, validate_request_body

logger = logging.getLogger(__name__)

RECORDS_PATH = "/api/v2/tables/{table_id}/records"
DEFAULT_BATCH_SIZE = 1000
LIST_PAGE_SIZE = 1000


@dataclass
class BulkOperationOptions:
    """
    fail_fast: submit ``batch_size``-sized arrays and stop at the first error.
        Without it every item is sent on its own and failures are collected.
    """

    fail_fast: bool = False
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or self.batch_size < 1:
            raise ValidationError("batch_size must be a positive integer")


@dataclass
class UpsertOptions:
    """
    query: extra list parameters (e.g. a ``where`` filter) used only when
        looking for the existing row, never on the write itself.
    """

    create_only: bool = False
    update_only: bool = False
    query: Optional[Dict[str, str]] = None

    def check(self) -> None:
        if self.create_only and self.update_only:
            raise ValidationError("Cannot specify both createOnly and updateOnly")


@dataclass
class ItemOutcome:
    """What happened to one item of a continue-on-error bulk call."""

    index: int
    item: Any
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_error_record(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "item": self.item,
            "error": str(self.error),
            "code": self.error.code if isinstance(self.error, NocoDBError) else None,
        }


def _response_count(result: Any, kind: str, fallback: int) -> int:
    """Number of rows a bulk response reports for ``kind``."""
    if isinstance(result, dict):
        if isinstance(result.get(kind), int):
            return result[kind]
        if isinstance(result.get("data"), list):
            return len(result["data"])
    if isinstance(result, list):
        return len(result)
    return fallback


class RowService:
    """
    Row operations against one NocoDB instance.

    Args:
        client: The NocoDBClient used for every request.
        swagger_cache: Source of the base swagger documents used to validate
                       request bodies.
        use_cache: When False every operation refetches the swagger document.
    """

    def __init__(
        self,
        client: NocoDBClient,
        swagger_cache: SwaggerCache,
        use_cache: bool = True,
    ):
        self.client = client
        self.swagger_cache = swagger_cache
        self.use_cache = use_cache

    # --- helpers ---

    @staticmethod
    def records_path(table_id: str) -> str:
        return RECORDS_PATH.format(table_id=quote(table_id, safe=""))

    def _swagger(self, base_id: str) -> SwaggerDoc:
        return self.swagger_cache.get(base_id, use_cache=self.use_cache)

    @staticmethod
    def _validate(swagger: SwaggerDoc, method: str, path: str, body: Any) -> None:
        op = find_operation(swagger, method, path)
        if op:
            validate_request_body(op, swagger, body)

    # --- single row ---

    def list(self, table_id: str, query: Optional[Dict[str, Any]] = None) -> Any:
        """GET the table's records. Returns ``{"list": [...], "pageInfo": {...}}``."""
        return self.client.request("GET", self.records_path(table_id), query=query or None)

    def read(
        self,
        table_id: str,
        record_id: RecordId,
        query: Optional[Dict[str, Any]] = None,
    ) -> Any:
        path = f"{self.records_path(table_id)}/{quote(str(record_id), safe='')}"
        return self.client.request("GET", path, query=query or None)

    def create(self, table_id: str, data: Any, base_id: str) -> Any:
        return self._write_one("POST", table_id, data, base_id)

    def update(self, table_id: str, data: Any, base_id: str) -> Any:
        return self._write_one("PATCH", table_id, data, base_id)

    def delete(self, table_id: str, data: Any, base_id: str) -> Any:
        return self._write_one("DELETE", table_id, data, base_id)

    def _write_one(self, method: str, table_id: str, data: Any, base_id: str) -> Any:
        path = self.records_path(table_id)
        swagger = self._swagger(base_id)
        self._validate(swagger, method, path, data)
        return self.client.request(method, path, body=data)

    # --- bulk ---

    def bulk_create(
        self,
        table_id: str,
        rows: List[Dict[str, Any]],
        base_id: str,
        options: Optional[BulkOperationOptions] = None,
    ) -> Dict[str, Any]:
        """
        Creates many rows.

        Fail-fast returns ``{"created": n}``. Continue-on-error returns
        ``{"created": n, "data": [...]}`` plus ``failed`` and ``errors`` when
        any row failed.
        """
        return self._bulk("POST", "created", table_id, rows, base_id, options)

    def bulk_update(
        self,
        table_id: str,
        rows: List[Dict[str, Any]],
        base_id: str,
        options: Optional[BulkOperationOptions] = None,
    ) -> Dict[str, Any]:
        return self._bulk("PATCH", "updated", table_id, rows, base_id, options)

    def bulk_delete(
        self,
        table_id: str,
        rows: List[Dict[str, Any]],
        base_id: str,
        options: Optional[BulkOperationOptions] = None,
    ) -> Dict[str, Any]:
        """Deletes many rows, given as ``{"Id": ...}`` objects. No ``data`` key."""
        return self._bulk("DELETE", "deleted", table_id, rows, base_id, options)

    def _bulk(
        self,
        method: str,
        kind: str,
        table_id: str,
        rows: List[Dict[str, Any]],
        base_id: str,
        options: Optional[BulkOperationOptions],
    ) -> Dict[str, Any]:
        if not isinstance(rows, list):
            raise ValidationError(f"bulk {method} expects an array of row objects")
        options = options or BulkOperationOptions()
        path = self.records_path(table_id)
        swagger = self._swagger(base_id)

        if options.fail_fast:
            return {kind: self._submit_batches(method, kind, path, rows, swagger, options.batch_size)}

        outcomes = self._submit_each(method, path, rows, swagger)
        return self._fold(outcomes, kind, keep_data=method != "DELETE")

    def _submit_batches(
        self,
        method: str,
        kind: str,
        path: str,
        rows: List[Dict[str, Any]],
        swagger: SwaggerDoc,
        batch_size: int,
    ) -> int:
        total = 0
        for start in range(0, len(rows), batch_size):
            batch = rows[start : start + batch_size]
            self._validate(swagger, method, path, batch)
            logger.debug(f"{method} batch of {len(batch)} rows starting at {start}")
            result = self.client.request(method, path, body=batch)
            total += _response_count(result, kind, len(batch) if method == "DELETE" else 0)
        return total

    def _submit_each(
        self,
        method: str,
        path: str,
        rows: Iterable[Any],
        swagger: SwaggerDoc,
    ) -> Iterator[ItemOutcome]:
        for index, row in enumerate(rows):
            try:
                self._validate(swagger, method, path, row)
                value = self.client.request(method, path, body=row)
            except Exception as e:
                logger.info(f"{method} failed for item {index}: {e}")
                yield ItemOutcome(index, row, error=e)
            else:
                yield ItemOutcome(index, row, value=value)

    @staticmethod
    def _fold(outcomes: Iterable[ItemOutcome], kind: str, keep_data: bool) -> Dict[str, Any]:
        outcomes = list(outcomes)
        succeeded = [o.value for o in outcomes if o.ok]
        errors = [o.as_error_record() for o in outcomes if not o.ok]
        result: Dict[str, Any] = {kind: len(succeeded)}
        if keep_data:
            result["data"] = succeeded
        if errors:
            result["failed"] = len(errors)
            result["errors"] = errors
        return result

    # --- upsert ---

    def _find_by_field(
        self,
        table_id: str,
        field: str,
        value: str,
        query: Optional[Dict[str, Any]] = None,
    ) -> List[Row]:
        rows = rows_from_list_response(self.list(table_id, query))
        return [row for row in rows if row.matches(field, value)]

    def _fetch_all_rows(
        self, table_id: str, query: Optional[Dict[str, Any]] = None
    ) -> List[Row]:
        def page_query(page: int) -> Dict[str, Any]:
            return {**(query or {}), "page": str(page), "limit": str(LIST_PAGE_SIZE)}

        first = self.list(table_id, page_query(1))
        rows = rows_from_list_response(first)
        total = total_rows(first)
        if not rows or len(rows) >= total or len(rows) < LIST_PAGE_SIZE:
            return rows

        page = 2
        while len(rows) < total:
            batch = rows_from_list_response(self.list(table_id, page_query(page)))
            if not batch:
                # the server's total was off; stop rather than loop forever
                logger.warning(
                    f"Page {page} of table {table_id} came back empty with "
                    f"{len(rows)}/{total} rows fetched"
                )
                break
            rows.extend(batch)
            page += 1
        return rows

    def _update_matched(
        self,
        table_id: str,
        data: Row,
        matched: Row,
        swagger: SwaggerDoc,
    ) -> Any:
        path = self.records_path(table_id)
        body = data.with_record_id(matched.record_id)
        self._validate(swagger, "PATCH", path, body)
        return self.client.request("PATCH", path, body=body)

    def upsert(
        self,
        table_id: str,
        data: Dict[str, Any],
        match_field: str,
        match_value: str,
        base_id: str,
        options: Optional[UpsertOptions] = None,
    ) -> Any:
        """
        Creates the row, or updates the single existing row whose
        ``match_field`` equals ``match_value``.

        Raises:
            ValidationError: Conflicting options, a non-object body, or more
                than one matching row.
            NotFoundError: ``update_only`` and nothing matched.
            ConflictError: ``create_only`` and a row matched.
        """
        options = options or UpsertOptions()
        options.check()
        if not isinstance(data, dict):
            raise ValidationError("upsert expects a row object")
        data = Row(data)
        target = f"{match_field}={match_value}"

        swagger = self._swagger(base_id)
        existing = self._find_by_field(table_id, match_field, match_value, options.query)

        if len(existing) > 1:
            raise ValidationError(
                f"Multiple rows matched '{target}'. Upsert requires unique match."
            )

        if existing:
            if options.create_only:
                raise ConflictError(f"Row already exists: {target}")
            logger.info(f"Updating row matching {target}")
            return self._update_matched(table_id, data, existing[0], swagger)

        if options.update_only:
            raise NotFoundError("Row", target)

        path = self.records_path(table_id)
        self._validate(swagger, "POST", path, data)
        try:
            logger.info(f"No row matches {target}, creating one")
            return self.client.request("POST", path, body=data)
        except NocoDBError as e:
            if options.create_only or not is_conflict_error(e):
                raise
            # Someone created the row between our list and our create
            logger.info(f"Create conflicted for {target}, looking it up again")
            retry = self._find_by_field(table_id, match_field, match_value, options.query)
            if len(retry) != 1:
                raise
            return self._update_matched(table_id, data, retry[0], swagger)

    def bulk_upsert(
        self,
        table_id: str,
        rows: List[Dict[str, Any]],
        match_field: str,
        base_id: str,
        options: Optional[UpsertOptions] = None,
    ) -> Dict[str, Any]:
        """
        Splits ``rows`` into creates and updates by ``match_field`` against
        every existing row, then sends at most one bulk create and one bulk
        update. Returns ``{"created": ..., "updated": ...}`` with the raw
        server responses; an empty side is left out.
        """
        options = options or UpsertOptions()
        options.check()
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ValidationError("bulkUpsert expects an array of row objects")

        path = self.records_path(table_id)
        swagger = self._swagger(base_id)
        self._validate(swagger, "POST", path, rows)

        existing = self._fetch_all_rows(table_id, options.query)
        logger.debug(f"Matching {len(rows)} rows against {len(existing)} existing rows")

        to_create: List[Row] = []
        to_update: List[Row] = []
        for raw in rows:
            row = Row(raw)
            value = row.get(match_field)
            if value is None:
                if options.update_only:
                    raise ValidationError(f"Row missing match field '{match_field}'")
                to_create.append(row)
                continue

            expected = stringify(value)
            matches = [e for e in existing if e.matches(match_field, expected)]
            target = f"{match_field}={expected}"
            if len(matches) > 1:
                raise ValidationError(
                    f"Multiple rows matched '{target}'. Bulk upsert requires unique matches."
                )
            if matches:
                if options.create_only:
                    raise ConflictError(f"Row already exists for '{target}'")
                to_update.append(row.with_record_id(matches[0].record_id))
            else:
                if options.update_only:
                    raise NotFoundError("Row", target)
                to_create.append(row)

        result: Dict[str, Any] = {}
        if to_create:
            result["created"] = self.client.request("POST", path, body=to_create)
        if to_update:
            self._validate(swagger, "PATCH", path, to_update)
            result["updated"] = self.client.request("PATCH", path, body=to_update)
        return result
