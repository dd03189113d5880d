"""
Fixtures shared by the test modules: an in-memory stand-in for a NocoDB
table, a controllable clock and a small swagger document.
"""

import copy
from typing import Any, Callable, Dict, List, NamedTuple, Optional

import pytest

from nocodb_rest import NocoDBAPIError
from nocodb_rest.cache import MemoryCacheStore, SwaggerCache
from nocodb_rest.rows import RowService

TABLE_ID = "tbl1"
BASE_ID = "p1"
RECORDS_PATH = f"/api/v2/tables/{TABLE_ID}/records"

ROW_SCHEMA = {
    "type": "object",
    "properties": {
        "Id": {"type": "integer"},
        "Name": {"type": "string"},
        "Email": {"type": "string"},
    },
}


def _body_schema() -> Dict[str, Any]:
    return {
        "anyOf": [
            {"$ref": "#/components/schemas/TblRow"},
            {"type": "array", "items": {"$ref": "#/components/schemas/TblRow"}},
        ]
    }


def make_swagger_doc() -> Dict[str, Any]:
    operation = {
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": _body_schema()}},
        }
    }
    return {
        "openapi": "3.0.0",
        "paths": {
            RECORDS_PATH: {
                "get": {"operationId": "tbl-list", "tags": ["Tbl"]},
                "post": {**operation, "operationId": "tbl-create", "tags": ["Tbl"]},
                "patch": {**operation, "operationId": "tbl-update", "tags": ["Tbl"]},
                "delete": {**operation, "operationId": "tbl-delete", "tags": ["Tbl"]},
            }
        },
        "components": {"schemas": {"TblRow": ROW_SCHEMA}},
    }


class Call(NamedTuple):
    method: str
    path: str
    query: Optional[Dict[str, Any]]
    body: Any


class FakeNocoDB:
    """
    Mimics the records endpoints of one table plus the swagger endpoint.

    ``before`` runs ahead of every request and may raise to simulate server
    errors; it receives the Call being made.
    """

    DEFAULT_LIMIT = 25

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, swagger: Any = None):
        self.rows = [dict(r) for r in rows or []]
        self.swagger = swagger if swagger is not None else make_swagger_doc()
        self.calls: List[Call] = []
        self.swagger_fetches = 0
        self.before: Optional[Callable[[Call], None]] = None
        self.reported_total: Optional[int] = None
        self._next_id = max((r.get("Id", 0) for r in self.rows), default=0) + 1

    # --- inspection ---

    def mutations(self) -> List[Call]:
        return [c for c in self.calls if c.method != "GET"]

    def calls_to(self, method: str) -> List[Call]:
        return [c for c in self.calls if c.method == method]

    # --- client interface ---

    def get_base_swagger(self, base_id: str) -> Any:
        self.swagger_fetches += 1
        return copy.deepcopy(self.swagger)

    def request(self, method, path, query=None, body=None):
        call = Call(method, path, copy.deepcopy(query), copy.deepcopy(body))
        self.calls.append(call)
        if self.before:
            self.before(call)
        if not path.startswith(RECORDS_PATH):
            raise NocoDBAPIError(f"HTTP 404: unknown path {path}", status_code=404)
        if path != RECORDS_PATH:
            record_id = path.rsplit("/", 1)[-1]
            return copy.deepcopy(self._find(record_id))
        handler = getattr(self, f"_{method.lower()}")
        return handler(query or {}, copy.deepcopy(body))

    # --- endpoint behaviour ---

    def _find(self, record_id) -> Dict[str, Any]:
        for row in self.rows:
            if str(row.get("Id")) == str(record_id):
                return row
        raise NocoDBAPIError(f"HTTP 404: record {record_id} not found", status_code=404)

    def _get(self, query, body):
        page = int(query.get("page", 1))
        limit = int(query.get("limit", self.DEFAULT_LIMIT))
        start = (page - 1) * limit
        chunk = self.rows[start : start + limit]
        total = self.reported_total if self.reported_total is not None else len(self.rows)
        return {
            "list": copy.deepcopy(chunk),
            "pageInfo": {
                "totalRows": total,
                "page": page,
                "pageSize": limit,
                "isLastPage": start + limit >= len(self.rows),
            },
        }

    def _create_one(self, row):
        new = {"Id": self._next_id, **row}
        self._next_id += 1
        self.rows.append(new)
        return {"Id": new["Id"]}

    def _update_one(self, row):
        if row.get("Id") is None:
            raise NocoDBAPIError("HTTP 400: Id is required", status_code=400)
        self._find(row["Id"]).update(row)
        return {"Id": row["Id"]}

    def _delete_one(self, row):
        target = self._find(row.get("Id"))
        self.rows.remove(target)
        return {"Id": target["Id"]}

    def _post(self, query, body):
        if isinstance(body, list):
            return [self._create_one(r) for r in body]
        return self._create_one(body)

    def _patch(self, query, body):
        if isinstance(body, list):
            return [self._update_one(r) for r in body]
        return self._update_one(body)

    def _delete(self, query, body):
        if isinstance(body, list):
            return [self._delete_one(r) for r in body]
        return self._delete_one(body)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def swagger_doc() -> Dict[str, Any]:
    return make_swagger_doc()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> MemoryCacheStore:
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def fake_nocodb() -> FakeNocoDB:
    return FakeNocoDB()


@pytest.fixture
def make_service(memory_store: MemoryCacheStore, clock: FakeClock):
    """Returns a function building a RowService around a FakeNocoDB."""

    def _make_service(client: FakeNocoDB) -> RowService:
        cache = SwaggerCache(client, store=memory_store, clock=clock)
        return RowService(client, cache)

    return _make_service


@pytest.fixture
def service(make_service, fake_nocodb: FakeNocoDB) -> RowService:
    return make_service(fake_nocodb)
