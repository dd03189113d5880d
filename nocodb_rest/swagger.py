"""
Helpers for the swagger (OpenAPI) document NocoDB publishes per base, and
request-body validation against it.

The document is kept as plain decoded JSON::

    {
        "paths": {"/api/v2/tables/{tableId}/records": {"post": {...}, ...}},
        "definitions": {...},              # swagger 2
        "components": {"schemas": {...}},  # OpenAPI 3
    }
"""

from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator

from nocodb_rest import ValidationError

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")

SwaggerDoc = Dict[str, Any]
Operation = Dict[str, Any]


def is_http_method(method: str) -> bool:
    return method.lower() in HTTP_METHODS


def is_swagger_doc(doc: Any) -> bool:
    """A swagger document is any JSON object with a ``paths`` table."""
    return isinstance(doc, dict) and "paths" in doc


def find_operation(doc: SwaggerDoc, method: str, path: str) -> Optional[Operation]:
    """
    Finds the operation for ``method`` on ``path``.

    Returns a copy of the operation object with ``method`` and ``path`` added,
    or None when the document does not describe it.
    """
    path_item = (doc.get("paths") or {}).get(path)
    if not isinstance(path_item, dict):
        return None
    op = path_item.get(method.lower())
    if not isinstance(op, dict):
        return None
    return {**op, "method": method.lower(), "path": path}


def extract_operations(doc: SwaggerDoc) -> List[Operation]:
    ops = []
    for path, methods in (doc.get("paths") or {}).items():
        if not isinstance(methods, dict):
            continue
        for method, op in methods.items():
            if not is_http_method(method) or not isinstance(op, dict):
                continue
            ops.append({**op, "method": method, "path": path})
    return ops


def list_endpoints(doc: SwaggerDoc, tag: Optional[str] = None) -> List[str]:
    """Sorted ``"METHOD /path"`` strings, optionally limited to one tag."""
    endpoints = []
    for op in extract_operations(doc):
        if tag and tag not in (op.get("tags") or []):
            continue
        endpoints.append(f"{op['method'].upper()} {op['path']}")
    return sorted(endpoints)


def get_body_schema(op: Operation) -> Tuple[Optional[Dict[str, Any]], bool]:
    """
    Returns ``(schema, required)`` for an operation's request body.

    OpenAPI 3 ``requestBody`` wins; swagger 2 ``in: body`` parameters are the
    fallback.
    """
    request_body = op.get("requestBody")
    if isinstance(request_body, dict) and request_body.get("content"):
        json_body = request_body["content"].get("application/json") or {}
        return json_body.get("schema"), bool(request_body.get("required", False))
    for param in op.get("parameters") or []:
        if isinstance(param, dict) and param.get("in") == "body":
            return param.get("schema"), bool(param.get("required", False))
    return None, False


def _instance_path(error) -> str:
    parts = [str(p).replace("~", "~0").replace("/", "~1") for p in error.absolute_path]
    return "/" + "/".join(parts)


def validate_request_body(op: Operation, doc: SwaggerDoc, body: Any) -> None:
    """
    Validates ``body`` against the operation's request-body schema.

    ``body=None`` means no body. Operations without a body schema accept
    anything.

    Raises:
        ValidationError: If the body is missing but required, or does not
            match the schema. The message lists every violation as
            ``<path> <message>`` joined by ``; ``.
    """
    schema, required = get_body_schema(op)
    if schema is None:
        return
    if required and body is None:
        raise ValidationError("Request body is required for this operation.")
    if body is None:
        return

    # Shared pools travel with the schema so '#/definitions/..' and
    # '#/components/schemas/..' refs resolve against this root.
    root_schema = dict(schema)
    if doc.get("definitions") is not None:
        root_schema["definitions"] = doc["definitions"]
    if doc.get("components") is not None:
        root_schema["components"] = doc["components"]

    errors = list(Draft7Validator(root_schema).iter_errors(body))

    if errors:
        details = "; ".join(f"{_instance_path(err)} {err.message}" for err in errors)
        field_errors: Dict[str, List[str]] = {}
        for err in errors:
            field_errors.setdefault(_instance_path(err), []).append(err.message)
        raise ValidationError(
            f"Request body does not match schema: {details}",
            field_errors=field_errors,
        )
