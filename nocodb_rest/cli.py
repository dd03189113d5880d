#!/usr/bin/env python3
# PYTHON_ARGCOMPLETE_OK
# --------------------
# imports
# --------------------
import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import argcomplete

from nocodb_rest import (
    CLI_EPILOG,
    NocoDBAPIError,
    NocoDBClient,
    NocoDBError,
    ValidationError,
    __version__,
    get_config_path,
    load_config,
)
from nocodb_rest.cache import (
    DEFAULT_MAX_ENTRIES,
    DEFAULT_TTL_SECONDS,
    FileCacheStore,
    SwaggerCache,
)
from nocodb_rest.rows import BulkOperationOptions, RowService, UpsertOptions
from nocodb_rest.swagger import list_endpoints

# --- Logging Setup ---
logging.basicConfig(
    level=logging.WARNING, format="%(levelname)s: %(message)s", stream=sys.stderr
)
logger = logging.getLogger(__name__)
# ---------------------


# --- Input parsing ---


def parse_key_value(item: str) -> Tuple[str, str]:
    """Splits 'key=value' on the first '='."""
    key, sep, value = item.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValidationError(f"Invalid '{item}'. Use key=value.")
    return key, value


def parse_query(items: Optional[List[str]]) -> Dict[str, str]:
    return dict(parse_key_value(item) for item in items or [])


def read_json_input(data: Optional[str], data_file: Optional[str]) -> Any:
    """Reads the request body from --data, --data-file or '-' (stdin)."""
    if data is not None and data_file is not None:
        raise ValidationError("Provide only one of --data or --data-file.")
    if data_file == "-":
        raw = sys.stdin.read()
        source = "stdin"
    elif data_file is not None:
        with open(data_file, "r", encoding="utf-8") as f:
            raw = f.read()
        source = f"file '{data_file}'"
    elif data is not None:
        raw = data
        source = "--data"
    else:
        raise ValidationError("A JSON body is required: use --data or --data-file.")
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Invalid JSON in {source}: {e}") from e


# --- Output ---


def print_result(result: Any, args: argparse.Namespace) -> None:
    """Prints JSON (default) or a table of rows to stdout."""
    if getattr(args, "format", "json") == "table":
        rows = result.get("list") if isinstance(result, dict) else result
        if isinstance(rows, dict):
            rows = [rows]
        if isinstance(rows, list) and all(isinstance(r, dict) for r in rows):
            from tabulate import tabulate

            headers: List[str] = []
            for row in rows:
                headers.extend(k for k in row if k not in headers)
            table = [[_cell(row.get(h)) for h in headers] for row in rows]
            print(tabulate(table, headers=headers, tablefmt="psql"))
            return
        logger.info("Result is not a list of rows, falling back to JSON.")
    indent = None if getattr(args, "compact", False) else 2
    print(json.dumps(result, indent=indent, ensure_ascii=False))


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


# --- Service construction ---


def _require_base_id(args: argparse.Namespace) -> str:
    if not args.base_id:
        raise ValidationError(
            "A base id is required: pass --base-id or set 'base_id' in the config file."
        )
    return args.base_id


def _config_number(config: Dict[str, Any], key: str, default, cast, minimum):
    """Reads a numeric config value, accepting numeric strings."""
    value = config.get(key, default)
    try:
        if isinstance(value, bool):
            raise TypeError(value)
        number = cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Config '{key}' must be a number, got {value!r}") from None
    if number < minimum:
        raise ValidationError(f"Config '{key}' must be at least {minimum}, got {value!r}")
    return number


def build_swagger_cache(args: argparse.Namespace, client: NocoDBClient) -> SwaggerCache:
    config = args.loaded_config
    return SwaggerCache(
        client,
        store=FileCacheStore(),
        ttl=_config_number(config, "cache_ttl", DEFAULT_TTL_SECONDS, float, 0),
        max_entries=_config_number(
            config, "cache_max_entries", DEFAULT_MAX_ENTRIES, int, 1
        ),
    )


def build_row_service(args: argparse.Namespace, client: NocoDBClient) -> RowService:
    return RowService(
        client, build_swagger_cache(args, client), use_cache=not args.no_cache
    )


def _warm_cache(args: argparse.Namespace, service: RowService) -> None:
    """Fills the swagger cache after a read; never fails the command."""
    if not args.base_id:
        return
    try:
        service.swagger_cache.ensure_cached(args.base_id)
    except NocoDBError as e:
        logger.debug(f"Could not warm swagger cache for base {args.base_id}: {e}")


def _bulk_options(args: argparse.Namespace) -> BulkOperationOptions:
    return BulkOperationOptions(fail_fast=args.fail_fast, batch_size=args.batch_size)


def _upsert_options(args: argparse.Namespace) -> UpsertOptions:
    return UpsertOptions(
        create_only=args.create_only,
        update_only=args.update_only,
        query=parse_query(args.query) or None,
    )


def _expect_array(body: Any, command: str) -> List[Dict[str, Any]]:
    if not isinstance(body, list) or not all(isinstance(r, dict) for r in body):
        raise ValidationError(f"rows {command} expects a JSON array of row objects")
    return body


# --- Handlers ---


def handle_rows_list(args, client: NocoDBClient):
    service = build_row_service(args, client)
    print_result(service.list(args.table_id, parse_query(args.query)), args)
    _warm_cache(args, service)


def handle_rows_read(args, client: NocoDBClient):
    service = build_row_service(args, client)
    print_result(service.read(args.table_id, args.record_id, parse_query(args.query)), args)
    _warm_cache(args, service)


def handle_rows_write(args, client: NocoDBClient):
    """create / update / delete a single row."""
    service = build_row_service(args, client)
    body = read_json_input(args.data, args.data_file)
    operation = getattr(service, args.command_name)
    print_result(operation(args.table_id, body, _require_base_id(args)), args)


def handle_rows_bulk(args, client: NocoDBClient):
    """bulk-create / bulk-update / bulk-delete."""
    service = build_row_service(args, client)
    rows = _expect_array(read_json_input(args.data, args.data_file), args.command_name)
    operation = getattr(service, args.command_name.replace("-", "_"))
    result = operation(args.table_id, rows, _require_base_id(args), _bulk_options(args))
    print_result(result, args)
    if result.get("failed"):
        logger.warning(
            f"{result['failed']} of {len(rows)} item(s) failed; see 'errors' in the output."
        )
        sys.exit(1)


def handle_rows_upsert(args, client: NocoDBClient):
    options = _upsert_options(args)
    options.check()
    match_field, match_value = parse_key_value(args.match)
    body = read_json_input(args.data, args.data_file)
    if not isinstance(body, dict):
        raise ValidationError("rows upsert expects a JSON object body")
    service = build_row_service(args, client)
    result = service.upsert(
        args.table_id, body, match_field, match_value, _require_base_id(args), options
    )
    print_result(result, args)


def handle_rows_bulk_upsert(args, client: NocoDBClient):
    options = _upsert_options(args)
    options.check()
    rows = _expect_array(read_json_input(args.data, args.data_file), "bulk-upsert")
    service = build_row_service(args, client)
    result = service.bulk_upsert(
        args.table_id, rows, args.match, _require_base_id(args), options
    )
    print_result(result, args)


def handle_swagger_get(args, client: NocoDBClient):
    cache = build_swagger_cache(args, client)
    print_result(cache.get(_require_base_id(args), use_cache=not args.no_cache), args)


def handle_swagger_endpoints(args, client: NocoDBClient):
    cache = build_swagger_cache(args, client)
    doc = cache.get(_require_base_id(args), use_cache=not args.no_cache)
    for endpoint in list_endpoints(doc, args.tag):
        print(endpoint)


def handle_swagger_clear_cache(args, client: Any = None):
    cache = build_swagger_cache(args, client)
    if args.all:
        deleted = cache.invalidate_all()
        print(json.dumps({"deleted": deleted}))
    else:
        base_id = _require_base_id(args)
        print(json.dumps({"base_id": base_id, "deleted": cache.invalidate(base_id)}))


def handle_gen_config(args, client: Any = None):
    """Generates a default config file at ~/.nocodb-rest/config.json."""
    config_file = args.config or get_config_path()
    default_config = {
        "base_url": NocoDBClient.DEFAULT_BASE_URL,
        "token": "",
        "base_id": "",
        "headers": {},
        "timeout": NocoDBClient.DEFAULT_TIMEOUT,
        "cache_ttl": DEFAULT_TTL_SECONDS,
        "cache_max_entries": DEFAULT_MAX_ENTRIES,
    }
    if os.path.exists(config_file) and not args.force:
        logger.error(f"Config file {config_file} already exists (use --force to overwrite).")
        sys.exit(1)
    try:
        os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
        with open(config_file, "w") as cf:
            json.dump(default_config, cf, indent=2)
    except OSError as e:
        logger.error(f"Error generating config file: {e}")
        sys.exit(1)
    print(f"Default config file generated at {config_file}")


# --- Parsers ---


def _add_parser_global(parser: argparse.ArgumentParser):
    """Adds global arguments to the main parser."""
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "-U", "--base-url", default=None, help="NocoDB root URL (e.g. https://app.nocodb.com)."
    )
    parser.add_argument(
        "-t", "--token", default=None, help="API token, sent as the xc-token header."
    )
    parser.add_argument(
        "-b", "--base-id", default=None, help="Base id used for swagger validation."
    )
    parser.add_argument(
        "--timeout", type=int, default=None, help="Request timeout in seconds."
    )
    parser.add_argument(
        "--config",
        help="Path to a specific config JSON file (overrides default ~/.nocodb-rest/config.json).",
        default=None,
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Refetch the base swagger document instead of using the cached copy.",
    )
    log_level_group = parser.add_mutually_exclusive_group()
    log_level_group.add_argument(
        "-i",
        "--info",
        action="store_true",
        help="Use info level logging (default is WARNING).",
    )
    log_level_group.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Enable debug level logging to stderr.",
    )


def _add_output_options(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--format",
        choices=["json", "table"],
        default="json",
        help="Output format. 'table' renders rows with tabulate.",
    )
    parser.add_argument(
        "--compact", action="store_true", help="Print JSON on a single line."
    )


def _add_json_input_options(parser: argparse.ArgumentParser, what: str = "row object"):
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("-d", "--data", help=f"Request JSON body ({what}).")
    group.add_argument(
        "-f", "--data-file", help=f"File holding the JSON body ({what}); '-' reads stdin."
    )


def _add_query_option(parser: argparse.ArgumentParser):
    parser.add_argument(
        "-q",
        "--query",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Query string parameter (repeatable), e.g. -q 'where=(Email,eq,a@x.com)'.",
    )


def _add_upsert_flags(parser: argparse.ArgumentParser):
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--create-only", action="store_true", help="Only create, fail if a matching row exists."
    )
    group.add_argument(
        "--update-only", action="store_true", help="Only update, fail if no matching row exists."
    )


def _add_parser_rows(subparsers: argparse._SubParsersAction):
    """Adds the 'rows' command group."""
    parser_rows = subparsers.add_parser("rows", help="Table row CRUD (base-scoped).")
    rows_sub = parser_rows.add_subparsers(
        dest="command_name", required=True, help="Row operations"
    )

    p = rows_sub.add_parser("list", help="List rows of a table.")
    p.add_argument("table_id", help="Table id")
    _add_query_option(p)
    _add_output_options(p)
    p.set_defaults(func=handle_rows_list)

    p = rows_sub.add_parser("read", help="Read one row by record id.")
    p.add_argument("table_id", help="Table id")
    p.add_argument("record_id", help="Record id")
    _add_query_option(p)
    _add_output_options(p)
    p.set_defaults(func=handle_rows_read)

    for name, help_text in (
        ("create", "Create a row."),
        ("update", "Update a row (body must carry Id)."),
        ("delete", "Delete a row (body must carry Id)."),
    ):
        p = rows_sub.add_parser(name, help=help_text)
        p.add_argument("table_id", help="Table id")
        _add_json_input_options(p)
        _add_output_options(p)
        p.set_defaults(func=handle_rows_write)

    for name, help_text in (
        ("bulk-create", "Create many rows."),
        ("bulk-update", "Update many rows (each must carry Id)."),
        ("bulk-delete", "Delete many rows (each must carry Id)."),
    ):
        p = rows_sub.add_parser(name, help=help_text)
        p.add_argument("table_id", help="Table id")
        _add_json_input_options(p, "array of row objects")
        p.add_argument(
            "--fail-fast",
            action="store_true",
            help="Send rows in batches and stop at the first error (default: send one by one and collect errors).",
        )
        p.add_argument(
            "--batch-size",
            type=int,
            default=1000,
            help="Rows per request with --fail-fast (default: 1000).",
        )
        _add_output_options(p)
        p.set_defaults(func=handle_rows_bulk)

    p = rows_sub.add_parser(
        "upsert", help="Create a row, or update the single row matching --match."
    )
    p.add_argument("table_id", help="Table id")
    p.add_argument(
        "--match",
        required=True,
        metavar="FIELD=VALUE",
        help="Field/value matcher used to find an existing row.",
    )
    _add_json_input_options(p)
    _add_query_option(p)
    _add_upsert_flags(p)
    _add_output_options(p)
    p.set_defaults(func=handle_rows_upsert)

    p = rows_sub.add_parser(
        "bulk-upsert", help="Create or update many rows, matching on one field."
    )
    p.add_argument("table_id", help="Table id")
    p.add_argument(
        "--match", required=True, metavar="FIELD", help="Field used to match existing rows."
    )
    _add_json_input_options(p, "array of row objects")
    _add_query_option(p)
    _add_upsert_flags(p)
    _add_output_options(p)
    p.set_defaults(func=handle_rows_bulk_upsert)


def _add_parser_swagger(subparsers: argparse._SubParsersAction):
    """Adds the 'swagger' command group."""
    parser_swagger = subparsers.add_parser(
        "swagger", help="Fetch, inspect and cache the base swagger document."
    )
    swagger_sub = parser_swagger.add_subparsers(
        dest="command_name", required=True, help="Swagger operations"
    )

    p = swagger_sub.add_parser("get", help="Print the swagger document of the base.")
    _add_output_options(p)
    p.set_defaults(func=handle_swagger_get)

    p = swagger_sub.add_parser("endpoints", help="List 'METHOD /path' endpoints.")
    p.add_argument("--tag", default=None, help="Only endpoints with this tag.")
    p.set_defaults(func=handle_swagger_endpoints)

    p = swagger_sub.add_parser(
        "clear-cache", help="Remove the cached swagger document of the base."
    )
    p.add_argument(
        "--all", action="store_true", help="Remove every cached swagger document."
    )
    p.set_defaults(func=handle_swagger_clear_cache, requires_client=False)


def _add_parser_gen_config(subparsers: argparse._SubParsersAction):
    """Adds arguments for the 'gen-config' subcommand."""
    parser_gen_config = subparsers.add_parser(
        "gen-config",
        help="Generate a default config file at ~/.nocodb-rest/config.json",
    )
    parser_gen_config.add_argument(
        "--force", action="store_true", help="Overwrite an existing config file."
    )
    # No client needed for gen-config
    parser_gen_config.set_defaults(func=handle_gen_config, requires_client=False)


def build_parser():
    """Builds the argument parser."""
    parser = argparse.ArgumentParser(
        prog="noco-cli",
        description="NocoDB REST API Command Line Interface.\nLogs to stderr, outputs data to stdout.",
        formatter_class=argparse.RawTextHelpFormatter,
        add_help=False,
        epilog=CLI_EPILOG,
    )
    parser.add_argument(
        "-h",
        "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )
    _add_parser_global(parser)
    subparsers = parser.add_subparsers(
        dest="command", required=True, help="Available sub-commands"
    )
    _add_parser_rows(subparsers)
    _add_parser_swagger(subparsers)
    _add_parser_gen_config(subparsers)
    return parser


def configure_logging(args: argparse.Namespace) -> None:
    log_level = logging.WARNING
    if args.info:
        log_level = logging.INFO
    elif args.debug:
        log_level = logging.DEBUG
    logger.setLevel(log_level)
    # Configure logging for the nocodb_rest library as well
    library_logger = logging.getLogger("nocodb_rest")
    library_logger.setLevel(log_level)
    if log_level == logging.DEBUG:
        logger.debug("Debug logging enabled for CLI and library.")


def build_client(args: argparse.Namespace) -> NocoDBClient:
    """CLI flags > config file > defaults."""
    config = args.loaded_config
    return NocoDBClient(
        base_url=args.base_url or config.get("base_url") or NocoDBClient.DEFAULT_BASE_URL,
        token=args.token or config.get("token") or None,
        headers=config.get("headers") if isinstance(config.get("headers"), dict) else None,
        timeout=args.timeout or config.get("timeout") or NocoDBClient.DEFAULT_TIMEOUT,
        config=config,
    )


def main(argv: Optional[List[str]] = None):
    """Main entry point for the CLI."""
    parser = build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)
    if not hasattr(args, "requires_client"):
        args.requires_client = True
    configure_logging(args)

    if args.config and not os.path.exists(args.config) and args.command != "gen-config":
        logger.error(f"Config file not found: {args.config}")
        sys.exit(1)
    args.loaded_config = load_config(args.config) if args.command != "gen-config" else {}
    if args.base_id is None:
        args.base_id = args.loaded_config.get("base_id") or None

    client = None
    if args.requires_client:
        try:
            client = build_client(args)
        except ValueError as e:
            logger.error(f"Failed to initialize NocoDB client: {e}")
            sys.exit(1)
        logger.info(f"Connecting to {client.base_url}")

    try:
        args.func(args, client)
    except KeyboardInterrupt:
        logger.info("\nOperation cancelled by user.")
        sys.exit(130)
    except NocoDBAPIError as e:
        # The client already logged the server response
        logger.error(str(e))
        sys.exit(1)
    except NocoDBError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except OSError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
