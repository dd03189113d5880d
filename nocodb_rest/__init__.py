# nocodb_rest.py
import requests
import json
import logging
import os
from urllib.parse import quote, urlencode
from typing import Optional, Dict, Any, List

# --------------------
# consts
# --------------------

__version__ = "0.3.1"
CLI_EPILOG = """This CLI can also be used as a Python library.

Config file: ~/.nocodb-rest/config.json (override the directory with
NOCODB_REST_CONFIG_DIR). Generate one with: %(prog)s gen-config

Enable shell completion with this command:
    eval "$(uvx --from argcomplete register-python-argcomplete %(prog)s)"
"""
CONFIG_DIR_ENV = "NOCODB_REST_CONFIG_DIR"
DEFAULT_CONFIG_DIR = "~/.nocodb-rest"
CONFIG_FILE_NAME = "config.json"


# --------------------
# logger
# --------------------

logger = logging.getLogger(__name__)

# --- Custom Exceptions ---


class NocoDBError(Exception):
    """Base exception for nocodb_rest errors."""

    code = "NOCODB_ERROR"


class NocoDBConnectionError(NocoDBError):
    """Raised for network-related errors (connection, timeout)."""

    code = "NETWORK_ERROR"


class ValidationError(NocoDBError):
    """Raised when a payload, option set or match is rejected before sending."""

    code = "VALIDATION_ERROR"

    def __init__(
        self, message: str, field_errors: Optional[Dict[str, List[str]]] = None
    ):
        super().__init__(message)
        self.field_errors = field_errors


class NocoDBAPIError(NocoDBError):
    """Raised for errors reported by the NocoDB API (non-2xx responses)."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class AuthenticationError(NocoDBAPIError):
    """Raised for 401/403 responses."""

    code = "AUTH_ERROR"


class NotFoundError(NocoDBAPIError):
    """Raised when a resource does not exist (HTTP 404 or no matching row)."""

    code = "NOT_FOUND"

    def __init__(
        self,
        resource: str,
        identifier: str,
        status_code: int = 404,
        response_data: Optional[Any] = None,
    ):
        super().__init__(
            f"{resource} not found: {identifier}",
            status_code=status_code,
            response_data=response_data,
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(NocoDBAPIError):
    """Raised for 409 responses and for create-only upserts that hit a row."""

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        status_code: int = 409,
        response_data: Optional[Any] = None,
    ):
        super().__init__(message, status_code=status_code, response_data=response_data)


def is_conflict_error(err: BaseException) -> bool:
    """True for a ConflictError or any API error carrying HTTP 409."""
    if isinstance(err, ConflictError):
        return True
    return isinstance(err, NocoDBAPIError) and err.status_code == 409


# --- Config helpers ---


def get_config_dir() -> str:
    """Directory holding config.json and the swagger cache."""
    return os.path.expanduser(os.environ.get(CONFIG_DIR_ENV) or DEFAULT_CONFIG_DIR)


def get_config_path() -> str:
    return os.path.join(get_config_dir(), CONFIG_FILE_NAME)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads the JSON config file. A missing file yields an empty dict; an
    unreadable or malformed default file is logged and ignored.
    """
    path = config_path or get_config_path()
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as cf:
            config = json.load(cf)
    except (OSError, ValueError) as e:
        logger.warning(f"Error loading config file {path}: {e}")
        return {}
    if not isinstance(config, dict):
        logger.warning(f"Ignoring config file {path}: top level is not an object")
        return {}
    return config


# --- Client Class ---


class NocoDBClient:
    """
    A client for interacting with the NocoDB v2 REST API.
    """

    DEFAULT_BASE_URL = "http://localhost:8080"
    DEFAULT_TIMEOUT = 30  # Default request timeout in seconds
    TOKEN_HEADER = "xc-token"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = DEFAULT_TIMEOUT,
        config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initializes the NocoDB REST API client.

        Args:
            base_url: Root URL of the NocoDB instance (e.g. https://app.nocodb.com).
            token: API token, sent as the xc-token header (optional).
            headers: Extra headers sent with every request.
            timeout: Request timeout in seconds.
            config: Already-loaded config dict. When omitted the default
                    config file (~/.nocodb-rest/config.json) is read.
        """
        if config is None:
            config = load_config()
        # Override parameters with config values if still at default
        if base_url == NocoDBClient.DEFAULT_BASE_URL and "base_url" in config:
            base_url = config["base_url"]
        if token is None and config.get("token"):
            token = config["token"]
        if headers is None and isinstance(config.get("headers"), dict):
            headers = config["headers"]
        if timeout == NocoDBClient.DEFAULT_TIMEOUT and "timeout" in config:
            timeout = config["timeout"]
        if not base_url:
            raise ValueError("base_url cannot be empty")
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("timeout must be a positive number")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers: Dict[str, str] = dict(headers or {})
        if token:
            self.headers[self.TOKEN_HEADER] = token
        logger.debug(f"NocoDBClient initialized for {self.base_url}")

    @classmethod
    def from_config_file(cls, config_path: str) -> "NocoDBClient":
        with open(config_path, "r") as cf:
            config = json.load(cf)
        return cls(
            base_url=config.get("base_url", cls.DEFAULT_BASE_URL),
            token=config.get("token") or None,
            headers=config.get("headers"),
            timeout=config.get("timeout", cls.DEFAULT_TIMEOUT),
            config=config,
        )

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def remove_header(self, name: str) -> None:
        self.headers.pop(name, None)

    def _build_url(self, path: str, query: Optional[Dict[str, Any]] = None) -> str:
        """Builds the full URL for an API path."""
        url = f"{self.base_url}/{path.lstrip('/')}"
        if query:
            # Filter out None values before encoding
            filtered = {k: v for k, v in query.items() if v is not None}
            if filtered:
                url += "?" + urlencode(filtered)
        return url

    def request(
        self,
        method: str,
        path: str,
        query: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
    ) -> Any:
        """
        Makes an HTTP request to the NocoDB API and returns the decoded JSON.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE).
            path: API path (e.g. '/api/v2/tables/{tableId}/records').
            query: URL query parameters; None values are dropped.
            body: JSON-serializable request body (object or array).

        Returns:
            The decoded JSON response, or None for an empty body.

        Raises:
            NocoDBConnectionError: If a connection or timeout error occurs.
            NocoDBAPIError: If the API returns an error status code. 401/403,
                404 and 409 raise the AuthenticationError, NotFoundError and
                ConflictError subclasses.
            NocoDBError: For other unexpected errors during the request.
        """
        full_url = self._build_url(path, query)
        logger.debug(f"Request: {method} {full_url}")
        if body is not None:
            logger.debug(f"JSON Payload: {json.dumps(body)[:2000]}")

        try:
            response = requests.request(
                method,
                full_url,
                json=body,
                headers=self.headers,
                timeout=self.timeout,
            )
            logger.debug(f"Response Status: {response.status_code}")
            response.raise_for_status()  # Raise HTTPError for 4xx/5xx
        except requests.exceptions.ConnectionError as e:
            msg = f"Could not connect to NocoDB at {self.base_url}. Details: {e}"
            logger.warning(msg)
            raise NocoDBConnectionError(msg) from e
        except requests.exceptions.Timeout as e:
            msg = f"Request timed out after {self.timeout} seconds."
            logger.warning(msg)
            raise NocoDBConnectionError(msg) from e
        except requests.exceptions.HTTPError as e:
            raise self._api_error(e.response) from e
        except requests.exceptions.RequestException as e:
            msg = f"An unexpected request error occurred: {e}"
            logger.warning(msg)
            raise NocoDBError(msg) from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            msg = f"Failed to decode JSON response from {path}. Content: {response.text[:200]}"
            logger.error(msg)
            raise NocoDBError(msg) from e

    def _api_error(self, response: requests.Response) -> NocoDBAPIError:
        """Turns an error response into the matching exception."""
        status_code = response.status_code
        err_msg = f"HTTP {status_code}: {response.reason}"
        error_data = None
        try:
            error_data = response.json()
            # NocoDB reports errors under 'msg'; proxies tend to use 'message'/'error'
            if isinstance(error_data, dict):
                for key in ("msg", "message", "error"):
                    if isinstance(error_data.get(key), str):
                        err_msg = f"HTTP {status_code}: {error_data[key]}"
                        break
            logger.warning(f"NocoDB API Error: {err_msg}")
            logger.debug(f"Response Body: {json.dumps(error_data)}")
        except ValueError:
            logger.warning(f"NocoDB API Error: {err_msg} (Non-JSON response)")
            logger.debug(f"Raw Response Body: {response.text[:500]}")

        if status_code in (401, 403):
            return AuthenticationError(err_msg, status_code, error_data)
        if status_code == 404:
            return NotFoundError("Resource", response.url, response_data=error_data)
        if status_code == 409:
            return ConflictError(err_msg, response_data=error_data)
        return NocoDBAPIError(err_msg, status_code=status_code, response_data=error_data)

    def get_base_swagger(self, base_id: str) -> Any:
        """Fetches the swagger (OpenAPI) document describing a base."""
        if not base_id or not isinstance(base_id, str):
            raise ValueError("base_id must be a non-empty string.")
        return self.request(
            "GET", f"/api/v2/meta/bases/{quote(base_id, safe='')}/swagger.json"
        )
