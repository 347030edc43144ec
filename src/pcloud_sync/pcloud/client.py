"""pCloud API client with bounded retry, backoff and error classification."""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, BinaryIO

import httpx

from pcloud_sync import __version__
from pcloud_sync.pcloud.models import (
    FIELD_ERROR,
    FIELD_FD,
    FIELD_RESULT,
    FIELD_SIZE,
    SOURCE_FILE,
    TARGET_FILE,
    AuthToken,
    RequestOptions,
    ResultCode,
)

if TYPE_CHECKING:
    from pcloud_sync.config import AppConfig

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://my.pcloud.com/oauth2/authorize"
AUTH_SCOPES = "files.readwrite offline_access sites.readwrite.all"

MAX_ATTEMPTS = 5
BACKOFF_STEP_SECONDS = 5
REQUEST_TIMEOUT_SECONDS = 300.0
STREAM_CHUNK_SIZE = 64 * 1024

# Provider error codes, as observed on failed (non-2xx) responses
AUTH_EXPIRED_CODES = frozenset({"InvalidAuthenticationToken", "unauthenticated"})
TRANSIENT_CODES = frozenset({"generalException", "EAGAIN", "resourceModified"})
RATE_LIMITED_CODE = "activityLimitReached"
NOT_FOUND_CODE = "itemNotFound"

AuthListener = Callable[[AuthToken | None], None]


class PCloudError(Exception):
    """Base class for all pCloud adapter errors."""


class PCloudAuthError(PCloudError):
    """Raised when no token is available or the token exchange fails."""


class PCloudApiError(PCloudError):
    """Raised when the provider reports an error that is not retried."""

    def __init__(
        self,
        code: str | int | None,
        message: str,
        request: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(f"pCloud API error {code}: {message}")
        self.code = code
        self.message = message
        self.request = request
        self.headers = dict(headers) if headers is not None else None

    @property
    def is_not_found(self) -> bool:
        return self.code == NOT_FOUND_CODE or self.code in (
            ResultCode.FILE_NOT_FOUND,
            ResultCode.PARENT_NOT_FOUND,
        )


class MalformedResponseError(PCloudError):
    """Raised when a response body cannot be parsed as JSON."""

    def __init__(self, message: str, body: str) -> None:
        super().__init__(message)
        self.body = body


class RetriesExhaustedError(PCloudError):
    """Raised when every attempt of a call failed with a retryable error."""

    def __init__(self, method: str, url: str) -> None:
        super().__init__(f"Could not execute request after {MAX_ATTEMPTS} attempts: {method} {url}")
        self.method = method
        self.url = url


class NotSupportedError(PCloudError):
    """Raised for filesystem operations the provider adapter does not implement."""


class Outcome(Enum):
    """Result of classifying one attempt in the retry loop."""

    SUCCESS = "success"
    RETRY_NOW = "retry_now"
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    IGNORED = "ignored"
    FATAL = "fatal"


def error_from_body(payload: Any) -> PCloudApiError:
    """Build a PCloudApiError from a parsed error response body."""
    if isinstance(payload, dict) and payload.get(FIELD_ERROR):
        error = payload[FIELD_ERROR]
        if isinstance(error, dict):
            return PCloudApiError(error.get("code"), str(error.get("message", "")))
        return PCloudApiError(payload.get(FIELD_RESULT), str(error))
    return PCloudApiError(None, json.dumps(payload))


def retry_after_seconds(headers: Mapping[str, str]) -> float | None:
    """Return the numeric ``Retry-After`` header value, or None if absent or not a number."""
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if math.isfinite(seconds) else None


def classify_error(error: PCloudApiError, method: str, retry_after: float | None) -> Outcome:
    """Decide how the retry loop proceeds after a provider error.

    Args:
        error: Error parsed from the failed response body.
        method: HTTP method of the request.
        retry_after: Numeric ``Retry-After`` value, if the response carried one.

    Returns:
        The next transition of the retry loop.
    """
    if error.code in AUTH_EXPIRED_CODES:
        return Outcome.RETRY_NOW
    if error.code in TRANSIENT_CODES:
        return Outcome.RETRYABLE
    if error.code == RATE_LIMITED_CODE and retry_after is not None:
        return Outcome.RATE_LIMITED
    if error.code == NOT_FOUND_CODE and method == "DELETE":
        return Outcome.IGNORED
    return Outcome.FATAL


def can_retry_transport_error(exc: httpx.TransportError) -> bool:
    """Return True for connection-level failures that are worth another attempt."""
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))


def _describe_body(body: str | bytes | None) -> str:
    if isinstance(body, bytes):
        return f"<{len(body)} bytes>"
    return json.dumps(body)


class PCloudClient:
    """Authenticated client for the pCloud HTTP API.

    The only cross-call state is the current AuthToken. It is replaced
    wholesale by ``set_auth`` and re-read on every attempt, so a token
    swapped in by another thread is picked up by in-flight retry loops.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        is_public: bool = False,
        app_name: str = "pcloud-sync",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialise the client.

        Args:
            client_id: pCloud application client ID.
            client_secret: pCloud application client secret.
            is_public: Whether the application is a public (mobile/desktop) client.
            app_name: Application name reported in the User-Agent header.
            transport: Optional httpx transport, used by tests to fake the provider.
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._is_public = is_public
        self._user_agent = f"ISV|{app_name}|{app_name}/{__version__}"
        self._auth: AuthToken | None = None
        self._auth_lock = threading.Lock()
        self._auth_listener: AuthListener | None = None
        self._http = httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS, transport=transport)

    # ------------------------------------------------------------------
    # Authentication state
    # ------------------------------------------------------------------

    @property
    def auth(self) -> AuthToken | None:
        return self._auth

    @property
    def is_authenticated(self) -> bool:
        return self._auth is not None

    @property
    def is_public(self) -> bool:
        return self._is_public

    @property
    def client_id(self) -> str:
        return self._client_id

    def subscribe_auth_refreshed(self, listener: AuthListener) -> None:
        """Register the single listener notified whenever the token is replaced.

        Raises:
            ValueError: If a listener is already subscribed.
        """
        if self._auth_listener is not None:
            raise ValueError("An auth refresh listener is already subscribed")
        self._auth_listener = listener

    def set_auth(self, token: AuthToken | None) -> None:
        """Replace the current token and notify the listener (None means logged out).

        The listener runs under the auth lock, so concurrent replacements are
        observed in the order they were applied. It must not call ``set_auth``.
        """
        with self._auth_lock:
            self._auth = token
            logger.info("[set_auth] auth token replaced; authenticated:%s", token is not None)
            if self._auth_listener is not None:
                self._auth_listener(token)

    def _current_token(self) -> AuthToken:
        token = self._auth
        if token is None:
            raise PCloudAuthError("Not authenticated: no pCloud auth token set")
        return token

    def authorization_url(self, redirect_uri: str) -> str:
        """Build the interactive authorization URL for the OAuth code flow."""
        query = {
            "client_id": self._client_id,
            "scope": AUTH_SCOPES,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "prompt": "login",
        }
        return str(httpx.URL(AUTHORIZE_URL, params=query))

    def exchange_code(self, code: str, api_hostname: str) -> AuthToken:
        """Exchange an authorization code for a token and make it current.

        This is the only call issued without a token.

        Args:
            code: Authorization code returned to the redirect URI.
            api_hostname: API host of the account's region (e.g. "eapi.pcloud.com").

        Returns:
            The new AuthToken.

        Raises:
            PCloudAuthError: If the token endpoint returns a non-2xx status.
            MalformedResponseError: If the token response cannot be parsed.
        """
        response = self._http.get(
            f"https://{api_hostname}/oauth2_token",
            params={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
            },
        )
        if not response.is_success:
            raise PCloudAuthError(
                f"Could not retrieve auth code: {response.status_code}:"
                f" {response.reason_phrase}: {response.text}"
            )
        try:
            token = AuthToken.from_dict({**json.loads(response.text), "hostname": api_hostname})
        except (ValueError, KeyError, TypeError) as exc:
            self.set_auth(None)
            raise MalformedResponseError(
                f"Cannot parse token response: {exc}: {response.text}", response.text
            ) from exc
        self.set_auth(token)
        return token

    # ------------------------------------------------------------------
    # Request execution
    # ------------------------------------------------------------------

    def execute(
        self,
        method: str,
        command: str,
        query: dict[str, Any] | None = None,
        body: str | bytes | None = None,
        options: RequestOptions | None = None,
    ) -> httpx.Response | None:
        """Execute an API command with bounded retries.

        Args:
            method: HTTP method.
            command: pCloud API command (e.g. "listfolder").
            query: Query-string parameters.
            body: Raw request body.
            options: Transport selection; defaults to a buffered request.

        Returns:
            The successful response, or None when a DELETE targeted an item
            that no longer exists.

        Raises:
            PCloudAuthError: If no token is set.
            PCloudApiError: On a provider error that is not retried.
            RetriesExhaustedError: If every attempt failed with a retryable error.
            httpx.TransportError: On a connection failure that is not retried.
        """
        options = options or RequestOptions()
        last_error: Exception | None = None
        url = ""
        attempt = 0
        while attempt < MAX_ATTEMPTS:
            token = self._current_token()
            url = f"https://{token.hostname}/{command}"
            headers = {
                **options.headers,
                "Authorization": f"bearer {token.access_token}",
                "User-Agent": self._user_agent,
            }
            logger.debug("[execute] request; method:%s;url:%s;attempt:%d", method, url, attempt)
            try:
                response = self._send(method, url, query, body, headers, options)
            except httpx.TransportError as exc:
                logger.error("[execute] transport failure; method:%s;url:%s;error:%s", method, url, exc)
                if not can_retry_transport_error(exc):
                    raise
                last_error = exc
                self._backoff(attempt)
                attempt += 1
                continue

            if response.is_success:
                return response

            text = response.text
            try:
                payload = json.loads(text)
            except ValueError as exc:
                last_error = MalformedResponseError(f"Cannot parse JSON error: {text} {exc}", text)
                self._backoff(attempt)
                attempt += 1
                continue

            error = error_from_body(payload)
            retry_after = retry_after_seconds(response.headers)
            outcome = classify_error(error, method, retry_after)
            last_error = error

            if outcome is Outcome.RETRY_NOW:
                logger.info("[execute] token expired, retrying; code:%s;attempt:%d", error.code, attempt)
                attempt += 1
            elif outcome is Outcome.RETRYABLE:
                self._backoff(attempt)
                attempt += 1
            elif outcome is Outcome.RATE_LIMITED:
                # Does not consume an attempt.
                logger.info("[execute] rate limited; sleep_seconds:%s", retry_after)
                time.sleep(retry_after)  # type: ignore[arg-type]
            elif outcome is Outcome.IGNORED:
                logger.info("[execute] deleting missing item is a no-op; url:%s", url)
                return None
            else:
                error.request = f"{method} {url} {json.dumps(query)} {_describe_body(body)}"
                error.headers = dict(response.headers)
                logger.error("[execute] unhandled error; request:%s;error:%s", error.request, error)
                raise error

        raise RetriesExhaustedError(method, url) from last_error

    def _send(
        self,
        method: str,
        url: str,
        query: dict[str, Any] | None,
        body: str | bytes | None,
        headers: dict[str, str],
        options: RequestOptions,
    ) -> httpx.Response:
        """Send one attempt using the transport mode chosen by ``options``."""
        if options.source == SOURCE_FILE and method in ("POST", "PUT"):
            local_path = _require_path(options)
            with open(local_path, "rb") as fh:
                files = {"file": (os.path.basename(local_path), fh)}
                return self._http.request(method, url, params=query, files=files, headers=headers)

        if options.target == TARGET_FILE:
            local_path = _require_path(options)
            with self._http.stream(method, url, params=query, content=body, headers=headers) as response:
                if response.is_success:
                    with open(local_path, "wb") as fh:
                        for chunk in response.iter_bytes(STREAM_CHUNK_SIZE):
                            fh.write(chunk)
                else:
                    response.read()
            return response

        return self._http.request(method, url, params=query, content=body, headers=headers)

    @staticmethod
    def _backoff(attempt: int) -> None:
        delay = (attempt + 1) * BACKOFF_STEP_SECONDS
        logger.info("[execute] got error, retrying; attempt:%d;delay:%d", attempt, delay)
        time.sleep(delay)

    def execute_json(
        self,
        method: str,
        command: str,
        query: dict[str, Any] | None = None,
        body: str | bytes | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Execute a command and parse the response body as JSON.

        Raises:
            MalformedResponseError: If the body is not valid JSON.
        """
        response = self.execute(method, command, query, body, options)
        if response is None:
            return None
        text = response.text
        try:
            return json.loads(text)
        except ValueError as exc:
            raise MalformedResponseError(f"Cannot parse JSON: {text} {exc}", text) from exc

    def upload_chunk(
        self,
        url: str,
        handle: BinaryIO | None = None,
        buffer: bytes | None = None,
        *,
        content_length: int | None = None,
        start_byte: int = 0,
        headers: dict[str, str] | None = None,
        method: str = "POST",
    ) -> httpx.Response:
        """Upload one byte range read from ``buffer`` or from an open local ``handle``.

        Raises:
            ValueError: If ``content_length`` or ``headers`` is missing.
        """
        if not content_length:
            raise ValueError("upload_chunk: content_length is missing")
        if headers is None:
            raise ValueError("upload_chunk: headers are missing")
        if buffer is not None:
            chunk = bytes(buffer[start_byte : start_byte + content_length])
        elif handle is not None:
            chunk = handle.read(content_length)
        else:
            raise ValueError("upload_chunk: either handle or buffer is required")
        return self._http.request(method, url, content=chunk, headers=headers)

    # ------------------------------------------------------------------
    # File descriptor helpers
    # ------------------------------------------------------------------

    def file_size_in_bytes(self, fd: int) -> int | None:
        """Return the size of the file behind ``fd``, or None if the provider reports an error."""
        payload = self.execute_json("GET", "file_size", {"fd": fd})
        if payload.get(FIELD_RESULT) != ResultCode.OK:
            logger.error(
                "[file_size_in_bytes] size query failed; fd:%s;error:%s", fd, payload.get(FIELD_ERROR)
            )
            return None
        return int(payload[FIELD_SIZE])

    def open_file(self, path: str, flags: int) -> dict[str, Any]:
        """Open a remote file descriptor; the raw response carries ``result`` and ``fd``."""
        return self.execute_json("GET", "file_open", {"flags": flags, "path": path})  # type: ignore[no-any-return]

    def close_file(self, fd: int) -> None:
        payload = self.execute_json("GET", "file_close", {"fd": fd})
        if payload.get(FIELD_RESULT) != ResultCode.OK:
            logger.warning("[close_file] close failed; fd:%s;error:%s", fd, payload.get(FIELD_ERROR))

    def release_file(self, fd: int) -> None:
        """Close ``fd`` after use, logging a failed close instead of raising it."""
        try:
            self.close_file(fd)
        except (PCloudError, httpx.HTTPError) as exc:
            logger.warning("[release_file] could not close descriptor; fd:%s;error:%s", fd, exc)

    def write_file(self, fd: int, content: str | bytes) -> httpx.Response | None:
        return self.execute("PUT", "file_write", {"fd": fd}, content)

    def _open_for_read(self, path: str) -> int:
        payload = self.open_file(path, 0)
        result = payload.get(FIELD_RESULT)
        if result != ResultCode.OK:
            logger.error("[_open_for_read] cannot open file; path:%s;result:%s", path, result)
            raise PCloudApiError(result, str(payload.get(FIELD_ERROR, "")), request=f"GET file_open {path}")
        return int(payload[FIELD_FD])

    def _read_size(self, fd: int, path: str) -> int:
        size = self.file_size_in_bytes(fd)
        if size is None:
            raise PCloudApiError(None, f"Could not determine size of {path}")
        return size

    def read_file_content(self, path: str) -> str:
        """Read a whole remote file into memory: open, size query, read."""
        fd = self._open_for_read(path)
        try:
            size = self._read_size(fd, path)
            response = self.execute("GET", "file_read", {"fd": fd, "count": size})
            return response.text if response is not None else ""
        finally:
            self.release_file(fd)

    def download_file(self, path: str, local_path: str) -> httpx.Response | None:
        """Stream a remote file to ``local_path``: open, size query, streamed read."""
        fd = self._open_for_read(path)
        try:
            size = self._read_size(fd, path)
            return self.execute(
                "GET",
                "file_read",
                {"fd": fd, "count": size},
                options=RequestOptions(target=TARGET_FILE, path=local_path),
            )
        finally:
            self.release_file(fd)

    def upload_file(self, folder_path: str, filename: str, local_path: str) -> httpx.Response | None:
        """Upload a local file into the remote folder at ``folder_path``."""
        return self.execute(
            "PUT",
            "uploadfile",
            {"path": folder_path, "filename": filename},
            options=RequestOptions(source=SOURCE_FILE, path=local_path),
        )

    def close(self) -> None:
        self._http.close()


def _require_path(options: RequestOptions) -> str:
    if not options.path:
        raise ValueError("A local path is required for file transfers")
    return options.path


def pcloud_client_from_config(config: AppConfig) -> PCloudClient:
    """Construct a PCloudClient from application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        Configured PCloudClient instance.
    """
    return PCloudClient(
        client_id=config.client_id,
        client_secret=config.client_secret,
        is_public=config.is_public,
        app_name=config.app_name,
    )
