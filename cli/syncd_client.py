"""HTTP client for communicating with the sync daemon."""

import time
import uuid
from typing import Optional
from urllib.parse import quote

import httpx

from common.logging_config import get_logger
from cli.config import Config
from cli.constants import GREEN, RESET, YELLOW
from cli.utils import format_timestamp, preview_value

logger = get_logger(__name__)


class SyncdClient:
    """HTTP client for the sync daemon API with retry logic and error handling."""

    def __init__(self, config: Config, transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize sync daemon client.

        Args:
            config: Configuration instance
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self.session = httpx.Client(
            base_url=config.get_base_url(),
            timeout=config.get_timeout(),
            transport=transport
        )
        self.request_id = None
        logger.info(f"Initialized SyncdClient [base_url={config.get_base_url()}]")

    def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        max_retries: Optional[int] = None,
        **kwargs
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic on 5xx errors and network failures.

        Args:
            method: HTTP method (GET, PUT, DELETE, POST)
            endpoint: API endpoint path
            max_retries: Max retry attempts (uses config default if None)
            **kwargs: Additional arguments to pass to httpx request

        Returns:
            HTTP response object

        Raises:
            ConnectionError: If max retries exceeded or connection fails
        """
        retry_config = self.config.get_retry_config()
        max_retries = max_retries if max_retries is not None else retry_config['max_retries']
        backoff = retry_config['retry_backoff_multiplier']

        last_exception = None

        self.request_id = str(uuid.uuid4())
        kwargs.setdefault('headers', {})['X-Request-ID'] = self.request_id

        logger.debug(f"Making request: {method} {endpoint} [request_id={self.request_id}]")

        for attempt in range(max_retries + 1):
            try:
                response = self.session.request(method, endpoint, **kwargs)

                logger.debug(
                    f"Response received: {method} {endpoint} status={response.status_code} "
                    f"[request_id={self.request_id}]"
                )

                if 400 <= response.status_code < 500:
                    logger.warning(
                        f"Client error: {method} {endpoint} status={response.status_code} "
                        f"[request_id={self.request_id}]"
                    )
                    return response

                if response.status_code >= 500 and attempt < max_retries:
                    delay = backoff ** attempt
                    logger.warning(
                        f"Server error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} status={response.status_code}, retrying in {delay}s "
                        f"[request_id={self.request_id}]"
                    )
                    time.sleep(delay)
                    continue

                return response

            except (httpx.ConnectError, httpx.TimeoutException) as e:
                last_exception = e
                if attempt < max_retries:
                    delay = backoff ** attempt
                    logger.warning(
                        f"Network error (attempt {attempt + 1}/{max_retries + 1}): "
                        f"{method} {endpoint} error={type(e).__name__}, retrying in {delay}s "
                        f"[request_id={self.request_id}]"
                    )
                    time.sleep(delay)
                    continue
                logger.error(
                    f"Network error (max retries exceeded): {method} {endpoint} error={e} "
                    f"[request_id={self.request_id}]"
                )

        if isinstance(last_exception, httpx.TimeoutException):
            raise ConnectionError("Request timed out. Sync daemon may be overloaded.")
        if isinstance(last_exception, httpx.ConnectError):
            raise ConnectionError("Cannot connect to sync daemon. Is it running?")
        raise ConnectionError("Max retries exceeded")

    def _format_error(self, response: httpx.Response) -> str:
        """
        Map HTTP errors to user-friendly messages.

        Args:
            response: HTTP response object

        Returns:
            User-friendly error message
        """
        try:
            error_data = response.json()
            detail = error_data.get('detail', 'Unknown error')
            code = error_data.get('code', 'UNKNOWN')
        except ValueError:
            detail = response.text if response.text else 'Unknown error'
            code = 'UNKNOWN'

        if not isinstance(detail, str):
            detail = str(detail)

        error_messages = {
            'KEY_NOT_FOUND': detail,
            'RECONCILIATION_DISABLED': 'Reconciliation is disabled: no peer site is configured.',
            'KV_STORE_UNAVAILABLE': f'Local KV store unavailable, nothing was written: {detail}',
            'TRANSPORT_UNAVAILABLE': f'Transport unavailable: {detail}',
        }

        if code in error_messages:
            return error_messages[code]

        status_messages = {
            400: 'Bad request',
            404: 'Not found',
            422: f'Invalid request: {detail}',
            500: 'Server error',
            502: 'Upstream transport error',
            503: 'Service unavailable',
        }

        message = status_messages.get(response.status_code, detail)
        return f"{message} (Code: {code})" if code != 'UNKNOWN' else message

    @staticmethod
    def _key_path(key: str) -> str:
        return f"/kv/{quote(key, safe='')}"

    def _call(self, action: str, method: str, endpoint: str, expected: int = 200, **kwargs):
        """
        Run a request and return (data, error_message).

        Exactly one of the two is None.
        """
        try:
            response = self._request_with_retry(method, endpoint, **kwargs)
        except ConnectionError as e:
            logger.error(f"Connection error during {action}: {e}")
            return None, f"Error: {e}"

        if response.status_code != expected:
            return None, f"Error: {self._format_error(response)}"

        return response.json(), None

    def put(self, key: str, value: str) -> str:
        """
        Write a value.

        Returns:
            Confirmation with the emitted operation's timestamp
        """
        logger.info(f"Putting key: {key}")
        data, error = self._call('put', 'PUT', self._key_path(key), json={'value': value})
        if error:
            return error
        return (
            f"{GREEN}OK{RESET} put {data['key']} = {preview_value(data.get('value'))}\n"
            f"ts={data['ts']} node={data['nodeId']} bucket={data['bucket']}"
        )

    def delete(self, key: str) -> str:
        """
        Delete a key.

        Returns:
            Confirmation with the emitted operation's timestamp
        """
        logger.info(f"Deleting key: {key}")
        data, error = self._call('delete', 'DELETE', self._key_path(key))
        if error:
            return error
        return (
            f"{GREEN}OK{RESET} deleted {data['key']}\n"
            f"ts={data['ts']} node={data['nodeId']} bucket={data['bucket']}"
        )

    def get(self, key: str) -> str:
        """
        Show the local entry of a key.

        Returns:
            Value and write time, or a tombstone marker
        """
        data, error = self._call('get', 'GET', self._key_path(key))
        if error:
            return error

        written = format_timestamp(data['write_timestamp'])
        if data['is_tombstone']:
            return f"{YELLOW}{data['key']} is deleted{RESET} (since {written})"
        return f"{data['key']} = {data['value']!r}\nwritten {written}"

    def list_entries(self) -> str:
        """
        List all entries in the bucket.

        Returns:
            One line per key
        """
        data, error = self._call('list', 'GET', '/kv')
        if error:
            return error

        entries = data['entries']
        if not entries:
            return f"Bucket '{data['bucket']}' is empty."

        output = [f"Bucket '{data['bucket']}': {len(entries)} key(s)\n"]
        for entry in entries:
            value = None if entry['is_tombstone'] else entry['value']
            output.append(
                f"  {entry['key']} = {preview_value(value)}  "
                f"({format_timestamp(entry['write_timestamp'])})"
            )
        return '\n'.join(output)

    def versions(self, key: Optional[str] = None) -> str:
        """
        Show accepted versions.

        Args:
            key: Single key to show, or None for all

        Returns:
            One line per key with timestamp, origin node and tombstone flag
        """
        if key is not None:
            data, error = self._call('versions', 'GET', f"/versions/{quote(key, safe='')}")
            if error:
                return error
            return self._format_version(data)

        data, error = self._call('versions', 'GET', '/versions')
        if error:
            return error

        versions = data['versions']
        if not versions:
            return f"No versions recorded for bucket '{data['bucket']}' at this site."

        output = [f"Versions in bucket '{data['bucket']}': {len(versions)} key(s)\n"]
        output.extend(f"  {self._format_version(version)}" for version in versions)
        return '\n'.join(output)

    def keys(self) -> list[str]:
        """
        Fetch key names for completion.

        Single attempt without retries; returns an empty list when the
        daemon cannot be reached.
        """
        try:
            response = self.session.get('/kv')
        except httpx.HTTPError as e:
            logger.debug(f"Key lookup for completion failed: {e}")
            return []

        if response.status_code != 200:
            return []
        return [entry['key'] for entry in response.json().get('entries', [])]

    @staticmethod
    def _format_version(version: dict) -> str:
        marker = " (deleted)" if version['tombstone'] else ""
        return f"{version['key']}: ts={version['ts']} node={version['nodeId']}{marker}"

    def reconcile(self) -> str:
        """
        Trigger a reconciliation cycle.

        Returns:
            Cycle summary
        """
        logger.info("Requesting reconciliation cycle")
        data, error = self._call('reconcile', 'POST', '/reconcile', max_retries=0)
        if error:
            return error

        summary = (
            f"Reconciled {data['keys_examined']} key(s): "
            f"{data['copied_to_local']} copied to local, "
            f"{data['copied_to_peer']} copied to peer, "
            f"{data['resolved']} resolved, "
            f"{data['converged']} already converged"
        )
        if data['failed_keys']:
            summary += f"\n{YELLOW}Failed keys: {', '.join(data['failed_keys'])}{RESET}"
        return summary

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
