"""HTTP client for the remote document service.

This module provides:
- UploadClient: Delivers files with the multipart upload protocol
- classify_response / parse_retry_after: Map HTTP outcomes to UploadErrors

The client never touches local state: it returns the remote identifier and
leaves persisting it to the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx

from docsync.client.sync.retry import retry_with_backoff
from docsync.core.config import RetryPolicy, ServerConfig, UploadMeta
from docsync.core.errors import IoFailure, UploadError, UploadErrorKind

if TYPE_CHECKING:
    from docsync.client.sync.types import UploadJob
    from docsync.core.fingerprint import Fingerprint

logger = logging.getLogger(__name__)


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now if now is not None else time.time()
    return max(when.timestamp() - current, 0.0)


def _detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or data)
    return str(data)


def classify_response(response: httpx.Response) -> UploadError | None:
    """Return the UploadError for a failed response, or None on success."""
    status = response.status_code
    if status in (200, 201):
        return None
    if status == 429:
        return UploadError(
            UploadErrorKind.RATE_LIMITED,
            "Rate limited",
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500 or status == 408:
        return UploadError(UploadErrorKind.TRANSIENT, _detail(response), status_code=status)
    if status >= 400:
        return UploadError(UploadErrorKind.PERMANENT, _detail(response), status_code=status)
    # Any other status (1xx/3xx/other 2xx) is not a valid upload answer
    return UploadError(
        UploadErrorKind.PERMANENT,
        f"Unexpected response status {status}",
        status_code=status,
    )


class UploadClient:
    """HTTP client delivering files to the remote document service."""

    def __init__(
        self,
        config: ServerConfig,
        retry_policy: RetryPolicy | None = None,
        meta: UploadMeta | None = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the upload client.

        Args:
            config: Server connection configuration.
            retry_policy: Retry policy for a single upload job.
            meta: Metadata sent with every upload.
            sleep: Sleep function used between retries (injectable for tests).
            transport: Optional httpx transport (tests).
        """
        self._config = config
        self._retry = retry_policy or RetryPolicy()
        self._meta = meta or UploadMeta()
        self._sleep = sleep
        self._closed = False
        self._client = httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers=config.auth_headers(),
            auth=config.basic_credentials(),
            transport=transport,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def close(self) -> None:
        """Close the HTTP client."""
        self._closed = True
        self._client.close()

    def __enter__(self) -> UploadClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Upload ===

    def upload(self, job: UploadJob) -> str:
        """Deliver a file, retrying transient and rate-limited failures.

        Args:
            job: The upload job.

        Returns:
            Identifier assigned by the server.

        Raises:
            UploadError: If the upload failed permanently or retries ran out.
            IoFailure: If the local file cannot be read.
        """
        return retry_with_backoff(
            lambda: self._upload_once(job),
            self._retry,
            sleep=self._sleep,
            should_continue=lambda: not self._closed,
            description=job.path,
        )

    def _upload_once(self, job: UploadJob) -> str:
        """Perform a single upload attempt."""
        data: dict[str, Any] = {
            "path": job.path,
            "root": job.root.root_id,
        }
        data.update(self._config.endpoint_fields())
        data.update(self._meta.form_fields())

        try:
            f = open(job.local_path, "rb")
        except OSError as e:
            raise IoFailure(job.local_path, f"cannot open for upload: {e}") from e

        with f:
            files = {"file": (job.local_path.name, f, "application/octet-stream")}
            try:
                response = self._client.post(self._config.upload_path, data=data, files=files)
            except httpx.TimeoutException as e:
                raise UploadError(UploadErrorKind.TRANSIENT, f"Timeout: {e}") from e
            except httpx.TransportError as e:
                raise UploadError(UploadErrorKind.TRANSIENT, f"Network error: {e}") from e
            except httpx.HTTPError as e:
                # Undecodable response body, redirect loops
                raise UploadError(UploadErrorKind.PERMANENT, f"HTTP error: {e}") from e
            except UnicodeEncodeError as e:
                # Name or path that is not valid UTF-8
                raise UploadError(
                    UploadErrorKind.PERMANENT, f"Cannot encode upload request: {e}"
                ) from e
            except OSError as e:
                # Raised while streaming the file body
                raise IoFailure(job.local_path, f"read failed during upload: {e}") from e

        error = classify_response(response)
        if error is not None:
            raise error

        try:
            payload = response.json()
            remote_id = payload["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise UploadError(
                UploadErrorKind.PERMANENT,
                "Malformed upload response: missing 'id'",
                status_code=response.status_code,
            ) from e
        if remote_id is None or remote_id == "":
            raise UploadError(
                UploadErrorKind.PERMANENT,
                "Malformed upload response: empty 'id'",
                status_code=response.status_code,
            )

        logger.debug("Uploaded %s as %s", job.path, remote_id)
        return str(remote_id)

    # === Duplicate check ===

    def check_exists(self, fingerprint: Fingerprint) -> str | None:
        """Ask the server whether content with this fingerprint exists.

        Returns:
            The remote identifier of the existing document, or None.

        Raises:
            UploadError: If the check itself failed.
        """
        try:
            response = self._client.get(f"{self._config.check_path}/{fingerprint.hex()}")
        except httpx.TimeoutException as e:
            raise UploadError(UploadErrorKind.TRANSIENT, f"Timeout: {e}") from e
        except httpx.TransportError as e:
            raise UploadError(UploadErrorKind.TRANSIENT, f"Network error: {e}") from e

        if response.status_code == 404:
            return None
        error = classify_response(response)
        if error is not None:
            raise error

        try:
            data = response.json()
        except ValueError as e:
            raise UploadError(
                UploadErrorKind.PERMANENT, "Malformed check response", response.status_code
            ) from e
        if not isinstance(data, dict) or not data.get("exists"):
            return None
        remote_id = data.get("id")
        return str(remote_id) if remote_id else None
