"""
pdrive Transport

Authenticated HTTP client for the multipart upload verbs of the storage
endpoint, with retry and exponential backoff for transient failures.
"""

import logging
import time
import warnings
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from pdrive import __version__
from pdrive.exceptions import (
    INCONSISTENT_PART_CODES,
    ClientError,
    InconsistentStateError,
    IntegrityError,
    PDriveError,
    RateLimitError,
    ServerError,
    TransportError,
    raise_for_status,
)
from pdrive.hashing import b64_digest
from pdrive.models import ObjectDescriptor, PartResult, RetryPolicy, UploadTarget

logger = logging.getLogger(__name__)

CHECKSUM_HEADER = "x-amz-checksum-sha256"


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay before retry number ``attempt + 1``.

    Doubles from policy.base_delay and is capped at policy.max_delay:
    0.5, 1, 2, 4, 8, ... with the default policy.
    """
    return min(policy.base_delay * (2 ** attempt), policy.max_delay)


class TransportClient:
    """
    Storage endpoint client.

    One instance serves one endpoint and token; every operation names its
    bucket and object through an UploadTarget. The underlying httpx client
    is thread-safe, so parts may be uploaded from a worker pool.

    Example:
        >>> with TransportClient("https://storage.example.com", "token") as transport:
        ...     upload_id = transport.initiate_multipart(target)
    """

    def __init__(
        self,
        endpoint: str,
        token: str,
        timeout: float = 300.0,
        verify_ssl: bool = True,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Initialize transport client.

        Args:
            endpoint: Base URL of the storage endpoint
            token: Bearer token for authentication
            timeout: Request timeout in seconds (default: 300s for large parts)
            verify_ssl: Whether to verify SSL certificates (default: True)
            retry: Backoff policy for transient errors
            sleep: Function used to wait between retries
        """
        self.endpoint = endpoint.rstrip("/")
        self._token = token
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self._sleep = sleep

        if not verify_ssl:
            warnings.warn(
                "SSL verification is disabled. This is insecure and should only "
                "be used for local development with self-signed certificates.",
                UserWarning,
                stacklevel=2,
            )

        self._client = httpx.Client(
            base_url=self.endpoint,
            timeout=timeout,
            verify=verify_ssl,
            headers=self._build_headers(),
        )

    @classmethod
    def for_target(cls, target: UploadTarget, **kwargs: Any) -> "TransportClient":
        return cls(target.endpoint, target.token, **kwargs)

    def __repr__(self) -> str:
        return f"TransportClient(endpoint={self.endpoint!r}, token=***, timeout={self.timeout})"

    def _build_headers(self) -> dict:
        return {
            "User-Agent": f"pdrive/{__version__}",
            "Authorization": f"Bearer {self._token}",
        }

    def close(self) -> None:
        """Close the HTTP client connection."""
        self._client.close()

    def __enter__(self) -> "TransportClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    # ==================== Request handling ====================

    @staticmethod
    def _object_path(target: UploadTarget) -> str:
        return f"/{quote(target.bucket, safe='')}/{quote(target.object_key, safe='/')}"

    def _handle_response(self, response: httpx.Response) -> dict:
        """
        Handle API response and raise appropriate exceptions.

        Args:
            response: HTTP response object

        Returns:
            Parsed JSON response ({} when the body is empty or not JSON)

        Raises:
            TransportError: On API errors, or a JSON body that is not an object
        """
        if response.status_code >= 400:
            try:
                error_data = response.json()
                message = error_data.get("error") or error_data.get("message") or "Unknown error"
                error_code = error_data.get("code")
            except Exception:
                message = response.text or f"HTTP {response.status_code}"
                error_code = None

            if response.status_code == 429:
                raise RateLimitError(message, retry_after=_parse_retry_after(response))
            raise_for_status(response.status_code, message, error_code)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            data = response.json()
        except Exception:
            return {}
        if not isinstance(data, dict):
            raise TransportError(
                f"Expected a JSON object from the server, got {type(data).__name__}",
                response.status_code,
            )
        return data

    def _request(self, method: str, path: str, **kwargs: Any) -> Tuple[httpx.Response, dict]:
        """
        Send a request, retrying transient failures with exponential backoff.

        Server errors (5xx, 429) and network failures are retried up to
        retry.max_retries times. Everything else propagates on first sight.
        """
        attempt = 0
        while True:
            try:
                response = self._client.request(method, path, **kwargs)
                return response, self._handle_response(response)
            except httpx.TransportError as e:
                error: ServerError = ServerError(f"{method} {path} failed: {e}")
                cause: Exception = e
            except ServerError as e:
                error = e
                cause = e

            if attempt >= self.retry.max_retries:
                logger.error("%s %s failed after %d attempts: %s", method, path, attempt + 1, error)
                if error is cause:
                    raise error
                raise error from cause

            delay = backoff_delay(attempt, self.retry)
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = min(max(delay, error.retry_after), self.retry.max_delay)
            logger.warning(
                "%s %s attempt %d failed (%s), retrying in %.1fs",
                method,
                path,
                attempt + 1,
                error,
                delay,
            )
            self._sleep(delay)
            attempt += 1

    # ==================== Multipart upload ====================

    def initiate_multipart(self, target: UploadTarget) -> str:
        """
        Start a multipart upload.

        Args:
            target: Bucket and object key to upload to

        Returns:
            Upload id assigned by the server

        Raises:
            AuthError: On 401/403
            ClientError: On other 4xx
            ServerError: On 5xx after retries
        """
        path = self._object_path(target)
        _, data = self._request("POST", path, params={"uploads": ""})
        upload_id = data.get("uploadId")
        if not upload_id:
            raise TransportError(f"Initiate response for {target.object_key} has no uploadId")
        logger.info("Initiated multipart upload %s for %s", upload_id, target.object_key)
        return upload_id

    def upload_part(
        self,
        target: UploadTarget,
        upload_id: str,
        index: int,
        data: bytes,
        digest: bytes,
    ) -> PartResult:
        """
        Upload one part.

        Args:
            target: Bucket and object key
            upload_id: Multipart upload id
            index: Zero-based part index (sent as part number index + 1)
            data: Part bytes
            digest: Local SHA-256 of the part

        Returns:
            PartResult with the server ETag

        Raises:
            IntegrityError: If the server checksum differs from the local digest
        """
        path = self._object_path(target)
        response, body = self._request(
            "PUT",
            path,
            params={"partNumber": index + 1, "uploadId": upload_id},
            content=data,
            headers={CHECKSUM_HEADER: b64_digest(digest)},
        )

        etag = response.headers.get("etag") or body.get("etag")
        if not etag:
            raise TransportError(f"No ETag returned for part {index + 1}")

        server_checksum = response.headers.get(CHECKSUM_HEADER) or body.get("checksumSHA256")
        if server_checksum and server_checksum != b64_digest(digest):
            raise IntegrityError(
                f"Checksum mismatch for part {index + 1}: "
                f"server {server_checksum}, local {b64_digest(digest)}"
            )

        return PartResult(index=index, etag=etag, digest=digest)

    def complete_multipart(
        self,
        target: UploadTarget,
        upload_id: str,
        parts: Iterable[PartResult],
    ) -> ObjectDescriptor:
        """
        Assemble the uploaded parts into the final object.

        Parts are submitted sorted by index regardless of completion order.

        Raises:
            InconsistentStateError: If the server rejects the part list or
                reports a different part count
        """
        ordered = sorted(parts, key=lambda part: part.index)
        payload: Dict[str, List[dict]] = {
            "parts": [
                {
                    "partNumber": part.index + 1,
                    "etag": part.etag,
                    "checksumSHA256": b64_digest(part.digest),
                }
                for part in ordered
            ]
        }

        path = self._object_path(target)
        try:
            _, data = self._request("POST", path, params={"uploadId": upload_id}, json=payload)
        except ClientError as e:
            if e.error_code in INCONSISTENT_PART_CODES:
                raise InconsistentStateError(
                    f"Server rejected part list: {e.message}", e.status_code, e.error_code
                ) from e
            raise

        descriptor = _parse_descriptor(data, target)
        if descriptor.part_count is not None and descriptor.part_count != len(ordered):
            raise InconsistentStateError(
                f"Server assembled {descriptor.part_count} parts, {len(ordered)} were submitted"
            )
        logger.info("Completed multipart upload %s (%d parts)", upload_id, len(ordered))
        return descriptor

    def abort_multipart(self, target: UploadTarget, upload_id: str) -> bool:
        """
        Abort a multipart upload. Best effort: failures are logged, not raised.

        Returns:
            True if the server acknowledged the abort
        """
        path = self._object_path(target)
        try:
            self._request("DELETE", path, params={"uploadId": upload_id})
        except PDriveError as e:
            logger.warning("Abort of multipart upload %s failed: %s", upload_id, e)
            return False
        logger.info("Aborted multipart upload %s", upload_id)
        return True

    # ==================== Single put ====================

    def put_single(self, target: UploadTarget, data: bytes, digest: bytes) -> ObjectDescriptor:
        """
        Upload a small object in one request.

        Raises:
            IntegrityError: If the server checksum differs from the local digest
        """
        path = self._object_path(target)
        response, body = self._request(
            "PUT",
            path,
            content=data,
            headers={CHECKSUM_HEADER: b64_digest(digest)},
        )
        descriptor = _parse_descriptor(body, target)
        server_checksum = response.headers.get(CHECKSUM_HEADER) or descriptor.checksum
        if server_checksum and server_checksum != b64_digest(digest):
            raise IntegrityError(
                f"Checksum mismatch for {target.object_key}: "
                f"server {server_checksum}, local {b64_digest(digest)}"
            )
        if descriptor.checksum is None and server_checksum:
            descriptor.checksum = server_checksum
        return descriptor


def _parse_descriptor(data: dict, target: UploadTarget) -> ObjectDescriptor:
    data = dict(data)
    data.setdefault("key", target.object_key)
    try:
        return ObjectDescriptor.model_validate(data)
    except ValidationError as e:
        raise InconsistentStateError(f"Malformed object descriptor from server: {e}") from e


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
