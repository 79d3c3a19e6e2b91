"""
Tests for the transport client.
"""

import hashlib
import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from conftest import ENDPOINT, TOKEN
from pdrive.exceptions import (
    AuthError,
    ClientError,
    InconsistentStateError,
    IntegrityError,
    RateLimitError,
    ServerError,
    TransportError,
)
from pdrive.hashing import b64_digest
from pdrive.models import PartResult, RetryPolicy
from pdrive.transport import CHECKSUM_HEADER, TransportClient, backoff_delay

OBJECT_URL = f"{ENDPOINT}/backups/data.bin"


class TestBackoff:
    """Test the backoff schedule."""

    def test_doubles_from_base(self):
        """Test exponential growth from the base delay."""
        policy = RetryPolicy(base_delay=0.5, max_delay=30.0)
        assert [backoff_delay(n, policy) for n in range(5)] == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        """Test that delays never exceed the cap."""
        policy = RetryPolicy(base_delay=0.5, max_delay=3.0)
        assert backoff_delay(10, policy) == 3.0


class TestClientInitialization:
    """Test client initialization."""

    def test_init_strips_trailing_slash(self):
        """Test that trailing slash is stripped from the endpoint."""
        client = TransportClient(f"{ENDPOINT}/", TOKEN)
        assert client.endpoint == ENDPOINT
        client.close()

    def test_repr_redacts_token(self):
        """Test that the token never appears in repr."""
        with TransportClient(ENDPOINT, TOKEN) as client:
            assert TOKEN not in repr(client)

    def test_bearer_header(self, httpx_mock: HTTPXMock, transport, target):
        """Test that requests carry the bearer token."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            json={"key": "data.bin", "uploadId": "up-1"},
        )
        transport.initiate_multipart(target)
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"
        assert request.headers["User-Agent"].startswith("pdrive/")


class TestMultipart:
    """Test the multipart verbs."""

    def test_initiate(self, httpx_mock: HTTPXMock, transport, target):
        """Test starting a multipart upload."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            json={"key": "data.bin", "uploadId": "up-1"},
        )
        assert transport.initiate_multipart(target) == "up-1"

    def test_upload_part(self, httpx_mock: HTTPXMock, transport, target):
        """Test uploading a part with its checksum."""
        data = b"part data"
        digest = hashlib.sha256(data).digest()
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?partNumber=1&uploadId=up-1",
            method="PUT",
            headers={"ETag": '"etag-1"', CHECKSUM_HEADER: b64_digest(digest)},
        )

        result = transport.upload_part(target, "up-1", 0, data, digest)

        assert result.index == 0
        assert result.etag == '"etag-1"'
        assert result.digest == digest
        request = httpx_mock.get_requests()[0]
        assert request.content == data
        assert request.headers[CHECKSUM_HEADER] == b64_digest(digest)

    def test_upload_part_checksum_mismatch(self, httpx_mock: HTTPXMock, transport, target):
        """Test that a wrong server checksum is an integrity error, not retried."""
        data = b"part data"
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?partNumber=2&uploadId=up-1",
            method="PUT",
            headers={"ETag": '"etag-2"', CHECKSUM_HEADER: b64_digest(b"\x00" * 32)},
        )

        with pytest.raises(IntegrityError):
            transport.upload_part(target, "up-1", 1, data, hashlib.sha256(data).digest())
        assert len(httpx_mock.get_requests()) == 1

    def test_complete_sorts_parts(self, httpx_mock: HTTPXMock, transport, target):
        """Test that parts are submitted in index order."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploadId=up-1",
            method="POST",
            json={"key": "data.bin", "size": 30, "partCount": 3},
        )
        parts = [
            PartResult(index=2, etag='"c"', digest=b"\x03" * 32),
            PartResult(index=0, etag='"a"', digest=b"\x01" * 32),
            PartResult(index=1, etag='"b"', digest=b"\x02" * 32),
        ]

        descriptor = transport.complete_multipart(target, "up-1", parts)

        assert descriptor.size == 30
        submitted = json.loads(httpx_mock.get_requests()[0].content)["parts"]
        assert [p["partNumber"] for p in submitted] == [1, 2, 3]
        assert [p["etag"] for p in submitted] == ['"a"', '"b"', '"c"']

    def test_complete_part_count_mismatch(self, httpx_mock: HTTPXMock, transport, target):
        """Test that a different assembled part count is inconsistent state."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploadId=up-1",
            method="POST",
            json={"key": "data.bin", "size": 10, "partCount": 1},
        )
        parts = [
            PartResult(index=0, etag='"a"', digest=b"\x01" * 32),
            PartResult(index=1, etag='"b"', digest=b"\x02" * 32),
        ]
        with pytest.raises(InconsistentStateError):
            transport.complete_multipart(target, "up-1", parts)

    def test_complete_invalid_part(self, httpx_mock: HTTPXMock, transport, target):
        """Test that an InvalidPart rejection is inconsistent state."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploadId=up-1",
            method="POST",
            status_code=400,
            json={"error": "One or more parts could not be found", "code": "InvalidPart"},
        )
        with pytest.raises(InconsistentStateError):
            transport.complete_multipart(
                target, "up-1", [PartResult(index=0, etag='"a"', digest=b"\x01" * 32)]
            )

    def test_abort(self, httpx_mock: HTTPXMock, transport, target):
        """Test aborting a multipart upload."""
        httpx_mock.add_response(url=f"{OBJECT_URL}?uploadId=up-1", method="DELETE", status_code=204)
        assert transport.abort_multipart(target, "up-1") is True

    def test_abort_failure_is_swallowed(self, httpx_mock: HTTPXMock, transport, target):
        """Test that abort failures are reported, not raised."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploadId=up-1",
            method="DELETE",
            status_code=404,
            json={"error": "No such upload", "code": "NoSuchUpload"},
        )
        assert transport.abort_multipart(target, "up-1") is False


class TestSinglePut:
    """Test single-request uploads."""

    def test_put_single(self, httpx_mock: HTTPXMock, transport, target):
        """Test uploading a small object."""
        data = b"Hello, World!"
        digest = hashlib.sha256(data).digest()
        httpx_mock.add_response(
            url=OBJECT_URL,
            method="PUT",
            json={"key": "data.bin", "size": 13, "etag": '"abc"', "checksumSHA256": b64_digest(digest)},
        )

        descriptor = transport.put_single(target, data, digest)

        assert descriptor.key == "data.bin"
        assert descriptor.size == 13
        assert descriptor.checksum == b64_digest(digest)

    def test_put_single_checksum_mismatch(self, httpx_mock: HTTPXMock, transport, target):
        """Test that a single put with the wrong checksum fails."""
        data = b"Hello, World!"
        httpx_mock.add_response(
            url=OBJECT_URL,
            method="PUT",
            json={"key": "data.bin", "size": 13, "checksumSHA256": b64_digest(b"\x00" * 32)},
        )
        with pytest.raises(IntegrityError):
            transport.put_single(target, data, hashlib.sha256(data).digest())

    def test_put_single_empty_reply(self, httpx_mock: HTTPXMock, transport, target):
        """Test that a reply without an object size is rejected."""
        data = b"Hello, World!"
        httpx_mock.add_response(url=OBJECT_URL, method="PUT")
        with pytest.raises(InconsistentStateError):
            transport.put_single(target, data, hashlib.sha256(data).digest())

    def test_put_single_size_from_server(self, httpx_mock: HTTPXMock, transport, target):
        """Test that the descriptor size is the server's, not the request's."""
        data = b"Hello, World!"
        httpx_mock.add_response(url=OBJECT_URL, method="PUT", json={"size": 7})

        descriptor = transport.put_single(target, data, hashlib.sha256(data).digest())

        assert descriptor.size == 7
        assert descriptor.key == "data.bin"


class TestErrorHandling:
    """Test error mapping and retries."""

    def test_authentication_error(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that 401 is an auth error and is not retried."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            status_code=401,
            json={"error": "Invalid token"},
        )
        with pytest.raises(AuthError):
            transport.initiate_multipart(target)
        assert sleeps == []

    def test_forbidden_is_auth_error(self, httpx_mock: HTTPXMock, transport, target):
        """Test that 403 is an auth error."""
        httpx_mock.add_response(url=f"{OBJECT_URL}?uploads=", method="POST", status_code=403)
        with pytest.raises(AuthError):
            transport.initiate_multipart(target)

    def test_client_error_not_retried(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that other 4xx errors are not retried."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            status_code=400,
            json={"error": "Bad key", "code": "InvalidArgument"},
        )
        with pytest.raises(ClientError) as exc_info:
            transport.initiate_multipart(target)
        assert exc_info.value.error_code == "InvalidArgument"
        assert len(httpx_mock.get_requests()) == 1
        assert sleeps == []

    def test_server_error_retried_then_succeeds(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that 5xx responses are retried with backoff."""
        for _ in range(2):
            httpx_mock.add_response(url=f"{OBJECT_URL}?uploads=", method="POST", status_code=503)
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            json={"key": "data.bin", "uploadId": "up-1"},
        )

        assert transport.initiate_multipart(target) == "up-1"
        assert sleeps == [0.5, 1.0]

    def test_server_error_exhausts_retries(self, httpx_mock: HTTPXMock, target, sleeps):
        """Test that persistent 5xx errors surface after the retry budget."""
        client = TransportClient(
            ENDPOINT, TOKEN, retry=RetryPolicy(max_retries=2, base_delay=1.0), sleep=sleeps.append
        )
        for _ in range(3):
            httpx_mock.add_response(url=f"{OBJECT_URL}?uploads=", method="POST", status_code=500)

        with pytest.raises(ServerError):
            client.initiate_multipart(target)
        client.close()
        assert len(httpx_mock.get_requests()) == 3
        assert sleeps == [1.0, 2.0]

    def test_network_error_retried(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that timeouts are retried like server errors."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url=f"{OBJECT_URL}?uploads=")
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            json={"key": "data.bin", "uploadId": "up-1"},
        )
        assert transport.initiate_multipart(target) == "up-1"
        assert sleeps == [0.5]

    def test_rate_limit_honours_retry_after(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that Retry-After stretches the backoff delay."""
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            status_code=429,
            headers={"Retry-After": "7"},
            json={"error": "Rate limit exceeded"},
        )
        httpx_mock.add_response(
            url=f"{OBJECT_URL}?uploads=",
            method="POST",
            json={"key": "data.bin", "uploadId": "up-1"},
        )
        assert transport.initiate_multipart(target) == "up-1"
        assert sleeps == [7.0]

    def test_rate_limit_is_server_error(self):
        """Test the rate limit error is in the retryable family."""
        assert issubclass(RateLimitError, ServerError)
        assert RateLimitError().retryable

    def test_non_object_json_reply(self, httpx_mock: HTTPXMock, transport, target, sleeps):
        """Test that a JSON array reply is a transport error, not retried."""
        httpx_mock.add_response(url=f"{OBJECT_URL}?uploads=", method="POST", json=["up-1"])
        with pytest.raises(TransportError) as exc_info:
            transport.initiate_multipart(target)
        assert exc_info.value.status_code == 200
        assert "list" in str(exc_info.value)
        assert sleeps == []

    def test_non_object_json_on_complete(self, httpx_mock: HTTPXMock, transport, target):
        """Test that a scalar JSON reply to complete is a transport error."""
        httpx_mock.add_response(url=f"{OBJECT_URL}?uploadId=up-1", method="POST", json="done")
        part = PartResult(index=0, etag='"e0"', digest=hashlib.sha256(b"x").digest())
        with pytest.raises(TransportError):
            transport.complete_multipart(target, "up-1", [part])
