"""Tests for the upload HTTP client."""

from email.utils import formatdate
from pathlib import Path

import httpx
import pytest

from docsync.client.api import UploadClient, classify_response, parse_retry_after
from docsync.client.state import FileRecord, UploadStatus
from docsync.client.sync.types import UploadJob
from docsync.core.config import RetryPolicy, ServerConfig, UploadMeta, WatchedRoot
from docsync.core.errors import IoFailure, UploadError, UploadErrorKind
from docsync.core.fingerprint import Fingerprint, fingerprint_file

UPLOAD_URL = "http://test/api/v1/upload"


def make_config(server_url: str = "http://test", token: str = "token123") -> ServerConfig:
    """Create a ServerConfig for testing."""
    return ServerConfig(server_url=server_url, token=token)


class BodyRecorder:
    """Upload callback that answers with an id and keeps the request body.

    The client only holds the file open while the request is in flight, so
    bodies have to be read from inside the callback.
    """

    def __init__(self, remote_id: str = "r1") -> None:
        self.remote_id = remote_id
        self.bodies: list[bytes] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(request.read())
        return httpx.Response(201, json={"id": self.remote_id})


class RecordingSleep:
    """Sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def job(tmp_path: Path) -> UploadJob:
    """Create an upload job for inbox/a.txt containing "hello"."""
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    local_path = inbox / "a.txt"
    local_path.write_bytes(b"hello")
    root = WatchedRoot(inbox)
    record = FileRecord(
        path="a.txt",
        fingerprint=fingerprint_file(local_path),
        size=5,
        mtime=local_path.stat().st_mtime,
        status=UploadStatus.uploading(1),
    )
    return UploadJob(root=root, record=record, local_path=root.resolve("a.txt"))


class TestParseRetryAfter:
    """Tests for Retry-After parsing."""

    def test_seconds(self) -> None:
        assert parse_retry_after("120") == 120.0
        assert parse_retry_after(" 3 ") == 3.0

    def test_http_date(self) -> None:
        """HTTP dates are converted to seconds from now."""
        now = 1700000000.0
        value = formatdate(now + 30, usegmt=True)
        assert parse_retry_after(value, now=now) == pytest.approx(30.0)

    def test_date_in_past(self) -> None:
        now = 1700000000.0
        assert parse_retry_after(formatdate(now - 30, usegmt=True), now=now) == 0.0

    def test_invalid(self) -> None:
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None


class TestClassifyResponse:
    """Tests for mapping HTTP statuses to error kinds."""

    @pytest.mark.parametrize("status", [200, 201])
    def test_success(self, status: int) -> None:
        assert classify_response(httpx.Response(status)) is None

    @pytest.mark.parametrize("status", [500, 502, 503, 504, 408])
    def test_transient(self, status: int) -> None:
        error = classify_response(httpx.Response(status))
        assert error is not None
        assert error.kind == UploadErrorKind.TRANSIENT
        assert error.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 413, 422])
    def test_permanent(self, status: int) -> None:
        error = classify_response(httpx.Response(status, json={"detail": "nope"}))
        assert error is not None
        assert error.kind == UploadErrorKind.PERMANENT
        assert "nope" in str(error)

    def test_rate_limited(self) -> None:
        error = classify_response(httpx.Response(429, headers={"Retry-After": "7"}))
        assert error is not None
        assert error.kind == UploadErrorKind.RATE_LIMITED
        assert error.retry_after == 7.0

    def test_redirect_is_permanent(self) -> None:
        error = classify_response(httpx.Response(302))
        assert error is not None
        assert error.kind == UploadErrorKind.PERMANENT


class TestUploadClient:
    """Tests for UploadClient.upload."""

    def test_upload_success(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """A 201 with an id returns that id after a single request."""
        recorder = BodyRecorder("r1")
        httpx_mock.add_callback(recorder, url=UPLOAD_URL, method="POST")

        with UploadClient(make_config(), sleep=sleep) as client:
            assert client.upload(job) == "r1"

        requests = httpx_mock.get_requests()
        assert len(requests) == 1
        body = recorder.bodies[0]
        assert b'name="file"; filename="a.txt"' in body
        assert b"hello" in body
        assert b'name="path"' in body
        assert b'name="root"' in body
        assert job.root.root_id.encode() in body
        assert requests[0].headers["Authorization"] == "Bearer token123"
        assert sleep.delays == []

    def test_transient_errors_retried_with_backoff(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """503 three times then 200: four requests, delays 1, 2, 4."""
        for _ in range(3):
            httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=503)
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=200, json={"id": "r1"})

        with UploadClient(make_config(), sleep=sleep) as client:
            assert client.upload(job) == "r1"

        assert len(httpx_mock.get_requests()) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    def test_file_reopened_for_each_attempt(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """Every retry sends the full content again."""
        bodies: list[bytes] = []

        def fail_once(request: httpx.Request) -> httpx.Response:
            bodies.append(request.read())
            return httpx.Response(500)

        recorder = BodyRecorder("r1")
        httpx_mock.add_callback(fail_once, url=UPLOAD_URL, method="POST")
        httpx_mock.add_callback(recorder, url=UPLOAD_URL, method="POST")

        with UploadClient(make_config(), sleep=sleep) as client:
            assert client.upload(job) == "r1"

        assert len(bodies) == 1
        assert b"hello" in bodies[0]
        assert b"hello" in recorder.bodies[0]

    def test_retries_exhausted(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """After max_attempts transient failures the last error is raised."""
        for _ in range(3):
            httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=502)
        policy = RetryPolicy(max_attempts=3)

        with UploadClient(make_config(), retry_policy=policy, sleep=sleep) as client:
            with pytest.raises(UploadError) as exc_info:
                client.upload(job)

        assert exc_info.value.kind == UploadErrorKind.TRANSIENT
        assert exc_info.value.status_code == 502
        assert sleep.delays == [1.0, 2.0]

    def test_timeout_is_transient(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """A timeout is retried like a 5xx."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=200, json={"id": "r2"})

        with UploadClient(make_config(), sleep=sleep) as client:
            assert client.upload(job) == "r2"
        assert sleep.delays == [1.0]

    def test_permanent_error_not_retried(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """A 4xx fails at once without retrying."""
        httpx_mock.add_response(
            url=UPLOAD_URL, method="POST", status_code=422, json={"detail": "bad file"}
        )

        with UploadClient(make_config(), sleep=sleep) as client:
            with pytest.raises(UploadError) as exc_info:
                client.upload(job)

        assert exc_info.value.kind == UploadErrorKind.PERMANENT
        assert exc_info.value.status_code == 422
        assert len(httpx_mock.get_requests()) == 1
        assert sleep.delays == []

    def test_rate_limit_honors_retry_after(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """429 waits the server-provided delay before retrying."""
        httpx_mock.add_response(
            url=UPLOAD_URL, method="POST", status_code=429, headers={"Retry-After": "5"}
        )
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=201, json={"id": "r1"})

        with UploadClient(make_config(), sleep=sleep) as client:
            assert client.upload(job) == "r1"
        assert sleep.delays == [5.0]

    def test_long_retry_after_deferred(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """A Retry-After beyond the backoff cap is raised instead of waited out."""
        httpx_mock.add_response(
            url=UPLOAD_URL, method="POST", status_code=429, headers={"Retry-After": "600"}
        )

        with UploadClient(make_config(), sleep=sleep) as client:
            with pytest.raises(UploadError) as exc_info:
                client.upload(job)

        assert exc_info.value.kind == UploadErrorKind.RATE_LIMITED
        assert exc_info.value.retry_after == 600.0
        assert sleep.delays == []

    def test_missing_id_is_permanent(
        self, httpx_mock, job: UploadJob, sleep: RecordingSleep  # type: ignore[no-untyped-def]
    ) -> None:
        """A success response without an id cannot be committed."""
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=201, json={"ok": True})

        with UploadClient(make_config(), sleep=sleep) as client:
            with pytest.raises(UploadError) as exc_info:
                client.upload(job)
        assert exc_info.value.kind == UploadErrorKind.PERMANENT

    def test_missing_local_file(self, job: UploadJob, sleep: RecordingSleep) -> None:
        """A vanished file raises IoFailure without any request."""
        job.local_path.unlink()

        with UploadClient(make_config(), sleep=sleep) as client:
            with pytest.raises(IoFailure):
                client.upload(job)

    def test_metadata_fields(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """Configured metadata is sent as extra form fields."""
        recorder = BodyRecorder()
        httpx_mock.add_callback(recorder, url=UPLOAD_URL, method="POST")
        meta = UploadMeta(folder="inbox", direction="incoming", tags=("scan", "2024"))

        with UploadClient(make_config(), meta=meta, sleep=sleep) as client:
            client.upload(job)

        body = recorder.bodies[0]
        assert b'name="folder"' in body
        assert b'name="direction"' in body
        assert body.count(b'name="tag"') == 2

    def test_basic_auth(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """Basic credentials are sent instead of a bearer token."""
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=201, json={"id": "r1"})
        config = ServerConfig(server_url="http://test", basic_auth="john:secret")

        with UploadClient(config, sleep=sleep) as client:
            client.upload(job)

        assert httpx_mock.get_request().headers["Authorization"].startswith("Basic ")

    def test_custom_auth_header(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """A configured header replaces the Authorization header."""
        httpx_mock.add_response(url=UPLOAD_URL, method="POST", status_code=201, json={"id": "r1"})
        config = ServerConfig(server_url="http://test", auth_header="X-Integration:abc")

        with UploadClient(config, sleep=sleep) as client:
            client.upload(job)

        request = httpx_mock.get_request()
        assert request.headers["X-Integration"] == "abc"
        assert "Authorization" not in request.headers


    def test_endpoint_fields(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        """Collective and source id are sent as form fields when configured."""
        recorder = BodyRecorder()
        httpx_mock.add_callback(recorder, url=UPLOAD_URL, method="POST")
        config = ServerConfig(
            server_url="http://test",
            auth_header="X-Integration:abc",
            collective="acme",
            source_id="scanner",
        )

        with UploadClient(config, sleep=sleep) as client:
            client.upload(job)

        body = recorder.bodies[0]
        assert b'name="collective"' in body
        assert b"acme" in body
        assert b'name="source"' in body
        assert b"scanner" in body

    def test_skip_duplicates_sent_by_default(self, httpx_mock, job: UploadJob, sleep: RecordingSleep) -> None:  # type: ignore[no-untyped-def]
        recorder = BodyRecorder()
        httpx_mock.add_callback(recorder, url=UPLOAD_URL, method="POST")

        with UploadClient(make_config(), sleep=sleep) as client:
            client.upload(job)

        assert b'name="skip_duplicates"' in recorder.bodies[0]

    def test_unencodable_name_is_permanent(self, tmp_path: Path, sleep: RecordingSleep) -> None:
        """A file name that is not valid UTF-8 fails without retrying."""
        inbox = tmp_path / "names"
        inbox.mkdir()
        root = WatchedRoot(inbox)
        name = "bad\udcffname.txt"
        local_path = root.resolve(name)
        local_path.write_bytes(b"hello")
        record = FileRecord(
            path=name,
            fingerprint=fingerprint_file(local_path),
            size=5,
            mtime=local_path.stat().st_mtime,
            status=UploadStatus.uploading(1),
        )
        transport = httpx.MockTransport(lambda request: httpx.Response(201, json={"id": "r1"}))

        with UploadClient(make_config(), sleep=sleep, transport=transport) as client:
            with pytest.raises(UploadError) as exc_info:
                client.upload(UploadJob(root=root, record=record, local_path=local_path))

        assert exc_info.value.kind == UploadErrorKind.PERMANENT
        assert sleep.delays == []


class TestHealthAndCheck:
    """Tests for health_check and check_exists."""

    FP = Fingerprint(b"\x01" * 32)

    def test_health_check_success(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return True when server is healthy."""
        httpx_mock.add_response(url="http://test/health", json={"status": "ok"})

        with UploadClient(make_config()) as client:
            assert client.health_check() is True

    def test_health_check_failure(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Should return False when server is down."""
        httpx_mock.add_response(url="http://test/health", status_code=500)

        with UploadClient(make_config()) as client:
            assert client.health_check() is False

    def test_check_exists_found(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """Existing content returns its remote id."""
        httpx_mock.add_response(
            url=f"http://test/api/v1/checkfile/{self.FP.hex()}",
            json={"exists": True, "id": "r9"},
        )

        with UploadClient(make_config()) as client:
            assert client.check_exists(self.FP) == "r9"

    def test_check_exists_not_found(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """exists=false and 404 both mean unknown content."""
        httpx_mock.add_response(
            url=f"http://test/api/v1/checkfile/{self.FP.hex()}", json={"exists": False}
        )
        httpx_mock.add_response(
            url=f"http://test/api/v1/checkfile/{self.FP.hex()}", status_code=404
        )

        with UploadClient(make_config()) as client:
            assert client.check_exists(self.FP) is None
            assert client.check_exists(self.FP) is None

    def test_check_exists_server_error(self, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A failing check raises a transient UploadError."""
        httpx_mock.add_response(
            url=f"http://test/api/v1/checkfile/{self.FP.hex()}", status_code=503
        )

        with UploadClient(make_config()) as client:
            with pytest.raises(UploadError) as exc_info:
                client.check_exists(self.FP)
        assert exc_info.value.kind == UploadErrorKind.TRANSIENT
