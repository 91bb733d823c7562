"""Unit tests for the HTTP client wrapper and the reports API client."""

import gzip
import json
from datetime import date, datetime, timezone

import httpx
import pytest

from sqp_orchestrator.fetcher.http_client import USER_AGENT, AsyncHTTPClient
from sqp_orchestrator.fetcher.reports_client import (
    DOCUMENTS_PATH,
    REPORTS_PATH,
    SQP_REPORT_TYPE,
    ReportsApiClient,
    build_report_payload,
    extract_rows,
)
from sqp_orchestrator.models.data_models import AuthOverrides, DateRange, ReportType
from sqp_orchestrator.models.errors import AuthError, ReportsApiError

BASE = "http://sp-api.test"
AUTH = AuthOverrides(access_token="token-1", seller_id="A1SELLER")


class TestAsyncHTTPClient:

    @pytest.mark.asyncio
    async def test_initialization_with_defaults(self):
        async with AsyncHTTPClient() as client:
            assert client.connect_timeout == 10.0
            assert client.read_timeout == 60.0

    @pytest.mark.asyncio
    async def test_context_manager_lifecycle(self):
        client = AsyncHTTPClient()

        async with client:
            assert client._client is not None

        assert client._client is None

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        with pytest.raises(RuntimeError, match="async with"):
            await AsyncHTTPClient().get("http://test.com/api")

    @pytest.mark.asyncio
    async def test_timeout_configuration_applied(self):
        async with AsyncHTTPClient(connect_timeout=5.0, read_timeout=10.0) as client:
            timeout = client._client.timeout
            assert timeout.connect == 5.0
            assert timeout.read == 10.0

    @pytest.mark.asyncio
    async def test_post_sends_json_through_transport(self):
        def handler(request):
            assert json.loads(request.content) == {"a": 1}
            return httpx.Response(202, json={"ok": True})

        async with AsyncHTTPClient(transport=httpx.MockTransport(handler)) as client:
            response = await client.post("http://test.com/api", json={"a": 1})

        assert response.status_code == 202

    @pytest.mark.asyncio
    async def test_paths_resolve_against_base_url(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200)

        async with AsyncHTTPClient(base_url=f"{BASE}/", transport=httpx.MockTransport(handler)) as client:
            await client.get(REPORTS_PATH)
            await client.get("https://files.example.com/D1")

        assert seen == [f"{BASE}{REPORTS_PATH}", "https://files.example.com/D1"]

    @pytest.mark.asyncio
    async def test_access_token_adds_signed_date(self):
        seen = []

        def handler(request):
            seen.append(request.headers)
            return httpx.Response(200)

        stamp = datetime(2026, 10, 28, 12, 5, 9, tzinfo=timezone.utc)
        async with AsyncHTTPClient(transport=httpx.MockTransport(handler), clock=lambda: stamp) as client:
            await client.get("http://test.com/api", access_token="token-1")
            await client.get("http://test.com/api")

        authorized, anonymous = seen
        assert authorized["x-amz-access-token"] == "token-1"
        assert authorized["x-amz-date"] == "20261028T120509Z"
        assert authorized["user-agent"] == USER_AGENT
        assert "x-amz-access-token" not in anonymous
        assert anonymous["accept"] == "application/json"


class TestReportPayload:

    def test_build_report_payload(self):
        payload = build_report_payload(
            "ATVPDKIKX0DER",
            "B000000001 B000000002",
            ReportType.WEEK,
            DateRange(date(2026, 10, 18), date(2026, 10, 24)),
        )

        assert payload == {
            "reportType": SQP_REPORT_TYPE,
            "dataStartTime": "2026-10-18T00:00:00Z",
            "dataEndTime": "2026-10-24T23:59:59Z",
            "marketplaceIds": ["ATVPDKIKX0DER"],
            "reportOptions": {"asin": "B000000001 B000000002", "reportPeriod": "WEEK"},
        }

    @pytest.mark.parametrize("payload,expected", [
        ([{"asin": "A"}], [{"asin": "A"}]),
        ({"dataByAsin": [{"asin": "A"}]}, [{"asin": "A"}]),
        ({"data": {"records": [{"asin": "B"}]}}, [{"asin": "B"}]),
        ({"reportSpecification": {}}, []),
        ("unexpected", []),
    ])
    def test_extract_rows(self, payload, expected):
        assert extract_rows(payload) == expected


def _client(handler) -> AsyncHTTPClient:
    return AsyncHTTPClient(base_url=BASE, transport=httpx.MockTransport(handler))


class TestReportsApiClient:

    @pytest.mark.asyncio
    async def test_create_report_sends_token_and_returns_id(self):
        seen = {}

        def handler(request):
            seen["token"] = request.headers["x-amz-access-token"]
            seen["path"] = request.url.path
            return httpx.Response(202, json={"reportId": 12345})

        async with _client(handler) as http:
            report_id = await ReportsApiClient(http).create_report("A1SELLER", {}, AUTH)

        assert report_id == "12345"
        assert seen == {"token": "token-1", "path": REPORTS_PATH}

    @pytest.mark.asyncio
    async def test_create_report_without_id_is_retryable(self):
        async with _client(lambda request: httpx.Response(202, json={})) as http:
            with pytest.raises(ReportsApiError) as exc_info:
                await ReportsApiClient(http).create_report("A1SELLER", {}, AUTH)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_get_report_status(self):
        def handler(request):
            assert request.url.path == f"{REPORTS_PATH}/R1"
            return httpx.Response(200, json={"processingStatus": "done", "reportDocumentId": "D1"})

        async with _client(handler) as http:
            status = await ReportsApiClient(http).get_report_status("A1SELLER", "R1", AUTH)

        assert status.processing_status == "DONE"
        assert status.report_document_id == "D1"
        assert status.report_id == "R1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [401, 403])
    async def test_auth_failures_raise_auth_error(self, code):
        async with _client(lambda request: httpx.Response(code, text="expired")) as http:
            with pytest.raises(AuthError) as exc_info:
                await ReportsApiClient(http).get_report_status("A1SELLER", "R1", AUTH)

        assert exc_info.value.status_code == code
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,retryable", [(429, True), (503, True), (400, False), (404, False)])
    async def test_error_classification(self, code, retryable):
        async with _client(lambda request: httpx.Response(code, text="error")) as http:
            with pytest.raises(ReportsApiError) as exc_info:
                await ReportsApiClient(http).create_report("A1SELLER", {}, AUTH)

        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == code

    @pytest.mark.asyncio
    async def test_download_resolves_url_and_parses_rows(self):
        def handler(request):
            if request.url.path == f"{DOCUMENTS_PATH}/D1":
                return httpx.Response(200, json={"reportDocumentId": "D1", "url": f"{BASE}/files/D1"})
            assert "x-amz-access-token" not in request.headers
            return httpx.Response(200, json={"dataByAsin": [{"asin": "B000000001"}]})

        async with _client(handler) as http:
            rows = await ReportsApiClient(http).download_report_document("A1SELLER", "D1", AUTH)

        assert rows == [{"asin": "B000000001"}]

    @pytest.mark.asyncio
    async def test_download_gzip_document(self):
        body = gzip.compress(json.dumps([{"asin": "B000000002"}]).encode())

        def handler(request):
            if request.url.path.startswith(DOCUMENTS_PATH):
                return httpx.Response(200, json={"url": f"{BASE}/files/D1", "compressionAlgorithm": "GZIP"})
            return httpx.Response(200, content=body)

        async with _client(handler) as http:
            rows = await ReportsApiClient(http).download_report_document("A1SELLER", "D1", AUTH)

        assert rows == [{"asin": "B000000002"}]

    @pytest.mark.asyncio
    async def test_empty_document_returns_no_rows(self):
        def handler(request):
            if request.url.path.startswith(DOCUMENTS_PATH):
                return httpx.Response(200, json={"url": f"{BASE}/files/D1"})
            return httpx.Response(200, content=b"")

        async with _client(handler) as http:
            rows = await ReportsApiClient(http).download_report_document("A1SELLER", "D1", AUTH)

        assert rows == []

    @pytest.mark.asyncio
    async def test_invalid_document_is_not_retryable(self):
        def handler(request):
            if request.url.path.startswith(DOCUMENTS_PATH):
                return httpx.Response(200, json={"url": f"{BASE}/files/D1"})
            return httpx.Response(200, content=b"<html>")

        async with _client(handler) as http:
            with pytest.raises(ReportsApiError, match="not valid JSON") as exc_info:
                await ReportsApiClient(http).download_report_document("A1SELLER", "D1", AUTH)

        assert exc_info.value.retryable is False
