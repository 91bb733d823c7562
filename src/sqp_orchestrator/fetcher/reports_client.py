"""Client for the Selling Partner Reports API (2021-06-30)."""

import gzip
import json
from typing import Any, Dict, List

import httpx

from sqp_orchestrator.fetcher.http_client import AsyncHTTPClient
from sqp_orchestrator.models.data_models import AuthOverrides, DateRange, ReportStatusResponse, ReportType
from sqp_orchestrator.models.errors import AuthError, ReportsApiError

REPORTS_PATH = "/reports/2021-06-30/reports"
DOCUMENTS_PATH = "/reports/2021-06-30/documents"
SQP_REPORT_TYPE = "GET_BRAND_ANALYTICS_SEARCH_QUERY_PERFORMANCE_REPORT"

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
AUTH_STATUS_CODES = frozenset({401, 403})


def build_report_payload(
    marketplace_id: str,
    asin_string: str,
    report_type: ReportType,
    date_range: DateRange,
) -> Dict[str, Any]:
    """Build the createReport body for an SQP report."""
    return {
        "reportType": SQP_REPORT_TYPE,
        "dataStartTime": f"{date_range.start.isoformat()}T00:00:00Z",
        "dataEndTime": f"{date_range.end.isoformat()}T23:59:59Z",
        "marketplaceIds": [marketplace_id],
        "reportOptions": {
            "asin": asin_string,
            "reportPeriod": report_type.value,
        },
    }


def extract_rows(payload: Any) -> List[Dict[str, Any]]:
    """Pull row-oriented records out of a report document.

    Documents arrive either as a bare list or wrapped in ``dataByAsin``,
    ``records`` or ``data``.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("dataByAsin", "records", "data"):
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict):
                return extract_rows(value)
    return []


class ReportsApiClient:
    """
    Thin async client over the reports endpoints.

    Error mapping:
    - 401/403 raise AuthError so the caller can force a credential refresh
    - 429 and 5xx raise a retryable ReportsApiError
    - other 4xx raise a non-retryable ReportsApiError
    Transport errors and timeouts propagate as httpx exceptions.
    """

    def __init__(self, http_client: AsyncHTTPClient):
        """Paths resolve against the base URL of http_client."""
        self.http_client = http_client

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        code = response.status_code
        if code < 400:
            return
        detail = response.text[:500]
        if code in AUTH_STATUS_CODES:
            raise AuthError(f"{operation} unauthorized ({code}): {detail}", status_code=code)
        raise ReportsApiError(
            f"{operation} failed with HTTP {code}: {detail}",
            status_code=code,
            retryable=code in RETRYABLE_STATUS_CODES,
        )

    async def create_report(
        self, seller_id: str, payload: Dict[str, Any], auth: AuthOverrides
    ) -> str:
        """Request a report; returns the provider report id."""
        response = await self.http_client.post(
            REPORTS_PATH, json=payload, access_token=auth.access_token
        )
        self._raise_for_status(response, "createReport")
        report_id = response.json().get("reportId")
        if not report_id:
            raise ReportsApiError("createReport returned no reportId", retryable=True)
        return str(report_id)

    async def get_report_status(
        self, seller_id: str, report_id: str, auth: AuthOverrides
    ) -> ReportStatusResponse:
        response = await self.http_client.get(
            f"{REPORTS_PATH}/{report_id}", access_token=auth.access_token
        )
        self._raise_for_status(response, "getReport")
        body = response.json()
        return ReportStatusResponse(
            processing_status=str(body.get("processingStatus", "")).upper(),
            report_document_id=body.get("reportDocumentId"),
            report_id=body.get("reportId", report_id),
        )

    async def download_report_document(
        self, seller_id: str, document_id: str, auth: AuthOverrides
    ) -> List[Dict[str, Any]]:
        """Resolve the document URL, fetch it and parse it into rows."""
        response = await self.http_client.get(
            f"{DOCUMENTS_PATH}/{document_id}", access_token=auth.access_token
        )
        self._raise_for_status(response, "getReportDocument")
        document = response.json()
        url = document.get("url")
        if not url:
            raise ReportsApiError("getReportDocument returned no url", retryable=True)

        content_response = await self.http_client.get(url)
        self._raise_for_status(content_response, "downloadReportDocument")
        content = content_response.content
        if str(document.get("compressionAlgorithm", "")).upper() == "GZIP":
            content = gzip.decompress(content)
        if not content.strip():
            return []
        try:
            payload = json.loads(content)
        except ValueError as e:
            raise ReportsApiError(f"Report document is not valid JSON: {e}") from e
        return extract_rows(payload)
