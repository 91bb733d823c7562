"""FastAPI mock of the SP-API reports endpoints and the LWA token endpoint."""

import gzip
import json
import os
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from sqp_orchestrator.fetcher.reports_client import DOCUMENTS_PATH, REPORTS_PATH


class CreateReportRequest(BaseModel):
    """createReport body."""
    reportType: str
    dataStartTime: str
    dataEndTime: str
    marketplaceIds: List[str]
    reportOptions: Dict[str, str] = {}


@dataclass
class MockReport:
    report_id: str
    request: Dict[str, Any]
    polls: int = 0
    document_id: Optional[str] = None


@dataclass
class MockState:
    """Server-side bookkeeping, exposed on ``app.state.mock`` for assertions."""
    reports: Dict[str, MockReport] = field(default_factory=dict)
    issued_tokens: List[str] = field(default_factory=list)
    rejected_tokens: List[str] = field(default_factory=list)
    status_calls: int = 0
    download_calls: int = 0


def build_rows(asins: List[str], rows_per_asin: int, start: str, end: str) -> List[Dict[str, Any]]:
    """Deterministic SQP-shaped rows for each ASIN."""
    rows = []
    for asin in asins:
        for i in range(rows_per_asin):
            rows.append({
                "startDate": start[:10],
                "endDate": end[:10],
                "asin": asin,
                "searchQueryData": {
                    "searchQuery": f"query {i + 1} for {asin}",
                    "searchQueryScore": i + 1,
                    "searchQueryVolume": 1000 - i * 10,
                },
                "impressionData": {"totalQueryImpressionCount": 500 - i},
                "clickData": {"totalClickCount": 50 - i},
                "purchaseData": {"totalPurchaseCount": 5},
            })
    return rows


def create_mock_app(
    polls_until_done: int = 1,
    final_status: str = "DONE",
    rows_per_asin: int = 2,
    gzip_documents: bool = False,
    reject_first_token: bool = False,
    error_rate: float = 0.0,
    random_seed: Optional[int] = None,
) -> FastAPI:
    """
    Create a mock reporting API with configurable behavior.

    Args:
        polls_until_done: Status checks answered IN_QUEUE/IN_PROGRESS before the final status
        final_status: Status returned once polling completes (DONE, FATAL, CANCELLED)
        rows_per_asin: Rows generated per requested ASIN (0 yields an empty document)
        gzip_documents: Serve documents GZIP-compressed
        reject_first_token: Answer 401 to calls made with the first issued token
        error_rate: Probability of a 5xx on report endpoints (0.0-1.0)
        random_seed: Seed for deterministic error injection

    Returns:
        FastAPI application
    """
    app = FastAPI(title="Mock SP-API Reports")
    state = MockState()
    app.state.mock = state
    rng = random.Random(random_seed)

    def _authorize(request: Request) -> None:
        token = request.headers.get("x-amz-access-token")
        if not token:
            raise HTTPException(status_code=403, detail="Missing access token")
        if reject_first_token and state.issued_tokens and token == state.issued_tokens[0]:
            state.rejected_tokens.append(token)
            raise HTTPException(status_code=401, detail="Access token expired")

    def _maybe_fail() -> None:
        if error_rate and rng.random() < error_rate:
            raise HTTPException(status_code=rng.choice([500, 503]), detail="Simulated error")

    @app.post("/auth/o2/token")
    async def token():
        access_token = f"mock-token-{len(state.issued_tokens) + 1}"
        state.issued_tokens.append(access_token)
        return {"access_token": access_token, "token_type": "bearer", "expires_in": 3600}

    @app.post(REPORTS_PATH, status_code=202)
    async def create_report(body: CreateReportRequest, request: Request):
        _authorize(request)
        _maybe_fail()
        report_id = str(len(state.reports) + 1000)
        state.reports[report_id] = MockReport(report_id=report_id, request=body.model_dump())
        return {"reportId": report_id}

    @app.get(f"{REPORTS_PATH}/{{report_id}}")
    async def get_report(report_id: str, request: Request):
        _authorize(request)
        _maybe_fail()
        report = state.reports.get(report_id)
        if report is None:
            raise HTTPException(status_code=404, detail=f"Report {report_id} not found")

        state.status_calls += 1
        report.polls += 1
        if report.polls <= polls_until_done:
            status = "IN_QUEUE" if report.polls == 1 else "IN_PROGRESS"
            return {"reportId": report_id, "processingStatus": status}

        body: Dict[str, Any] = {"reportId": report_id, "processingStatus": final_status}
        if final_status == "DONE":
            report.document_id = report.document_id or f"doc-{report_id}"
            body["reportDocumentId"] = report.document_id
        return body

    @app.get(f"{DOCUMENTS_PATH}/{{document_id}}")
    async def get_document(document_id: str, request: Request):
        _authorize(request)
        body: Dict[str, Any] = {
            "reportDocumentId": document_id,
            "url": str(request.url_for("document_content", document_id=document_id)),
        }
        if gzip_documents:
            body["compressionAlgorithm"] = "GZIP"
        return body

    @app.get("/documents/{document_id}/content", name="document_content")
    async def document_content(document_id: str):
        report = next((r for r in state.reports.values() if r.document_id == document_id), None)
        if report is None:
            raise HTTPException(status_code=404, detail=f"Document {document_id} not found")

        state.download_calls += 1
        asins = report.request.get("reportOptions", {}).get("asin", "").split()
        rows = build_rows(asins, rows_per_asin, report.request["dataStartTime"], report.request["dataEndTime"])
        content = json.dumps({"dataByAsin": rows}).encode() if rows else b""
        if gzip_documents:
            content = gzip.compress(content)
        return Response(content=content, media_type="application/octet-stream")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "reports": len(state.reports)}

    return app


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Behavior is read from MOCK_* environment variables.
    """
    seed = os.getenv("RANDOM_SEED")
    return create_mock_app(
        polls_until_done=int(os.getenv("MOCK_POLLS_UNTIL_DONE", 1)),
        final_status=os.getenv("MOCK_FINAL_STATUS", "DONE").upper(),
        rows_per_asin=int(os.getenv("MOCK_ROWS_PER_ASIN", 2)),
        gzip_documents=os.getenv("MOCK_GZIP", "false").lower() in ("1", "true", "yes"),
        reject_first_token=os.getenv("MOCK_REJECT_FIRST_TOKEN", "false").lower() in ("1", "true", "yes"),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        random_seed=int(seed) if seed else None,
    )
