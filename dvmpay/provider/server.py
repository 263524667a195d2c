"""
HTTP read surface for a running DVM: paginated job history and statistics.

  GET /health
  GET /jobs?page=1&page_size=20&status=completed
  GET /stats

Run: dvmpay provider (serves this app with uvicorn next to the DVM loop)
"""

from typing import Optional

from fastapi import FastAPI, HTTPException, Query

from dvmpay.errors import NetworkError
from dvmpay.provider.dvm import DVMProvider
from dvmpay.schema import JobHistoryPage, JobHistoryStatus, JobStatistics


def create_app(provider: DVMProvider) -> FastAPI:
    app = FastAPI(title="dvmpay provider")

    @app.get("/health")
    async def health():
        return {"status": "ok", "pubkey": provider.pubkey, "listening": provider.running}

    @app.get("/jobs", response_model=JobHistoryPage)
    async def jobs(
        page: int = Query(1, ge=1),
        page_size: int = Query(20, ge=1, le=200),
        status: Optional[JobHistoryStatus] = None,
    ):
        try:
            return await provider.get_job_history(page, page_size, status)
        except NetworkError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    @app.get("/stats", response_model=JobStatistics)
    async def stats():
        try:
            return await provider.get_job_statistics()
        except NetworkError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

    return app
