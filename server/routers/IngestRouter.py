from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_api_key
from shared.models.email import IngestRequest, IngestResult

router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post("")
async def ingest_emails(
    request: Request,
    body: IngestRequest,
    _: None = Depends(verify_api_key),
) -> IngestResult:
    """Index a batch of cleaned emails from the upstream pipeline."""
    ingest_service = request.app.state.ingest_service
    return await ingest_service.do_ingest(body.emails)
