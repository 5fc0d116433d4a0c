from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_api_key
from shared.models.search import QueryResult, SearchRequest

router = APIRouter(prefix="/search", tags=["search"])


@router.post("")
async def search_exemplars(
    request: Request,
    body: SearchRequest,
    _: None = Depends(verify_api_key),
) -> QueryResult:
    """Return the best stylistic exemplars of one user for a query.

    A user without indexed emails yields success=false with a reason, not an
    HTTP error.

    Args:
        request (Request): FastAPI request (provides app.state.query_service).
        body (SearchRequest): User, direction, query text, limit, threshold and filters.
        _ (None): Auth dependency result (unused).
    """
    query_service = request.app.state.query_service
    return await query_service.search_request(body)
