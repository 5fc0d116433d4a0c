from fastapi import APIRouter, Depends, Request

from server.dependencies.auth import verify_api_key

router = APIRouter(prefix="/users", tags=["users"])


@router.delete("/{user_id}")
async def delete_user_data(
    request: Request,
    user_id: str,
    _: None = Depends(verify_api_key),
) -> dict:
    """Delete both collections and the published lexical state of a user."""
    ingest_service = request.app.state.ingest_service
    deleted = await ingest_service.delete_user(user_id)
    return {"status": "deleted", "user_id": user_id, "collections": deleted}
