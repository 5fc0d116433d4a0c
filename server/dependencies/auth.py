from fastapi import Header, HTTPException, Request


async def verify_api_key(request: Request, x_api_key: str = Header(...)) -> None:
    """Verify the X-Api-Key header against APP_API_KEY.

    Raises:
        HTTPException: 401 if the key does not match.
    """
    helper_config = request.app.state.helper_config
    expected_key = helper_config.get_string_val("APP_API_KEY")
    if x_api_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
