from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader
from n8n_monitor import config

api_key_header = APIKeyHeader(name="X-API-Key")
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    if api_key != config.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def current_user(user_id: str | None = Security(user_id_header)) -> str:
    # Identity comes from the session layer in front of this service
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    return user_id
