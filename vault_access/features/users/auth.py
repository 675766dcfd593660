"""
Appwrite session tokens.

The host application signs users in with Appwrite; this service only reads
the user id from the session JWT and, for users it has not seen yet, looks
the account up in Appwrite once.
"""
import jwt
from typing import Optional
from fastapi import HTTPException, status
from fastapi.concurrency import run_in_threadpool
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from vault_access.core import config
from vault_access.utils import get_logger


log = get_logger(__name__)

_client: Optional[Client] = None


def appwrite_client() -> Client:
    global _client
    if _client is None:
        _client = Client()
        _client.set_endpoint(config.APPWRITE_ENDPOINT)
        _client.set_project(config.APPWRITE_PROJECT_ID)
        _client.set_key(config.APPWRITE_API_KEY)
    return _client


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def token_subject(token: str) -> str:
    """
    Appwrite user id carried by a session JWT.

    The signature is not checked here; the id is confirmed against Appwrite
    the first time the user is seen.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {e}")

    subject = payload.get("userId")
    if not subject:
        raise _unauthorized("Invalid token payload")
    return subject


async def get_appwrite_user(user_id: str) -> dict:
    """Fetch an account from Appwrite; 401 if Appwrite does not know it."""
    try:
        # The Appwrite SDK is synchronous
        return await run_in_threadpool(Users(appwrite_client()).get, user_id)
    except AppwriteException as e:
        log.warning("Appwrite lookup for %s failed: %s", user_id, e)
        raise _unauthorized(f"Failed to verify user: {e}")
