# cloudrun/services/auth.py

import asyncio
import logging

from fastapi import Request
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import id_token

from config import Config
from services.analysis_errors import Unauthenticated

logger = logging.getLogger(__name__)

_auth_request = GoogleAuthRequest()


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise Unauthenticated()
    token = auth_header[7:].strip()  # Strip "Bearer "
    if not token:
        raise Unauthenticated()
    return token


async def get_current_user(request: Request) -> str:
    """
    FastAPI dependency: verify the Firebase ID token and return the uid.

    Verification fetches Google's public certs (cached by google-auth), so it
    runs in a worker thread.
    """
    token = _bearer_token(request)
    try:
        claims = await asyncio.to_thread(
            id_token.verify_firebase_token,
            token,
            _auth_request,
            Config.FIREBASE_PROJECT_ID,
        )
    except Exception as e:
        client_host = request.client.host if request.client else "unknown"
        logger.warning(f"ID token verification failed from {client_host}: {e}")
        raise Unauthenticated()

    user_id = (claims or {}).get("user_id") or (claims or {}).get("sub")
    if not user_id:
        raise Unauthenticated()
    return user_id
