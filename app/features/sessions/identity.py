"""
Identity-provider integration (Appwrite).

The client proves who it is with an Appwrite JWT; the server reads the
subject from it and confirms the user with the Appwrite server SDK.
"""
from typing import Optional

import jwt
from appwrite.client import Client
from appwrite.exception import AppwriteException
from appwrite.services.users import Users
from starlette.concurrency import run_in_threadpool

from app.core import config
from app.features.sessions.store import IdentityStoreUnavailable, InvalidSession
from app.utils import get_logger


log = get_logger(__name__)


class AppwriteClient:
    """Singleton Appwrite client for server-side operations."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create Appwrite client instance."""
        if cls._instance is None:
            cls._instance = Client()
            cls._instance.set_endpoint(config.APPWRITE_ENDPOINT)
            cls._instance.set_project(config.APPWRITE_PROJECT_ID)
            cls._instance.set_key(config.APPWRITE_API_KEY)
        return cls._instance


def verify_identity_token(token: str) -> str:
    """
    Read the Appwrite user id from an identity JWT.

    Appwrite signs these tokens with a key we do not hold; the signature is
    not checked here and the user is confirmed against Appwrite instead.

    Returns:
        Appwrite user id

    Raises:
        InvalidSession: token is malformed, expired or has no user id
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise InvalidSession("Identity token has expired") from None
    except jwt.InvalidTokenError:
        raise InvalidSession("Invalid identity token") from None

    user_id = payload.get("userId")
    if not user_id:
        raise InvalidSession("Invalid identity token payload")
    return user_id


async def get_identity_user(user_id: str) -> dict:
    """
    Fetch a user from Appwrite.

    Raises:
        InvalidSession: the user does not exist or is blocked
        IdentityStoreUnavailable: Appwrite could not be reached
    """
    try:
        users = Users(AppwriteClient.get_client())
        user = await run_in_threadpool(users.get, user_id)
    except AppwriteException as e:
        if e.code is None or e.code >= 500:
            log.warning("Identity provider unavailable: %s", e.message)
            raise IdentityStoreUnavailable("Identity provider unavailable") from e
        raise InvalidSession("Unknown identity") from None

    if not user.get("status", True):
        raise InvalidSession("Identity is blocked")
    return user
