"""
WebSocket Authentication Utility
Handles JWT authentication for WebSocket connections
"""

import logging

from fastapi import WebSocket

from ridehail.utils.jwt_utils import verify_token

logger = logging.getLogger(__name__)


class WebSocketAuthError(Exception):
    pass


async def authenticate_websocket(websocket: WebSocket) -> dict:
    """
    Authenticate WebSocket connection using JWT token

    The token is read from the `token` query parameter, then from a
    `Authorization: Bearer` header.

    Returns:
        {"user_id", "role"} from the token payload

    Raises:
        WebSocketAuthError if authentication fails
    """
    token = websocket.query_params.get("token")

    if not token:
        auth_header = websocket.headers.get("authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.split(" ", 1)[1]

    if not token:
        logger.warning("WebSocket connection rejected: Missing authentication token")
        raise WebSocketAuthError("Missing authentication token")

    payload = verify_token(token)
    if payload is None:
        raise WebSocketAuthError("Invalid or expired token")

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or not role:
        logger.warning(
            f"WebSocket connection rejected: Invalid token payload - user_id={user_id}, role={role}"
        )
        raise WebSocketAuthError("Invalid token payload")

    logger.info(f"WebSocket authenticated: user_id={user_id}, role={role}")
    return {"user_id": user_id, "role": role}
