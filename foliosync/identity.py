"""
identity.py: caller identity seam.

Authentication lives in the upstream gateway (OAuth with the identity
provider, session issuance). The gateway forwards the authenticated user as
headers; this module only reads them:

  X-User-Id    → owner_id (required)
  X-Username   → public handle (optional; used when the portfolio is first created)

WebSocket clients that cannot set headers may pass ?user_id=&username= instead.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, WebSocket


@dataclass(frozen=True)
class Identity:
    owner_id: str
    username: str = ""


async def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_username: Optional[str] = Header(default=None),
) -> Identity:
    """FastAPI dependency: 401 when the gateway did not supply a user."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    return Identity(owner_id=x_user_id.strip(), username=(x_username or "").strip())


def identity_from_websocket(websocket: WebSocket) -> Optional[Identity]:
    owner_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
    if not owner_id:
        return None
    username = websocket.headers.get("x-username") or websocket.query_params.get("username") or ""
    return Identity(owner_id=owner_id, username=username)
