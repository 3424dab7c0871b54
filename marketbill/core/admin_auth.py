"""
Admin authentication for subscription operations.

Admins authenticate with the shared X-Admin-Key header, compared in
constant time against ADMIN_KEY. Every admin action is logged with the
actor identity (a hash of the key, never the key itself).
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional
from fastapi import Request
from marketbill.core.errors import PermissionError
from marketbill.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    actor_display: Optional[str] = None
    auth_mechanism: str = "x_admin_key"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """
    Verify X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}", actor_display="Admin Key")


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: authenticated admin or 403."""
    actor = verify_admin_key(request)
    if not actor:
        raise PermissionError("Admin authentication required", code="admin_auth_required")
    request.state.admin_actor = actor
    return actor
