"""Caller identity for the HTTP layer.

Sessions are issued elsewhere. Admin calls carry ``ADMIN_API_KEY`` (X-API-Key
or a Bearer token); dashboard calls arrive through the session proxy, which
forwards the signed-in owner's business as ``X-Business-Id``.
"""
from __future__ import annotations

import hmac
import ipaddress
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from .config import load_config

ADMIN_ROLE = "admin"
BUSINESS_ROLE = "business_owner"


@dataclass(frozen=True)
class Identity:
    id: Optional[uuid.UUID]
    role: str


def _is_loopback_host(host: Optional[str]) -> bool:
    if not host:
        return False
    candidate = host.strip()
    if not candidate:
        return False
    if candidate == "localhost":
        return True
    try:
        return ipaddress.ip_address(candidate).is_loopback
    except ValueError:
        return False


def require_admin(
    request: Request,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    config = load_config()
    client_host = request.client.host if request.client else None
    if config.admin_localhost_bypass and _is_loopback_host(client_host):
        return Identity(id=None, role=ADMIN_ROLE)

    token = x_api_key
    if not token and authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    expected = config.admin_api_key
    if not expected:
        raise HTTPException(status_code=401, detail="Admin API key is required")
    if not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin API key")
    return Identity(id=None, role=ADMIN_ROLE)


def require_business(
    x_business_id: Optional[str] = Header(default=None, alias="X-Business-Id"),
) -> Identity:
    if not x_business_id:
        raise HTTPException(status_code=401, detail="No business associated with this session")
    try:
        business_id = uuid.UUID(x_business_id.strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid business identity") from None
    return Identity(id=business_id, role=BUSINESS_ROLE)
