# hijackwatch/utils/helpers.py
import secrets
import time
from typing import Optional
from fastapi import Request


def now() -> int:
    """Current Unix time in seconds."""
    return int(time.time())

def new_id() -> str:
    """Opaque URL-safe identifier for stored rows."""
    return secrets.token_urlsafe(18)

def client_ip(req: Request) -> Optional[str]:
    """Best-effort client IP: first x-forwarded-for hop, then x-real-ip, then the socket peer."""
    forwarded = req.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if req.headers.get("x-real-ip"):
        return req.headers.get("x-real-ip")
    return req.client.host if req.client else None
