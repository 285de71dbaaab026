"""
Shared FastAPI dependencies for the v1 routers.

Caller identity is established upstream (auth gateway) and forwarded as
headers; this service trusts them as given.

    X-Actor-ID      admin / dispatcher performing a write
    X-Responder-ID  responder whose inbox or assignments are being read
"""

from __future__ import annotations

from fastapi import Header

from backend.app.core.errors import ValidationError


def actor_id(x_actor_id: str = Header(..., alias="X-Actor-ID")) -> str:
    if not x_actor_id.strip():
        raise ValidationError("X-Actor-ID header must not be empty", field="X-Actor-ID")
    return x_actor_id.strip()


def responder_id(x_responder_id: str = Header(..., alias="X-Responder-ID")) -> str:
    if not x_responder_id.strip():
        raise ValidationError("X-Responder-ID header must not be empty", field="X-Responder-ID")
    return x_responder_id.strip()
