from __future__ import annotations

import threading
from datetime import timedelta

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.db import SessionLocal, get_db
from storefront.services.cj_client import CjClient, RequestThrottle, TokenStore
from storefront.services.settings_service import get_cj_config

_client_lock = threading.Lock()


def build_cj_client(db: Session) -> CjClient:
    stored = get_cj_config(db)
    return CjClient(
        email=stored['email'] or settings.cj_email,
        api_key=stored['api_key'] or settings.cj_api_key,
        base_url=stored['base'] or settings.cj_api_base,
        timeout_seconds=settings.cj_timeout_seconds,
        access_token=settings.cj_access_token,
        token_store=TokenStore(SessionLocal),
        throttle=RequestThrottle(settings.cj_min_request_interval_seconds),
        token_ttl=timedelta(hours=settings.cj_token_ttl_hours),
    )


def get_cj_client(request: Request, db: Session = Depends(get_db)) -> CjClient:
    with _client_lock:
        client = getattr(request.app.state, 'cj_client', None)
        if client is None:
            client = build_cj_client(db)
            request.app.state.cj_client = client
        return client


def reset_cj_client(app) -> None:
    with _client_lock:
        app.state.cj_client = None
