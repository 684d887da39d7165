import hmac
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.db import get_db
from storefront.security.sessions import load_principal_from_token


@dataclass
class Principal:
    id: int
    email: str
    active: bool


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    token = request.cookies.get(settings.session_cookie_name)
    row = load_principal_from_token(db, token)
    if row is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Unauthorized')
    db.commit()
    if not row.active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Unauthorized')
    principal = Principal(id=row.id, email=row.email, active=row.active)
    request.state.principal = principal
    return principal


def is_admin_email(email: str) -> bool:
    email = email.strip().lower()
    allow_emails = settings.admin_email_list
    allow_domains = settings.admin_domain_list
    if not allow_emails and not allow_domains:
        # Open in development so a fresh install is usable.
        return not settings.is_production
    if email in allow_emails:
        return True
    return '@' in email and email.rsplit('@', 1)[1] in allow_domains


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not is_admin_email(principal.email):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Not authorized')
    return principal


def has_cron_secret(request: Request) -> bool:
    expected = settings.cron_secret or ''
    provided = request.headers.get('x-cron-secret') or request.query_params.get('secret') or ''
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))
