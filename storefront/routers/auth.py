from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storefront.auth import Principal, get_current_principal, is_admin_email
from storefront.config import settings
from storefront.db import get_db
from storefront.dependencies import get_client_ip
from storefront.models import Principal as PrincipalModel
from storefront.schemas import LoginBody
from storefront.security.passwords import verify_password
from storefront.security.rate_limit import limiter
from storefront.security.sessions import create_web_session, revoke_web_session
from storefront.services.audit_service import log_audit

router = APIRouter(prefix='/api/auth', tags=['auth'])


@router.post('/login')
@limiter.limit(settings.login_rate_limit)
def login(body: LoginBody, request: Request, response: Response, db: Session = Depends(get_db)):
    email = body.email.strip().lower()
    ip = get_client_ip(request)

    principal = db.execute(select(PrincipalModel).where(func.lower(PrincipalModel.email) == email)).scalar_one_or_none()
    verified = False
    if principal is not None and principal.active:
        verified, updated_hash = verify_password(body.password, principal.password_hash)
        if verified and updated_hash:
            principal.password_hash = updated_hash

    if not verified:
        log_audit(db, actor_email=email, action='AUTH_LOGIN_FAILED', ip=ip)
        db.commit()
        raise HTTPException(status_code=401, detail='Invalid email or password')

    token = create_web_session(db, principal.id, ip=ip, user_agent=request.headers.get('user-agent'))
    log_audit(db, actor_email=principal.email, action='AUTH_LOGIN', ip=ip)
    db.commit()

    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return {'ok': True, 'email': principal.email, 'isAdmin': is_admin_email(principal.email)}


@router.post('/logout')
def logout(request: Request, response: Response, db: Session = Depends(get_db)):
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        revoke_web_session(db, token)
        log_audit(db, actor_email=None, action='AUTH_LOGOUT', ip=get_client_ip(request))
        db.commit()
    response.delete_cookie(settings.session_cookie_name)
    return {'ok': True}


@router.get('/me')
def me(principal: Principal = Depends(get_current_principal)):
    return {'ok': True, 'email': principal.email, 'isAdmin': is_admin_email(principal.email)}
