from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from storefront.auth import get_current_principal, has_cron_secret, is_admin_email
from storefront.db import get_db
from storefront.dependencies import require_tables
from storefront.services.job_service import run_scanner_tick

router = APIRouter(prefix='/api/admin/cron', tags=['cron'])


def _authorize(request: Request, db: Session) -> str:
    if has_cron_secret(request):
        return 'cron'
    principal = get_current_principal(request, db)
    if not is_admin_email(principal.email):
        raise HTTPException(status_code=401, detail='Not authorized')
    return principal.email


@router.api_route('/tick', methods=['GET', 'POST'], dependencies=[Depends(require_tables('admin_jobs', 'products'))])
def cron_tick(request: Request, job: str = 'all', db: Session = Depends(get_db)):
    source = _authorize(request, db)
    try:
        record, results = run_scanner_tick(db, job, source='cron' if source == 'cron' else 'admin')
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {'ok': True, 'jobId': record.id, **results}
