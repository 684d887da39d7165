from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.auth import Principal, require_admin
from storefront.config import settings
from storefront.db import get_db
from storefront.dependencies import get_client_ip, get_table_inspector, require_tables
from storefront.models import ALL_TABLES
from storefront.schemas import AdminSettingsBody, CjSettingsBody, ResyncBody, UpsertOptionsBody
from storefront.services.audit_service import log_audit
from storefront.services.cj_client import CjClient
from storefront.services.cj_sync_service import UpsertOptions, resync_cj_products, sync_product_by_pid
from storefront.services.provider_factory import get_cj_client, reset_cj_client
from storefront.services.settings_service import (
    OPERATING_MODES,
    TableInspector,
    get_cj_config,
    get_operating_mode,
    is_kill_switch_on,
    mask_email,
    set_cj_config,
    set_kill_switch,
    set_operating_mode,
)

router = APIRouter(prefix='/api/admin', tags=['admin'])


def _cj_settings_view(db: Session) -> dict:
    stored = get_cj_config(db)
    email = stored['email'] or settings.cj_email
    return {
        'ok': True,
        'email': mask_email(email),
        'hasApiKey': bool(stored['api_key'] or settings.cj_api_key),
        'hasAccessToken': bool(settings.cj_access_token),
        'base': stored['base'] or settings.cj_api_base,
        'source': 'database' if stored['email'] or stored['api_key'] else 'environment',
    }


@router.get('/cj/settings', dependencies=[Depends(require_tables('kv_settings'))])
def cj_settings(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return _cj_settings_view(db)


@router.post('/cj/settings', dependencies=[Depends(require_tables('kv_settings'))])
def update_cj_settings(
    body: CjSettingsBody,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    current = get_cj_config(db)
    set_cj_config(
        db,
        email=body.email if body.email is not None else current['email'],
        api_key=body.api_key if body.api_key is not None else current['api_key'],
        base=body.base if body.base is not None else current['base'],
    )
    log_audit(
        db,
        actor_email=principal.email,
        action='CJ_SETTINGS_UPDATED',
        ip=get_client_ip(request),
        metadata={'emailChanged': body.email is not None, 'apiKeyChanged': body.api_key is not None},
    )
    db.commit()
    reset_cj_client(request.app)
    return _cj_settings_view(db)


@router.post('/cj/clear-token')
def clear_cj_token(
    request: Request,
    client: CjClient = Depends(get_cj_client),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    client.clear_token()
    log_audit(db, actor_email=principal.email, action='CJ_TOKEN_CLEARED', ip=get_client_ip(request))
    db.commit()
    return {'ok': True}


@router.get('/settings', dependencies=[Depends(require_tables('kv_settings'))])
def admin_settings(db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return {
        'ok': True,
        'killSwitch': is_kill_switch_on(db),
        'operatingMode': get_operating_mode(db),
        'operatingModes': list(OPERATING_MODES),
    }


@router.post('/settings', dependencies=[Depends(require_tables('kv_settings'))])
def update_admin_settings(
    body: AdminSettingsBody,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    try:
        if body.operating_mode is not None:
            set_operating_mode(db, body.operating_mode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if body.kill_switch is not None:
        set_kill_switch(db, body.kill_switch)
    log_audit(
        db,
        actor_email=principal.email,
        action='ADMIN_SETTINGS_UPDATED',
        ip=get_client_ip(request),
        metadata=body.model_dump(by_alias=True, exclude_none=True),
    )
    db.commit()
    return admin_settings(db, principal)


@router.post('/cj/products/{pid}/sync', dependencies=[Depends(require_tables('products'))])
def sync_cj_product(
    pid: str,
    request: Request,
    body: UpsertOptionsBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    principal: Principal = Depends(require_admin),
):
    body = body or UpsertOptionsBody()
    options = UpsertOptions(
        update_images=body.update_images, update_video=body.update_video, update_price=body.update_price
    )
    result = sync_product_by_pid(db, client, pid, options)
    if not result.ok:
        db.rollback()
        return JSONResponse(status_code=502, content={'ok': False, 'error': result.error})

    log_audit(
        db,
        actor_email=principal.email,
        action='CJ_PRODUCT_SYNCED',
        target=pid,
        ip=get_client_ip(request),
        metadata={'productId': result.product_id, 'updated': list(result.updated)},
    )
    db.commit()
    return {'ok': True, 'productId': result.product_id, 'updated': list(result.updated)}


@router.post('/cj/resync', dependencies=[Depends(require_tables('products'))])
def resync_cj_catalog(
    request: Request,
    body: ResyncBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    principal: Principal = Depends(require_admin),
):
    body = body or ResyncBody()
    options = UpsertOptions(
        update_images=body.update_images, update_video=body.update_video, update_price=body.update_price
    )
    summary = resync_cj_products(db, client, body.limit, options)
    log_audit(
        db,
        actor_email=principal.email,
        action='CJ_PRODUCTS_RESYNCED',
        ip=get_client_ip(request),
        metadata={'total': summary.total, 'updated': summary.updated, 'failed': summary.failed},
    )
    db.commit()
    return {
        'ok': True,
        'total': summary.total,
        'updated': summary.updated,
        'failed': summary.failed,
        'results': summary.results,
    }


@router.get('/db/status')
def db_status(
    inspector: TableInspector = Depends(get_table_inspector),
    _: Principal = Depends(require_admin),
):
    missing = inspector.missing_tables(ALL_TABLES)
    return {
        'ok': not missing,
        'tables': {name: name not in missing for name in ALL_TABLES},
        'missing': missing,
    }
