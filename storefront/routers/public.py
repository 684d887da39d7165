import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.db import get_db
from storefront.dependencies import get_request_id
from storefront.models import Product, ProductVariant
from storefront.schemas import ShippingCalcBody
from storefront.security.rate_limit import limiter
from storefront.services.audit_service import record_error
from storefront.services.cj_client import CjApiError, CjClient, FreightQuoteRequest
from storefront.services.cj_tracking_service import persist_cj_tracking, verify_webhook_signature
from storefront.services.pricing_service import convert_to_sar
from storefront.services.provider_factory import get_cj_client

log = structlog.get_logger(__name__)

router = APIRouter(tags=['public'])


async def read_raw_body(request: Request) -> bytes:
    return await request.body()


@router.post('/api/cj/webhook')
@limiter.limit(settings.webhook_rate_limit)
def cj_webhook(request: Request, raw: bytes = Depends(read_raw_body), db: Session = Depends(get_db)):
    signature = request.headers.get('x-signature') or request.headers.get('x-cj-signature')
    verified = verify_webhook_signature(raw, signature, settings.cj_webhook_secret)
    if not verified:
        log.warning('cj.webhook.signature_invalid', signed=bool(signature))
        if settings.is_production:
            return JSONResponse(status_code=401, content={'error': 'Invalid signature'})

    try:
        payload = json.loads(raw.decode('utf-8') or '{}')
    except (UnicodeDecodeError, json.JSONDecodeError):
        return JSONResponse(status_code=400, content={'error': 'Invalid body'})

    event = (payload.get('event') or payload.get('type') or 'unknown') if isinstance(payload, dict) else 'unknown'
    saved = persist_cj_tracking(db, payload)
    if saved.ok:
        log.info('cj.webhook.applied', cj_event=event, order_id=saved.order_id, changes=list(saved.changes))
    else:
        log.warning('cj.webhook.not_applied', cj_event=event, reason=saved.reason)
        record_error(
            db,
            source='cj.webhook',
            message=saved.reason or 'not applied',
            request_id=get_request_id(request),
            metadata={'event': event},
        )
    return {'received': True, 'verified': verified}


@router.post('/api/cj/shipping/calc')
@limiter.limit(settings.shipping_calc_rate_limit)
def shipping_calc(request: Request, body: ShippingCalcBody, client: CjClient = Depends(get_cj_client)):
    if not (body.pid or body.sku or body.vid):
        raise HTTPException(status_code=400, detail='One of pid, sku or vid is required')
    quote = FreightQuoteRequest(
        country_code=body.country_code.upper(),
        zip_code=body.zip,
        quantity=body.quantity,
        pid=body.pid,
        sku=body.sku,
        variant_id=body.vid,
        weight_gram=body.weight_gram,
    )
    try:
        options = client.freight_calculate(quote)
    except CjApiError as exc:
        log.warning('cj.shipping_calc.failed', error=str(exc))
        return JSONResponse(status_code=502, content={'ok': False, 'error': 'Shipping quote unavailable'})
    return {
        'ok': True,
        'options': [dict(option, priceSar=convert_to_sar(option['price'], option['currency'])) for option in options],
    }


def _product_dict(product: Product) -> dict:
    return {
        'id': product.id,
        'title': product.title,
        'slug': product.slug,
        'price': str(product.price),
        'stock': product.stock,
        'images': product.images or [],
        'videoUrl': product.video_url,
        'category': product.category,
    }


@router.get('/api/products')
def products_index(
    category: str | None = None,
    q: str | None = None,
    limit: int = 24,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    stmt = select(Product).where(Product.is_active.is_(True))
    if category:
        stmt = stmt.where(Product.category == category)
    if q:
        stmt = stmt.where(Product.title.ilike(f'%{q.strip()}%'))
    stmt = stmt.order_by(Product.created_at.desc(), Product.id.desc()).offset(max(0, offset)).limit(max(1, min(limit, 100)))
    return {'ok': True, 'products': [_product_dict(p) for p in db.scalars(stmt)]}


@router.get('/api/products/{slug}')
def product_detail(slug: str, db: Session = Depends(get_db)):
    product = db.scalar(select(Product).where(Product.slug == slug, Product.is_active.is_(True)))
    if product is None:
        raise HTTPException(status_code=404, detail='Product not found')
    variants = db.scalars(select(ProductVariant).where(ProductVariant.product_id == product.id).order_by(ProductVariant.id))
    detail = _product_dict(product)
    detail['description'] = product.description
    detail['variants'] = [
        {
            'id': v.id,
            'optionName': v.option_name,
            'optionValue': v.option_value,
            'price': str(v.price) if v.price is not None else None,
            'stock': v.stock,
        }
        for v in variants
    ]
    return {'ok': True, 'product': detail}
