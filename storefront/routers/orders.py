from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.auth import Principal, require_admin
from storefront.db import get_db
from storefront.dependencies import get_client_ip, require_tables
from storefront.models import Order, OrderStatus
from storefront.schemas import BatchBody, FulfillBody, OrderStatusBody
from storefront.services.audit_service import log_audit
from storefront.services.cj_client import CjClient
from storefront.services.cj_fulfillment_service import (
    list_pending_cj_orders,
    maybe_create_cj_order_for_order_id,
    release_cj_claim,
    retry_failed_cj_orders,
)
from storefront.services.cj_tracking_service import list_orders_awaiting_tracking, sync_all_pending_tracking
from storefront.services.provider_factory import get_cj_client

router = APIRouter(prefix='/api/admin/orders', tags=['orders'], dependencies=[Depends(require_tables('orders', 'order_items'))])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _order_dict(order: Order) -> dict:
    return {
        'id': order.id,
        'orderNumber': order.order_number,
        'email': order.email,
        'totalAmount': str(order.total_amount),
        'status': order.status.value,
        'shippingStatus': order.shipping_status,
        'cjOrderNo': order.cj_order_no,
        'trackingNumber': order.tracking_number,
        'carrier': order.carrier,
        'shippedAt': _iso(order.shipped_at),
        'deliveredAt': _iso(order.delivered_at),
        'createdAt': _iso(order.created_at),
    }


@router.get('')
def orders_index(
    status: OrderStatus | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
):
    stmt = select(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(limit, 200)))
    if status is not None:
        stmt = stmt.where(Order.status == status)
    return {'ok': True, 'orders': [_order_dict(order) for order in db.scalars(stmt)]}


@router.post('/{order_id}/status')
def update_order_status(
    order_id: int,
    body: OrderStatusBody,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    order = db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail='Order not found')
    previous = order.status
    order.status = body.status
    log_audit(
        db,
        actor_email=principal.email,
        action='ORDER_STATUS_UPDATED',
        target=str(order_id),
        ip=get_client_ip(request),
        metadata={'from': previous.value, 'to': body.status.value},
    )
    db.commit()
    return {'ok': True, 'order': _order_dict(order)}


@router.post('/{order_id}/fulfill-cj')
def fulfill_order(
    order_id: int,
    request: Request,
    body: FulfillBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    principal: Principal = Depends(require_admin),
):
    shipping = body.shipping.model_dump() if body and body.shipping else None
    result = maybe_create_cj_order_for_order_id(db, client, order_id, shipping)
    log_audit(
        db,
        actor_email=principal.email,
        action='ORDER_FULFILL_CJ',
        target=str(order_id),
        ip=get_client_ip(request),
        metadata={'ok': result.ok, 'reason': result.reason, 'cjOrderNo': result.cj_order_no},
    )
    db.commit()
    if not result.ok:
        status_code = 404 if result.reason == 'Order not found' else 502
        return JSONResponse(status_code=status_code, content={'ok': False, 'reason': result.reason})
    return {'ok': True, 'cjOrderNo': result.cj_order_no, 'alreadyPlaced': result.already_placed}


@router.post('/{order_id}/release-cj-claim')
def release_order_claim(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    order = db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail='Order not found')
    released = release_cj_claim(db, order_id)
    log_audit(
        db,
        actor_email=principal.email,
        action='ORDER_CJ_CLAIM_RELEASED',
        target=str(order_id),
        ip=get_client_ip(request),
        metadata={'released': released},
    )
    db.commit()
    db.refresh(order)
    return {'ok': True, 'released': released, 'order': _order_dict(order)}


@router.get('/cj-retry')
def pending_cj_orders(limit: int = 100, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    orders = list_pending_cj_orders(db, limit)
    return {'ok': True, 'count': len(orders), 'orders': [_order_dict(order) for order in orders]}


@router.post('/cj-retry')
def retry_cj_orders(
    request: Request,
    body: BatchBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    principal: Principal = Depends(require_admin),
):
    body = body or BatchBody()
    summary = retry_failed_cj_orders(db, client, body.limit)
    log_audit(
        db,
        actor_email=principal.email,
        action='ORDER_CJ_RETRY',
        ip=get_client_ip(request),
        metadata={'total': summary.total, 'successful': summary.successful, 'failed': summary.failed},
    )
    db.commit()
    return {
        'ok': True,
        'total': summary.total,
        'successful': summary.successful,
        'failed': summary.failed,
        'results': summary.results,
    }


@router.get('/tracking-sync')
def orders_awaiting_tracking(limit: int = 50, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    orders = list_orders_awaiting_tracking(db, max(1, min(limit, 500)))
    return {'ok': True, 'count': len(orders), 'orders': [_order_dict(order) for order in orders]}


@router.post('/tracking-sync')
def run_tracking_sync(
    body: BatchBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    _: Principal = Depends(require_admin),
):
    body = body or BatchBody(limit=50)
    summary = sync_all_pending_tracking(db, client, body.limit)
    return {
        'ok': True,
        'total': summary.total,
        'successful': summary.successful,
        'failed': summary.failed,
        'results': [
            {
                'orderId': r.order_id,
                'orderNumber': r.order_number,
                'cjOrderNo': r.cj_order_no,
                'updated': r.updated,
                'changes': r.changes,
                'trackingNumber': r.tracking_number,
                'carrier': r.carrier,
                'status': r.status,
                'error': r.error,
            }
            for r in summary.results
        ],
    }
