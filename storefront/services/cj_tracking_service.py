from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import Order, OrderStatus
from storefront.services.cj_client import CjApiError, CjClient

log = structlog.get_logger(__name__)

CJ_STATUS_MAP = {
    'CREATED': 'processing',
    'PENDING': 'processing',
    'PROCESSING': 'processing',
    'SHIPPED': 'shipped',
    'IN_TRANSIT': 'in_transit',
    'DELIVERED': 'delivered',
    'CANCELLED': 'cancelled',
    'REFUNDED': 'refunded',
}

SHIPPING_STATUS_RANK = {
    'pending': 0,
    'placing': 1,
    'awaiting_supplier': 1,
    'created': 2,
    'processing': 3,
    'shipped': 4,
    'in_transit': 5,
    'delivered': 6,
}
TERMINAL_SHIPPING_STATUSES = {'delivered', 'cancelled', 'refunded'}

ORDER_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}
TERMINAL_ORDER_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

_ORDER_STATUS_FOR_SHIPPING = {
    'created': OrderStatus.PROCESSING,
    'processing': OrderStatus.PROCESSING,
    'shipped': OrderStatus.SHIPPED,
    'in_transit': OrderStatus.SHIPPED,
    'delivered': OrderStatus.DELIVERED,
    'cancelled': OrderStatus.CANCELLED,
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class TrackingUpdate:
    tracking_number: str | None = None
    carrier: str | None = None
    shipping_status: str | None = None
    cj_order_no: str | None = None


@dataclass
class TrackingSyncResult:
    order_id: int
    order_number: str
    cj_order_no: str
    updated: bool = False
    changes: list[str] = field(default_factory=list)
    tracking_number: str | None = None
    carrier: str | None = None
    status: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class TrackingSyncSummary:
    total: int
    successful: int
    failed: int
    results: list[TrackingSyncResult]


@dataclass(frozen=True)
class PersistResult:
    ok: bool
    reason: str | None = None
    order_id: int | None = None
    changes: tuple[str, ...] = ()


def normalize_shipping_status(raw) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    mapped = CJ_STATUS_MAP.get(text.upper().replace(' ', '_'))
    if mapped:
        return mapped
    return text.lower().replace(' ', '_')


def advance_order_status(order: Order, target: OrderStatus) -> bool:
    """Move ``order.status`` to ``target`` only if that is a step forward."""
    current = order.status
    if current == target or current in TERMINAL_ORDER_STATUSES:
        return False
    if target == OrderStatus.CANCELLED:
        order.status = target
        return True
    if ORDER_STATUS_RANK.get(target, -1) <= ORDER_STATUS_RANK.get(current, -1):
        return False
    order.status = target
    return True


def _shipping_status_moves_forward(current: str | None, new: str) -> bool:
    if new == current:
        return False
    if current in TERMINAL_SHIPPING_STATUSES:
        return False
    if new in TERMINAL_SHIPPING_STATUSES:
        return True
    if current in SHIPPING_STATUS_RANK and new in SHIPPING_STATUS_RANK:
        return SHIPPING_STATUS_RANK[new] > SHIPPING_STATUS_RANK[current]
    return True


def apply_tracking_update(order: Order, update: TrackingUpdate, now: datetime | None = None) -> list[str]:
    """Apply supplier tracking data to ``order`` and return the changed fields.

    Never clears a field and never moves a status backwards, so a replayed or
    late webhook cannot undo newer information.
    """
    now = now or _now()
    changes: list[str] = []

    if update.tracking_number and update.tracking_number != order.tracking_number:
        order.tracking_number = update.tracking_number
        changes.append('tracking_number')
    if update.carrier and update.carrier != order.carrier:
        order.carrier = update.carrier
        changes.append('carrier')
    if update.cj_order_no and not order.cj_order_no:
        order.cj_order_no = update.cj_order_no
        changes.append('cj_order_no')

    status = update.shipping_status
    if status and _shipping_status_moves_forward(order.shipping_status, status):
        order.shipping_status = status
        changes.append('shipping_status')

    if status in ('shipped', 'in_transit', 'delivered') and order.shipped_at is None:
        order.shipped_at = now
        changes.append('shipped_at')
    if status == 'delivered' and order.delivered_at is None:
        order.delivered_at = now
        changes.append('delivered_at')

    target = _ORDER_STATUS_FOR_SHIPPING.get(status or '')
    if target is not None and advance_order_status(order, target):
        changes.append('status')
    return changes


def _tracking_from_supplier(parsed: dict) -> TrackingUpdate:
    data = parsed.get('data') if isinstance(parsed, dict) and 'data' in parsed else parsed
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        data = {}
    return TrackingUpdate(
        tracking_number=data.get('trackNumber') or data.get('tracking_number') or data.get('trackingNumber'),
        carrier=data.get('logisticName') or data.get('carrier') or data.get('logistics'),
        shipping_status=normalize_shipping_status(data.get('orderStatus') or data.get('status')),
    )


def sync_order_tracking(db: Session, client: CjClient, order_id: int) -> TrackingSyncResult | None:
    order = db.get(Order, order_id)
    if order is None or not order.cj_order_no:
        return None

    result = TrackingSyncResult(
        order_id=order.id,
        order_number=order.order_number or f'#{order.id}',
        cj_order_no=order.cj_order_no,
    )
    try:
        update = _tracking_from_supplier(client.get_tracking_info(order.cj_order_no))
    except CjApiError as exc:
        log.warning('cj.tracking.fetch_failed', order_id=order.id, error=str(exc))
        result.error = str(exc)
        return result

    changes = apply_tracking_update(order, update)
    if changes:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            log.warning('cj.tracking.save_failed', order_id=order.id, error=str(exc))
            result.error = str(exc)
            return result
        result.updated = True
        result.changes = changes

    result.tracking_number = order.tracking_number
    result.carrier = order.carrier
    result.status = order.shipping_status
    return result


def list_orders_awaiting_tracking(db: Session, limit: int = 50) -> list[Order]:
    return list(
        db.scalars(
            select(Order)
            .where(
                Order.cj_order_no.is_not(None),
                Order.status.not_in([OrderStatus.DELIVERED, OrderStatus.CANCELLED]),
            )
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(limit)
        )
    )


def sync_all_pending_tracking(db: Session, client: CjClient, limit: int = 50) -> TrackingSyncSummary:
    limit = max(1, min(limit, 500))
    pending = [
        (order.id, order.order_number or f'#{order.id}', order.cj_order_no)
        for order in list_orders_awaiting_tracking(db, limit)
    ]
    results: list[TrackingSyncResult] = []
    for order_id, order_number, cj_order_no in pending:
        try:
            result = sync_order_tracking(db, client, order_id)
        except Exception as exc:
            db.rollback()
            log.exception('cj.tracking.order_failed', order_id=order_id)
            result = TrackingSyncResult(
                order_id=order_id,
                order_number=order_number,
                cj_order_no=cj_order_no,
                error=str(exc) or type(exc).__name__,
            )
        if result is not None:
            results.append(result)

    failed = sum(1 for r in results if r.error)
    log.info('cj.tracking.batch_done', total=len(pending), failed=failed)
    return TrackingSyncSummary(total=len(pending), successful=len(results) - failed, failed=failed, results=results)


def _tracking_from_webhook(payload: dict) -> tuple[int | None, TrackingUpdate]:
    data = payload.get('data') if isinstance(payload.get('data'), dict) else payload
    raw_id = data.get('orderId') or data.get('order_id') or data.get('shopixoOrderId')
    try:
        order_id = int(raw_id) if raw_id is not None else None
    except (TypeError, ValueError):
        order_id = None

    order_no = data.get('orderNo') or data.get('order_no') or data.get('cjOrderNo')
    return order_id, TrackingUpdate(
        tracking_number=data.get('trackingNo') or data.get('tracking_number') or data.get('tracking'),
        carrier=data.get('carrier') or data.get('lastmile') or data.get('express'),
        shipping_status=normalize_shipping_status(data.get('status') or data.get('event') or payload.get('event')),
        cj_order_no=str(order_no) if order_no else None,
    )


def persist_cj_tracking(db: Session, payload) -> PersistResult:
    if not isinstance(payload, dict):
        return PersistResult(ok=False, reason='payload is not an object')

    order_id, update = _tracking_from_webhook(payload)
    order = None
    if order_id:
        order = db.get(Order, order_id)
    if order is None and update.cj_order_no:
        order = db.scalar(select(Order).where(Order.cj_order_no == update.cj_order_no))
    if order is None:
        if order_id is None and update.cj_order_no is None:
            return PersistResult(ok=False, reason='no identifiers found')
        return PersistResult(ok=False, reason='order not found')

    if update.cj_order_no and order.cj_order_no is None:
        holder = db.scalar(select(Order.id).where(Order.cj_order_no == update.cj_order_no))
        if holder is not None and holder != order.id:
            update = TrackingUpdate(
                tracking_number=update.tracking_number,
                carrier=update.carrier,
                shipping_status=update.shipping_status,
            )

    changes = apply_tracking_update(order, update)
    if changes:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            log.warning('cj.webhook.persist_failed', order_id=order.id, error=str(exc))
            return PersistResult(ok=False, reason=str(exc), order_id=order.id)
    return PersistResult(ok=True, order_id=order.id, changes=tuple(changes))


def verify_webhook_signature(raw: bytes, signature: str | None, secret: str | None) -> bool:
    """HMAC-SHA256 hex over the raw body, compared in constant time."""
    if not signature or not secret:
        return False
    candidate = signature.strip()
    if candidate.lower().startswith('sha256='):
        candidate = candidate[len('sha256='):]
    try:
        provided = bytes.fromhex(candidate)
    except ValueError:
        return False
    expected = hmac.new(secret.encode('utf-8'), raw, hashlib.sha256).digest()
    if len(provided) != len(expected):
        return False
    return hmac.compare_digest(provided, expected)
