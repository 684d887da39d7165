from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from storefront.models import Order, OrderItem, OrderStatus, ProductVariant
from storefront.services.cj_client import CjApiError, CjClient
from storefront.services.cj_tracking_service import advance_order_status
from storefront.services.settings_service import is_kill_switch_on

log = structlog.get_logger(__name__)

ORDER_NUMBER_PREFIX = 'SF'
DEFAULT_LOGISTIC_NAME = 'CJPacket Ordinary'
DEFAULT_FROM_COUNTRY = 'CN'

CLAIMABLE_SHIPPING_STATUSES = ('pending', 'awaiting_supplier')
RETRYABLE_SHIPPING_STATUSES = ('pending', 'awaiting_supplier')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class ShippingInfo:
    name: str | None = None
    phone: str | None = None
    country_code: str | None = None
    country: str | None = None
    province: str | None = None
    city: str | None = None
    address1: str | None = None
    address2: str | None = None
    zip_code: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ShippingInfo':
        return cls(
            name=data.get('name') or data.get('full_name'),
            phone=data.get('phone'),
            country_code=data.get('country_code') or data.get('countryCode'),
            country=data.get('country'),
            province=data.get('province') or data.get('state'),
            city=data.get('city'),
            address1=data.get('address1') or data.get('line1'),
            address2=data.get('address2') or data.get('line2'),
            zip_code=data.get('zip') or data.get('postal_code') or data.get('postalCode'),
        )

    @classmethod
    def from_order(cls, order: Order) -> 'ShippingInfo':
        return cls(
            name=order.shipping_name,
            phone=order.shipping_phone,
            country_code=order.shipping_country_code,
            province=order.shipping_province,
            city=order.shipping_city,
            address1=order.shipping_address1,
            address2=order.shipping_address2,
            zip_code=order.shipping_zip,
        )

    def missing_fields(self) -> list[str]:
        required = {
            'name': self.name,
            'country_code': self.country_code,
            'city': self.city,
            'address1': self.address1,
        }
        return [key for key, value in required.items() if not (value or '').strip()]


@dataclass(frozen=True)
class FulfillmentResult:
    ok: bool
    reason: str | None = None
    cj_order_no: str | None = None
    already_placed: bool = False
    info: dict | None = None


@dataclass(frozen=True)
class RetrySummary:
    total: int
    successful: int
    failed: int
    results: list[dict] = field(default_factory=list)


def order_number_for(order: Order) -> str:
    # Stable per order so the supplier can reject a duplicate placement.
    return f'{ORDER_NUMBER_PREFIX}-{order.id}'


def _resolve_variant_id(db: Session, item: OrderItem) -> str | None:
    if item.variant_id is not None:
        variant = db.get(ProductVariant, item.variant_id)
        if variant is not None and variant.product_id == item.product_id and variant.cj_variant_id:
            return variant.cj_variant_id
        return None

    candidates = db.scalars(
        select(ProductVariant.cj_variant_id).where(
            ProductVariant.product_id == item.product_id,
            ProductVariant.cj_variant_id.is_not(None),
        )
    ).all()
    if len(candidates) == 1:
        return candidates[0]
    return None


def _build_payload(order: Order, lines: list[tuple[str, int]], shipping: ShippingInfo) -> dict:
    return {
        'orderNumber': order_number_for(order),
        'shippingZip': shipping.zip_code or '',
        'shippingCountryCode': (shipping.country_code or '').upper(),
        'shippingCountry': shipping.country or (shipping.country_code or '').upper(),
        'shippingProvince': shipping.province or '',
        'shippingCity': shipping.city or '',
        'shippingAddress': shipping.address1 or '',
        'shippingAddress2': shipping.address2 or '',
        'shippingCustomerName': shipping.name or '',
        'shippingPhone': shipping.phone or '',
        'remark': f'Order {order.order_number or order.id}',
        'logisticName': DEFAULT_LOGISTIC_NAME,
        'fromCountryCode': DEFAULT_FROM_COUNTRY,
        'products': [{'vid': vid, 'quantity': quantity} for vid, quantity in lines],
    }


def _supplier_order_no(response: dict) -> str | None:
    data = response.get('data') if isinstance(response.get('data'), dict) else {}
    for source in (data, response):
        for key in ('orderId', 'orderNo', 'order_no', 'orderNum', 'id'):
            value = source.get(key)
            if value:
                return str(value)
    return None


def _claim(db: Session, order_id: int) -> bool:
    claimed = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.cj_order_no.is_(None),
            or_(Order.shipping_status.is_(None), Order.shipping_status.in_(CLAIMABLE_SHIPPING_STATUSES)),
        )
        .values(shipping_status='placing')
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    return claimed == 1


def _release(db: Session, order: Order) -> None:
    order.shipping_status = 'awaiting_supplier'
    db.commit()


def release_cj_claim(db: Session, order_id: int) -> bool:
    """Hand a stuck ``placing`` claim back to the retry queue.

    Only an order that never received a supplier order number is released, so
    this cannot cause a second placement of an order CJ already accepted.
    """
    released = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.cj_order_no.is_(None), Order.shipping_status == 'placing')
        .values(shipping_status='awaiting_supplier')
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if released:
        log.info('cj.fulfill.claim_released', order_id=order_id)
    return released == 1


def maybe_create_cj_order_for_order_id(
    db: Session,
    client: CjClient,
    order_id: int,
    shipping: ShippingInfo | dict | None = None,
) -> FulfillmentResult:
    """Place one supplier order covering every line of a local order.

    Fails closed: any unmapped line or a missing address means nothing is
    placed. An order that already has a supplier order number returns
    ``already_placed`` without calling out, and the row is claimed before the
    call so concurrent invocations cannot both place it.
    """
    if is_kill_switch_on(db):
        return FulfillmentResult(ok=False, reason='disabled')

    order = db.get(Order, order_id)
    if order is None:
        return FulfillmentResult(ok=False, reason='Order not found')
    if order.cj_order_no:
        return FulfillmentResult(ok=True, cj_order_no=order.cj_order_no, already_placed=True)
    if order.status == OrderStatus.CANCELLED:
        return FulfillmentResult(ok=False, reason='Order is cancelled')
    if not client.is_configured():
        return FulfillmentResult(ok=False, reason='CJ API not configured')

    items = db.scalars(select(OrderItem).where(OrderItem.order_id == order.id).order_by(OrderItem.id)).all()
    if not items:
        return FulfillmentResult(ok=False, reason='No order items')

    lines: list[tuple[str, int]] = []
    unmapped: list[str] = []
    for item in items:
        vid = _resolve_variant_id(db, item)
        if vid is None:
            unmapped.append(f'item {item.id} (product {item.product_id})')
        else:
            lines.append((vid, item.quantity))
    if unmapped:
        return FulfillmentResult(ok=False, reason='unmapped items: ' + ', '.join(unmapped))

    if isinstance(shipping, dict):
        shipping = ShippingInfo.from_dict(shipping)
    recipient = shipping or ShippingInfo.from_order(order)
    missing = recipient.missing_fields()
    if missing:
        return FulfillmentResult(ok=False, reason='Missing recipient address: ' + ', '.join(missing))

    if not _claim(db, order.id):
        db.refresh(order)
        if order.cj_order_no:
            return FulfillmentResult(ok=True, cj_order_no=order.cj_order_no, already_placed=True)
        return FulfillmentResult(ok=False, reason='in progress')
    db.refresh(order)

    payload = _build_payload(order, lines, recipient)
    try:
        response = client.create_order(payload)
    except CjApiError as exc:
        log.warning('cj.fulfill.failed', order_id=order.id, error=str(exc))
        _release(db, order)
        return FulfillmentResult(ok=False, reason=str(exc))
    except Exception:
        log.exception('cj.fulfill.crashed', order_id=order.id)
        _release(db, order)
        raise

    cj_order_no = _supplier_order_no(response)
    if not cj_order_no:
        log.warning('cj.fulfill.no_order_no', order_id=order.id)
        _release(db, order)
        return FulfillmentResult(ok=False, reason='CJ response did not include an order number', info=response)

    order.cj_order_no = cj_order_no
    order.shipping_status = 'created'
    advance_order_status(order, OrderStatus.PROCESSING)
    db.commit()
    log.info('cj.fulfill.placed', order_id=order.id, cj_order_no=cj_order_no)
    return FulfillmentResult(ok=True, cj_order_no=cj_order_no, info=response)


def _retry_candidates(limit: int):
    return (
        select(Order)
        .where(
            Order.status == OrderStatus.PAID,
            Order.cj_order_no.is_(None),
            or_(Order.shipping_status.is_(None), Order.shipping_status.in_(RETRYABLE_SHIPPING_STATUSES)),
        )
        .order_by(Order.created_at.asc(), Order.id.asc())
        .limit(limit)
    )


def list_pending_cj_orders(db: Session, limit: int = 100) -> list[Order]:
    return list(db.scalars(_retry_candidates(max(1, min(limit, 500)))))


def retry_failed_cj_orders(db: Session, client: CjClient, limit: int = 20) -> RetrySummary:
    order_ids = [order.id for order in list_pending_cj_orders(db, limit)]
    results = []
    for order_id in order_ids:
        outcome = maybe_create_cj_order_for_order_id(db, client, order_id)
        results.append(
            {
                'orderId': order_id,
                'ok': outcome.ok,
                'cjOrderNo': outcome.cj_order_no,
                'reason': outcome.reason,
            }
        )
    successful = sum(1 for r in results if r['ok'])
    log.info('cj.fulfill.retry_done', total=len(results), successful=successful)
    return RetrySummary(total=len(results), successful=successful, failed=len(results) - successful, results=results)
