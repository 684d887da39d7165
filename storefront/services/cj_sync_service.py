from __future__ import annotations

import re
import time
from dataclasses import dataclass, replace
from decimal import Decimal

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import Product, ProductVariant, RawCjResponse
from storefront.services.cj_client import CjApiError, CjClient, FreightQuoteRequest
from storefront.services.cj_mapper import MappedProduct, map_cj_item, map_cj_variant
from storefront.services.pricing_service import compute_retail_from_landed, convert_to_sar, load_pricing_policy, usd_to_sar

log = structlog.get_logger(__name__)

_SLUG_STRIP_RE = re.compile(r'[^a-z0-9]+')


@dataclass(frozen=True)
class UpsertOptions:
    update_images: bool = False
    update_video: bool = False
    update_price: bool = False


@dataclass(frozen=True)
class UpsertResult:
    ok: bool
    product_id: int | None = None
    updated: tuple[str, ...] = ()
    error: str | None = None


def slugify(text: str) -> str:
    slug = _SLUG_STRIP_RE.sub('-', (text or '').lower()).strip('-')
    return slug[:80].rstrip('-') or 'product'


def ensure_unique_slug(db: Session, base: str) -> str:
    root = slugify(base)
    candidate = root
    for suffix in range(2, 52):
        if db.scalar(select(Product.id).where(Product.slug == candidate)) is None:
            return candidate
        candidate = f'{root}-{suffix}'
    return f'{root}-{int(time.time() * 1000)}'


def _money(value: float | None) -> Decimal:
    if value is None:
        return Decimal('0.00')
    return max(Decimal('0.00'), Decimal(str(round(float(value), 2))))


def _replace_variants(db: Session, product_id: int, mapped: MappedProduct) -> None:
    db.execute(delete(ProductVariant).where(ProductVariant.product_id == product_id))
    for variant in mapped.variants:
        if not (variant.cj_sku or variant.cj_variant_id or variant.option_value):
            continue
        db.add(
            ProductVariant(
                product_id=product_id,
                option_name='Size',
                option_value=variant.option_value or '-',
                cj_sku=variant.cj_sku,
                cj_variant_id=variant.cj_variant_id,
                price=_money(variant.price) if variant.price is not None else None,
                stock=max(0, variant.stock or 0),
                weight_grams=variant.weight_grams,
            )
        )


def _write_product(db: Session, mapped: MappedProduct, options: UpsertOptions, retail_price: float | None) -> tuple[int, list[str]]:
    product = db.scalar(select(Product).where(Product.cj_product_id == mapped.cj_product_id))
    price = _money(retail_price if retail_price is not None else mapped.min_variant_price)
    updated: list[str] = []

    if product is None:
        product = Product(
            title=mapped.title,
            slug=ensure_unique_slug(db, mapped.title),
            description=mapped.description,
            price=price,
            stock=mapped.total_stock,
            images=list(mapped.images),
            video_url=mapped.video_url,
            category=mapped.category,
            cj_product_id=mapped.cj_product_id,
            is_active=True,
        )
        db.add(product)
        db.flush()
        updated.append('product')
    else:
        product.title = mapped.title
        if mapped.category:
            product.category = mapped.category
        if mapped.variants:
            product.stock = mapped.total_stock
        updated.append('product')
        if options.update_images:
            product.images = list(mapped.images)
            updated.append('images')
        if options.update_video:
            product.video_url = mapped.video_url
            updated.append('video')
        if options.update_price:
            product.price = price
            updated.append('price')

    if mapped.variants:
        _replace_variants(db, product.id, mapped)
        updated.append('variants')
    db.flush()
    return product.id, updated


def persist_raw_payload(db: Session, product_id: int | None, raw) -> bool:
    payload = raw if isinstance(raw, dict) else {'items': raw}
    try:
        with db.begin_nested():
            db.add(RawCjResponse(product_id=product_id, source='cj', payload=payload))
    except SQLAlchemyError as exc:
        log.warning('cj.raw_payload.persist_failed', product_id=product_id, error=str(exc))
        return False
    return True


def upsert_product_from_cj(
    db: Session,
    mapped: MappedProduct,
    options: UpsertOptions | None = None,
    *,
    raw=None,
    retail_price: float | None = None,
) -> UpsertResult:
    """Insert or refresh the catalog row for one supplier product.

    New rows always take the mapped images and video. Existing rows only get
    them (and a new price) when the matching option is set, so manual edits in
    the admin survive a resync. Variants are replaced when the payload has any.
    The caller owns the commit.
    """
    options = options or UpsertOptions()
    product_id = None
    updated: list[str] = []
    for attempt in range(2):
        try:
            with db.begin_nested():
                product_id, updated = _write_product(db, mapped, options, retail_price)
            break
        except IntegrityError as exc:
            # Two concurrent inserts can pick the same slug; the second attempt re-reads.
            if attempt == 1:
                log.warning('cj.upsert.failed', pid=mapped.cj_product_id, error=str(exc.orig))
                return UpsertResult(ok=False, error=f'upsert failed: {exc.orig}')
        except SQLAlchemyError as exc:
            log.warning('cj.upsert.failed', pid=mapped.cj_product_id, error=str(exc))
            return UpsertResult(ok=False, error=f'upsert failed: {exc}')

    if raw is not None:
        persist_raw_payload(db, product_id, raw)

    log.info('cj.upsert.ok', pid=mapped.cj_product_id, product_id=product_id, updated=updated)
    return UpsertResult(ok=True, product_id=product_id, updated=tuple(updated))


def quote_retail_price(db: Session, client: CjClient, mapped: MappedProduct, country_code: str = 'SA') -> float:
    policy = load_pricing_policy(db)
    shipping_sar = 0.0
    cheapest_sku = next((v.cj_sku for v in sorted(mapped.variants, key=lambda v: v.price or 0) if v.cj_sku), None)
    try:
        options = client.freight_calculate(
            FreightQuoteRequest(country_code=country_code, pid=mapped.cj_product_id, sku=cheapest_sku)
        )
    except CjApiError as exc:
        log.warning('cj.freight.failed', pid=mapped.cj_product_id, error=str(exc))
        options = []
    if options:
        shipping_sar = convert_to_sar(options[0]['price'], options[0]['currency'])

    landed = usd_to_sar(max(0.0, mapped.min_variant_price or 0.0)) + shipping_sar + policy.handling_sar
    retail = compute_retail_from_landed(landed, policy.margin, policy.round_to, policy.endings)
    return max(retail, policy.floor_sar)


def fetch_mapped_product(client: CjClient, pid: str) -> tuple[MappedProduct | None, dict | None]:
    raw = client.query_product(pid)
    mapped = map_cj_item(raw)
    if mapped is None or mapped.variants:
        return mapped, raw

    raw_variants = client.list_variants(pid)
    variants = [v for v in (map_cj_variant(r, mapped.price) for r in raw_variants) if v is not None]
    if variants:
        mapped = replace(mapped, variants=variants)
    return mapped, raw


def sync_product_by_pid(db: Session, client: CjClient, pid: str, options: UpsertOptions | None = None) -> UpsertResult:
    options = options or UpsertOptions()
    pid = (pid or '').strip()
    if not pid:
        return UpsertResult(ok=False, error='pid is required')
    try:
        mapped, raw = fetch_mapped_product(client, pid)
    except CjApiError as exc:
        log.warning('cj.sync.fetch_failed', pid=pid, error=str(exc))
        return UpsertResult(ok=False, error=str(exc))
    if mapped is None:
        return UpsertResult(ok=False, error=f'CJ product {pid} not found or missing required fields')

    retail_price = quote_retail_price(db, client, mapped) if options.update_price else None
    return upsert_product_from_cj(db, mapped, options, raw=raw, retail_price=retail_price)


@dataclass(frozen=True)
class ResyncSummary:
    total: int
    updated: int
    failed: int
    results: list[dict]


def resync_cj_products(
    db: Session, client: CjClient, limit: int = 100, options: UpsertOptions | None = None
) -> ResyncSummary:
    """Refresh stock and variants of CJ-linked products from the supplier.

    Products synced longest ago go first, so repeated bounded runs walk the
    whole catalog. Each product is committed on its own; one failure does not
    stop the rest.
    """
    limit = max(1, min(limit, 500))
    rows = db.execute(
        select(Product.id, Product.title, Product.cj_product_id)
        .where(Product.cj_product_id.is_not(None))
        .order_by(Product.updated_at.asc(), Product.id.asc())
        .limit(limit)
    ).all()

    results: list[dict] = []
    for product_id, title, pid in rows:
        try:
            result = sync_product_by_pid(db, client, pid, options)
        except CjApiError as exc:
            result = UpsertResult(ok=False, error=str(exc))
        if result.ok:
            db.commit()
        else:
            db.rollback()
            log.warning('cj.resync.failed', product_id=product_id, pid=pid, error=result.error)
        results.append(
            {
                'id': product_id,
                'title': title,
                'cjProductId': pid,
                'ok': result.ok,
                'updated': list(result.updated),
                'error': result.error,
            }
        )

    updated = sum(1 for r in results if r['ok'])
    log.info('cj.resync.done', total=len(results), updated=updated)
    return ResyncSummary(total=len(results), updated=updated, failed=len(results) - updated, results=results)
