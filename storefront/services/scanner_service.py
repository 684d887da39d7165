from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.models import Product

log = structlog.get_logger(__name__)

SAFETY_BUFFER = 5
LOW_STOCK_THRESHOLD = 10

SCANNER_JOB_TYPES = ('all', 'sync', 'inventory')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def run_daily_sync(db: Session) -> dict:
    """Hide supplier products whose stock minus the safety buffer is gone."""
    products = db.scalars(select(Product).where(Product.cj_product_id.is_not(None))).all()
    hidden = []
    for product in products:
        display_stock = max(0, (product.stock or 0) - SAFETY_BUFFER)
        if display_stock <= 0 and product.is_active:
            product.is_active = False
            hidden.append(product.id)
    db.commit()
    if hidden:
        log.info('scanner.daily_sync.hidden', product_ids=hidden)
    return {'synced': len(products), 'changes': len(hidden), 'autoHidden': len(hidden)}


def run_inventory_check(db: Session) -> dict:
    products = db.scalars(select(Product).where(Product.is_active.is_(True))).all()
    low = [p.id for p in products if 0 < (p.stock or 0) <= LOW_STOCK_THRESHOLD]
    out = [p.id for p in products if (p.stock or 0) == 0]
    if low or out:
        log.warning('scanner.stock_alert', low_stock=len(low), out_of_stock=len(out))
    return {'checked': len(products), 'lowStock': len(low), 'outOfStock': len(out)}


def run_scanner_checks(db: Session, job_type: str = 'all') -> dict:
    results: dict = {'timestamp': _now().isoformat(), 'jobs': []}
    if job_type in ('all', 'sync'):
        results['jobs'].append({'name': 'daily_sync', **run_daily_sync(db)})
    if job_type in ('all', 'inventory'):
        results['jobs'].append({'name': 'inventory_check', **run_inventory_check(db)})
    return results
