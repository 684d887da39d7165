"""Admin job lifecycle and the product finder.

Jobs only advance while something calls a step endpoint. Each finder step
fetches one search page, records unseen products as job items and moves the
cursor. The cursor write is guarded by ``Job.version`` so two overlapping
steps cannot both apply the same page; the loser rolls back. Cancellation is
checked before and after every supplier call.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import Job, JobItem, JobItemStatus, JobKind, JobStatus
from storefront.services.cj_client import CjClient
from storefront.services.cj_mapper import map_cj_item
from storefront.services.cj_sync_service import UpsertOptions, sync_product_by_pid
from storefront.services.pricing_service import PricingPolicy, calculate_retail_sar, usd_to_sar
from storefront.services.scanner_service import SCANNER_JOB_TYPES, run_scanner_checks

log = structlog.get_logger(__name__)

VALID_TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.PENDING: [JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILURE],
    JobStatus.RUNNING: [JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED],
    JobStatus.SUCCESS: [],
    JobStatus.FAILURE: [],
    JobStatus.CANCELLED: [],
}
TERMINAL_STATUSES = {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED}

MAX_STEPS_PER_CALL = 200
RUN_ALL_SAFETY_CAP = 2000

# Package assumed for a candidate until the real variant data is imported.
DEFAULT_PACKAGE = {'actual_kg': 0.3, 'length_cm': 25.0, 'width_cm': 20.0, 'height_cm': 3.0}


class InvalidJobTransition(Exception):
    def __init__(self, current: JobStatus, attempted: JobStatus) -> None:
        self.current = current
        self.attempted = attempted
        allowed = ', '.join(s.value for s in VALID_TRANSITIONS[current]) or 'none (terminal)'
        super().__init__(f"Cannot transition job from '{current.value}' to '{attempted.value}'. Allowed: {allowed}")


class JobStepError(RuntimeError):
    def __init__(self, job_id: int, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


@dataclass(frozen=True)
class StepResult:
    added: int
    done: bool
    conflict: bool = False
    cancelled: bool = False


@dataclass(frozen=True)
class RunSummary:
    done: bool
    steps_run: int
    candidates_added_total: int


@dataclass(frozen=True)
class ImportSummary:
    total: int
    imported: int
    failed: int
    results: list[dict] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clamp_int(value, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def _float_or_none(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def build_finder_params(body: dict) -> dict:
    """Normalise a finder request body into stored job params.

    Raises ValueError when no usable keyword is given.
    """
    raw_keywords = body.get('keywords')
    if isinstance(raw_keywords, str):
        raw_keywords = raw_keywords.split(',')
    keywords: list[str] = []
    for kw in raw_keywords or []:
        text = str(kw).strip()
        if text and text not in keywords:
            keywords.append(text)
    if not keywords:
        raise ValueError('At least one keyword is required')

    filters = body.get('filters') if isinstance(body.get('filters'), dict) else {}
    pricing = body.get('pricing') if isinstance(body.get('pricing'), dict) else {}
    margin = _float_or_none(pricing.get('margin'))
    handling = _float_or_none(pricing.get('handlingSar'))
    currency = str(pricing.get('cjCurrency') or 'USD').upper()

    return {
        'keywords': keywords,
        'targetQuantity': _clamp_int(body.get('targetQuantity'), 1, 2000, 50),
        'pageSize': _clamp_int(body.get('pageSize'), 1, 50, 20),
        'maxPagesPerKeyword': _clamp_int(body.get('maxPagesPerKeyword'), 1, 40, 5),
        'filters': {
            'minPrice': _float_or_none(filters.get('minPrice')),
            'maxPrice': _float_or_none(filters.get('maxPrice')),
            'minStock': _float_or_none(filters.get('minStock')),
        },
        'pricing': {
            'margin': margin if margin is not None and 0 <= margin < 1 else 0.35,
            'handlingSar': max(0.0, handling) if handling is not None else 0.0,
            'cjCurrency': 'SAR' if currency == 'SAR' else 'USD',
        },
    }


def initial_cursor() -> dict:
    return {'kw_index': 0, 'page_num': 1, 'collected': 0}


def _transition(job: Job, target: JobStatus) -> None:
    if target not in VALID_TRANSITIONS[job.status]:
        raise InvalidJobTransition(job.status, target)
    job.status = target
    job.version += 1


def get_job(db: Session, job_id: int) -> Job | None:
    return db.get(Job, job_id)


def _require_job(db: Session, job_id: int) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise ValueError('Job not found')
    return job


def list_jobs(db: Session, limit: int = 50, kind: JobKind | None = None) -> list[Job]:
    stmt = select(Job).order_by(Job.created_at.desc(), Job.id.desc()).limit(max(1, min(limit, 200)))
    if kind is not None:
        stmt = stmt.where(Job.kind == kind)
    return list(db.scalars(stmt))


def list_job_items(db: Session, job_id: int, limit: int = 500) -> list[JobItem]:
    return list(
        db.scalars(select(JobItem).where(JobItem.job_id == job_id).order_by(JobItem.id).limit(max(1, min(limit, 2000))))
    )


def create_job(db: Session, kind: JobKind, params: dict | None = None) -> Job:
    job = Job(
        kind=kind,
        status=JobStatus.PENDING,
        params=params or {},
        cursor=initial_cursor() if kind == JobKind.FINDER else None,
        version=0,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    log.info('job.created', job_id=job.id, kind=kind.value)
    return job


def start_job(db: Session, job_id: int) -> Job:
    job = _require_job(db, job_id)
    if job.status == JobStatus.RUNNING:
        return job
    _transition(job, JobStatus.RUNNING)
    job.started_at = _now()
    db.commit()
    return job


def finish_job(
    db: Session,
    job_id: int,
    status: JobStatus,
    result: dict | None = None,
    error_text: str | None = None,
) -> Job:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f'{status.value} is not a terminal job status')
    job = _require_job(db, job_id)
    _transition(job, status)
    job.finished_at = _now()
    if result is not None:
        job.result = result
    if error_text is not None:
        job.error_text = error_text[:2000]
    db.commit()
    log.info('job.finished', job_id=job.id, status=status.value)
    return job


def cancel_job(db: Session, job_id: int) -> Job:
    job = _require_job(db, job_id)
    if job.status == JobStatus.CANCELLED:
        return job
    return finish_job(db, job_id, JobStatus.CANCELLED)


def _current_status(db: Session, job_id: int) -> JobStatus | None:
    return db.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()


def _cancelled(db: Session, job_id: int) -> bool:
    return _current_status(db, job_id) == JobStatus.CANCELLED


def _save_cursor(db: Session, job: Job, expected_version: int, cursor: dict, candidates: int) -> bool:
    result = dict(job.result or {})
    result['candidates'] = candidates
    saved = db.execute(
        update(Job)
        .where(Job.id == job.id, Job.version == expected_version, Job.status == JobStatus.RUNNING)
        .values(cursor=cursor, result=result, version=expected_version + 1)
        .execution_options(synchronize_session=False)
    ).rowcount
    if saved != 1:
        db.rollback()
        return False
    db.commit()
    db.refresh(job)
    return True


def _passes_filters(mapped, filters: dict) -> bool:
    price = mapped.min_variant_price
    min_price = filters.get('minPrice')
    max_price = filters.get('maxPrice')
    if min_price is not None and (price is None or price < min_price):
        return False
    if max_price is not None and (price is None or price > max_price):
        return False
    min_stock = filters.get('minStock')
    if min_stock is not None and mapped.variants and mapped.total_stock < min_stock:
        return False
    return True


def _candidate_result(mapped, pricing: dict, keyword: str) -> dict:
    cost = mapped.min_variant_price
    estimate = None
    if cost is not None and cost > 0:
        cost_sar = usd_to_sar(cost) if pricing.get('cjCurrency', 'USD') == 'USD' else cost
        quote = calculate_retail_sar(
            cost_sar,
            policy=PricingPolicy(margin=pricing.get('margin', 0.35), handling_sar=pricing.get('handlingSar', 0.0), floor_sar=0.0),
            **DEFAULT_PACKAGE,
        )
        estimate = {
            'supplier_cost_sar': cost_sar,
            'ddp_shipping_sar': quote.ddp_shipping_sar,
            'landed_cost_sar': quote.landed_cost_sar,
            'retail_sar': quote.retail_sar,
        }
    return {
        'keyword': keyword,
        'product': {
            'cj_product_id': mapped.cj_product_id,
            'name': mapped.title,
            'images': mapped.images,
            'video_url': mapped.video_url,
            'category': mapped.category,
            'origin_country_code': mapped.origin_country_code,
            'delivery_time_hours': mapped.delivery_time_hours,
        },
        'metrics': {'stock_sum': mapped.total_stock, 'cost': cost},
        'pricing': estimate,
    }


def _add_candidate(db: Session, job_id: int, mapped, result: dict) -> bool:
    try:
        with db.begin_nested():
            db.add(
                JobItem(
                    job_id=job_id,
                    status=JobItemStatus.SUCCESS,
                    step='candidate',
                    cj_product_id=mapped.cj_product_id,
                    cj_sku=next((v.cj_sku for v in mapped.variants if v.cj_sku), None),
                    result=result,
                )
            )
    except IntegrityError:
        return False
    return True


def _advance_finder(db: Session, client: CjClient, job: Job) -> StepResult:
    params = job.params or {}
    keywords: list[str] = params.get('keywords') or []
    target = _clamp_int(params.get('targetQuantity'), 1, 2000, 50)
    page_size = _clamp_int(params.get('pageSize'), 1, 50, 20)
    max_pages = _clamp_int(params.get('maxPagesPerKeyword'), 1, 40, 5)
    filters = params.get('filters') or {}
    pricing = params.get('pricing') or {}

    version = job.version
    cursor = dict(initial_cursor(), **(job.cursor or {}))
    collected = int(cursor['collected'])

    if collected >= target or cursor['kw_index'] >= len(keywords):
        finish_job(db, job.id, JobStatus.SUCCESS, {'candidates': collected})
        return StepResult(added=0, done=True)

    if cursor['page_num'] > max_pages:
        next_cursor = {'kw_index': cursor['kw_index'] + 1, 'page_num': 1, 'collected': collected}
        return _commit_step(db, job, version, next_cursor, 0, len(keywords), target)

    if _cancelled(db, job.id):
        return StepResult(added=0, done=True, cancelled=True)

    keyword = keywords[cursor['kw_index']]
    page = client.list_products_page(keyword=keyword, page_num=cursor['page_num'], page_size=page_size)

    if _cancelled(db, job.id):
        return StepResult(added=0, done=True, cancelled=True)

    if not page:
        next_cursor = {'kw_index': cursor['kw_index'] + 1, 'page_num': 1, 'collected': collected}
        return _commit_step(db, job, version, next_cursor, 0, len(keywords), target)

    known = set(db.scalars(select(JobItem.cj_product_id).where(JobItem.job_id == job.id)))
    added = 0
    for item in page:
        if collected + added >= target:
            break
        mapped = map_cj_item(item)
        if mapped is None or mapped.cj_product_id in known:
            continue
        known.add(mapped.cj_product_id)
        if not _passes_filters(mapped, filters):
            continue
        if _add_candidate(db, job.id, mapped, _candidate_result(mapped, pricing, keyword)):
            added += 1

    next_cursor = {'kw_index': cursor['kw_index'], 'page_num': cursor['page_num'] + 1, 'collected': collected + added}
    return _commit_step(db, job, version, next_cursor, added, len(keywords), target)


def _commit_step(db: Session, job: Job, version: int, cursor: dict, added: int, keyword_count: int, target: int) -> StepResult:
    if not _save_cursor(db, job, version, cursor, cursor['collected']):
        if _cancelled(db, job.id):
            return StepResult(added=0, done=True, cancelled=True)
        log.info('job.step.conflict', job_id=job.id, version=version)
        return StepResult(added=0, done=False, conflict=True)

    done = cursor['collected'] >= target or cursor['kw_index'] >= keyword_count
    if done:
        finish_job(db, job.id, JobStatus.SUCCESS, {'candidates': cursor['collected']})
    log.info('job.step', job_id=job.id, added=added, done=done, cursor=cursor)
    return StepResult(added=added, done=done)


def step_finder_job(db: Session, client: CjClient, job_id: int) -> StepResult:
    job = _require_job(db, job_id)
    if job.kind != JobKind.FINDER:
        raise ValueError('Job is not a finder job')
    if job.status in TERMINAL_STATUSES:
        return StepResult(added=0, done=True, cancelled=job.status == JobStatus.CANCELLED)
    if job.status == JobStatus.PENDING:
        start_job(db, job_id)

    try:
        return _advance_finder(db, client, job)
    except Exception as exc:
        db.rollback()
        message = str(exc) or exc.__class__.__name__
        log.warning('job.step.failed', job_id=job_id, error=message)
        if _current_status(db, job_id) == JobStatus.RUNNING:
            finish_job(db, job_id, JobStatus.FAILURE, error_text=message)
        raise JobStepError(job_id, message) from exc


def run_job_steps(db: Session, client: CjClient, job_id: int, mode: str = 'step', steps: int = 1) -> RunSummary:
    if mode not in ('step', 'all'):
        raise ValueError("mode must be 'step' or 'all'")
    job = _require_job(db, job_id)
    if job.kind == JobKind.SCANNER:
        _run_scanner_job(db, job)
        return RunSummary(done=True, steps_run=1, candidates_added_total=0)

    budget = RUN_ALL_SAFETY_CAP if mode == 'all' else _clamp_int(steps, 1, MAX_STEPS_PER_CALL, 1)
    steps_run = 0
    added_total = 0
    done = False
    for _ in range(budget):
        result = step_finder_job(db, client, job_id)
        steps_run += 1
        added_total += result.added
        if result.done or result.conflict:
            done = result.done
            break
    return RunSummary(done=done, steps_run=steps_run, candidates_added_total=added_total)


def import_job_items(
    db: Session,
    client: CjClient,
    job_id: int,
    item_ids: list[int] | None = None,
    options: UpsertOptions | None = None,
) -> ImportSummary:
    _require_job(db, job_id)
    stmt = select(JobItem).where(JobItem.job_id == job_id, JobItem.status == JobItemStatus.SUCCESS)
    if item_ids:
        stmt = stmt.where(JobItem.id.in_(item_ids))
    items = list(db.scalars(stmt.order_by(JobItem.id)))

    results = []
    for item in items:
        outcome = sync_product_by_pid(db, client, item.cj_product_id, options)
        merged = dict(item.result or {})
        if outcome.ok:
            item.status = JobItemStatus.IMPORTED
            item.step = 'imported'
            item.error_text = None
            merged['product_id'] = outcome.product_id
        else:
            item.status = JobItemStatus.ERROR
            item.error_text = outcome.error
        item.result = merged
        db.commit()
        results.append({'itemId': item.id, 'pid': item.cj_product_id, 'ok': outcome.ok, 'productId': outcome.product_id, 'error': outcome.error})

    imported = sum(1 for r in results if r['ok'])
    log.info('job.import_done', job_id=job_id, total=len(results), imported=imported)
    return ImportSummary(total=len(results), imported=imported, failed=len(results) - imported, results=results)


def _run_scanner_job(db: Session, job: Job) -> dict:
    if job.status in TERMINAL_STATUSES:
        return job.result or {}
    start_job(db, job.id)
    job_type = (job.params or {}).get('jobType', 'all')
    try:
        results = run_scanner_checks(db, job_type)
    except SQLAlchemyError as exc:
        db.rollback()
        finish_job(db, job.id, JobStatus.FAILURE, error_text=str(exc))
        raise JobStepError(job.id, str(exc)) from exc
    finish_job(db, job.id, JobStatus.SUCCESS, results)
    return results


def run_scanner_tick(db: Session, job_type: str = 'all', source: str = 'cron') -> tuple[Job, dict]:
    """Record and run one scanner pass as a ``scanner`` job."""
    if job_type not in SCANNER_JOB_TYPES:
        raise ValueError(f"job must be one of: {', '.join(SCANNER_JOB_TYPES)}")
    job = create_job(db, JobKind.SCANNER, {'jobType': job_type, 'source': source})
    results = _run_scanner_job(db, job)
    return job, results
