from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.auth import Principal, require_admin
from storefront.db import get_db
from storefront.dependencies import get_client_ip, get_request_id, require_tables
from storefront.models import Job, JobItem, JobKind
from storefront.schemas import JobActionBody, JobImportBody, JobRunBody
from storefront.services.audit_service import log_audit, record_error
from storefront.services.cj_client import CjClient
from storefront.services.cj_sync_service import UpsertOptions
from storefront.services.job_service import (
    InvalidJobTransition,
    JobStepError,
    build_finder_params,
    cancel_job,
    create_job,
    get_job,
    import_job_items,
    list_job_items,
    list_jobs,
    run_job_steps,
)
from storefront.services.provider_factory import get_cj_client

router = APIRouter(prefix='/api/admin', tags=['jobs'], dependencies=[Depends(require_tables('admin_jobs', 'admin_job_items'))])


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _job_dict(job: Job) -> dict:
    return {
        'id': job.id,
        'kind': job.kind.value,
        'status': job.status.value,
        'params': job.params,
        'cursor': job.cursor,
        'result': job.result,
        'errorText': job.error_text,
        'createdAt': _iso(job.created_at),
        'startedAt': _iso(job.started_at),
        'finishedAt': _iso(job.finished_at),
    }


def _item_dict(item: JobItem) -> dict:
    return {
        'id': item.id,
        'status': item.status.value,
        'step': item.step,
        'cjProductId': item.cj_product_id,
        'cjSku': item.cj_sku,
        'result': item.result,
        'errorText': item.error_text,
    }


def _job_or_404(db: Session, job_id: int) -> Job:
    job = get_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail='Job not found')
    return job


@router.post('/cj/finder/start')
def start_finder(
    request: Request,
    body: dict = Body(...),
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    try:
        params = build_finder_params(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    job = create_job(db, JobKind.FINDER, params)
    log_audit(
        db,
        actor_email=principal.email,
        action='FINDER_JOB_CREATED',
        target=str(job.id),
        ip=get_client_ip(request),
        metadata={'keywords': params['keywords'], 'targetQuantity': params['targetQuantity']},
    )
    db.commit()
    return {'ok': True, 'jobId': job.id}


@router.get('/jobs')
def jobs_index(limit: int = 50, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    return {'ok': True, 'jobs': [_job_dict(job) for job in list_jobs(db, limit)]}


@router.get('/jobs/{job_id}')
def job_detail(job_id: int, db: Session = Depends(get_db), _: Principal = Depends(require_admin)):
    job = _job_or_404(db, job_id)
    return {'ok': True, 'job': _job_dict(job), 'items': [_item_dict(item) for item in list_job_items(db, job_id)]}


@router.post('/jobs/{job_id}')
def job_action(
    job_id: int,
    body: JobActionBody,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    _job_or_404(db, job_id)
    try:
        job = cancel_job(db, job_id)
    except InvalidJobTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    log_audit(db, actor_email=principal.email, action='JOB_CANCELLED', target=str(job_id), ip=get_client_ip(request))
    db.commit()
    return {'ok': True, 'job': _job_dict(job)}


@router.post('/jobs/{job_id}/run')
def run_job(
    job_id: int,
    request: Request,
    body: JobRunBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    _: Principal = Depends(require_admin),
):
    body = body or JobRunBody()
    _job_or_404(db, job_id)
    try:
        summary = run_job_steps(db, client, job_id, mode=body.mode, steps=body.steps)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobStepError as exc:
        record_error(
            db,
            source='jobs.run',
            message=str(exc),
            request_id=get_request_id(request),
            metadata={'jobId': job_id},
        )
        return JSONResponse(status_code=500, content={'ok': False, 'error': str(exc)})
    return {
        'ok': True,
        'done': summary.done,
        'stepsRun': summary.steps_run,
        'candidatesAddedTotal': summary.candidates_added_total,
    }


@router.post('/jobs/{job_id}/import', dependencies=[Depends(require_tables('products'))])
def import_job(
    job_id: int,
    request: Request,
    body: JobImportBody | None = None,
    db: Session = Depends(get_db),
    client: CjClient = Depends(get_cj_client),
    principal: Principal = Depends(require_admin),
):
    body = body or JobImportBody()
    _job_or_404(db, job_id)
    options = UpsertOptions(
        update_images=body.update_images, update_video=body.update_video, update_price=body.update_price
    )
    summary = import_job_items(db, client, job_id, body.item_ids, options)
    log_audit(
        db,
        actor_email=principal.email,
        action='JOB_ITEMS_IMPORTED',
        target=str(job_id),
        ip=get_client_ip(request),
        metadata={'imported': summary.imported, 'failed': summary.failed},
    )
    db.commit()
    return {
        'ok': summary.failed == 0,
        'total': summary.total,
        'imported': summary.imported,
        'failed': summary.failed,
        'results': summary.results,
    }
