from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import func, select, update

from storefront.models import Job, JobItem, JobItemStatus, JobKind, JobStatus, Product
from storefront.services.cj_client import CjApiError
from storefront.services.job_service import (
    InvalidJobTransition,
    JobStepError,
    build_finder_params,
    cancel_job,
    create_job,
    finish_job,
    import_job_items,
    run_job_steps,
    run_scanner_tick,
    start_job,
    step_finder_job,
)
from support import FakeCjClient, add_product, make_engine, make_session_factory


def _item(pid: str, price: float = 5.0) -> dict:
    return {'pid': pid, 'productNameEn': f'Product {pid}', 'sellPrice': price, 'productImage': f'https://img/{pid}.jpg'}


class CancellingClient(FakeCjClient):
    """Cancels the job from another request while the page is in flight."""

    def __init__(self, db, job_id: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.db = db
        self.job_id = job_id

    def list_products_page(self, **kwargs):
        self.db.execute(update(Job).where(Job.id == self.job_id).values(status=JobStatus.CANCELLED))
        self.db.commit()
        return super().list_products_page(**kwargs)


class RacingClient(FakeCjClient):
    """Simulates an overlapping step that moved the job version first."""

    def __init__(self, db, job_id: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.db = db
        self.job_id = job_id

    def list_products_page(self, **kwargs):
        self.db.execute(update(Job).where(Job.id == self.job_id).values(version=Job.version + 5))
        return super().list_products_page(**kwargs)


class FinderParamsTests(unittest.TestCase):
    def test_keywords_are_deduplicated_and_limits_clamped(self) -> None:
        params = build_finder_params(
            {
                'keywords': 'lamp, mug,lamp',
                'targetQuantity': 9999,
                'pageSize': 0,
                'pricing': {'margin': 1.5, 'cjCurrency': 'sar'},
                'filters': {'minPrice': '2'},
            }
        )

        self.assertEqual(params['keywords'], ['lamp', 'mug'])
        self.assertEqual(params['targetQuantity'], 2000)
        self.assertEqual(params['pageSize'], 1)
        self.assertEqual(params['maxPagesPerKeyword'], 5)
        self.assertEqual(params['pricing'], {'margin': 0.35, 'handlingSar': 0.0, 'cjCurrency': 'SAR'})
        self.assertEqual(params['filters']['minPrice'], 2.0)

    def test_keywords_are_required(self) -> None:
        with self.assertRaises(ValueError):
            build_finder_params({'keywords': [' ', '']})
        with self.assertRaises(ValueError):
            build_finder_params({})


class JobLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_transitions(self) -> None:
        job = create_job(self.db, JobKind.FINDER, {'keywords': ['lamp']})
        self.assertEqual(job.cursor, {'kw_index': 0, 'page_num': 1, 'collected': 0})

        start_job(self.db, job.id)
        self.assertEqual(start_job(self.db, job.id).status, JobStatus.RUNNING)
        finish_job(self.db, job.id, JobStatus.SUCCESS, {'candidates': 0})

        with self.assertRaises(InvalidJobTransition):
            cancel_job(self.db, job.id)
        with self.assertRaises(InvalidJobTransition):
            start_job(self.db, job.id)

    def test_cancel_is_idempotent(self) -> None:
        job = create_job(self.db, JobKind.FINDER, {'keywords': ['lamp']})

        self.assertEqual(cancel_job(self.db, job.id).status, JobStatus.CANCELLED)
        self.assertEqual(cancel_job(self.db, job.id).status, JobStatus.CANCELLED)

    def test_finish_requires_terminal_status(self) -> None:
        job = create_job(self.db, JobKind.FINDER, {'keywords': ['lamp']})
        with self.assertRaises(ValueError):
            finish_job(self.db, job.id, JobStatus.RUNNING)
        with self.assertRaises(ValueError):
            start_job(self.db, 12345)


class FinderStepTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _job(self, **body) -> Job:
        body.setdefault('keywords', ['lamp'])
        return create_job(self.db, JobKind.FINDER, build_finder_params(body))

    def _item_pids(self, job_id: int) -> list[str]:
        return list(self.db.scalars(select(JobItem.cj_product_id).where(JobItem.job_id == job_id).order_by(JobItem.id)))

    def test_steps_until_target_without_duplicates(self) -> None:
        job = self._job(targetQuantity=3, pageSize=2)
        client = FakeCjClient(
            pages={
                ('lamp', 1): [_item('P1'), _item('P2')],
                ('lamp', 2): [_item('P2'), _item('P3'), _item('P4')],
            }
        )

        first = step_finder_job(self.db, client, job.id)
        self.assertEqual((first.added, first.done), (2, False))

        second = step_finder_job(self.db, client, job.id)
        self.assertEqual((second.added, second.done), (1, True))

        self.assertEqual(self._item_pids(job.id), ['P1', 'P2', 'P3'])
        self.db.refresh(job)
        self.assertEqual(job.status, JobStatus.SUCCESS)
        self.assertEqual(job.cursor['collected'], 3)
        self.assertEqual(job.result, {'candidates': 3})

        item = self.db.scalar(select(JobItem).where(JobItem.cj_product_id == 'P1'))
        self.assertEqual(item.status, JobItemStatus.SUCCESS)
        self.assertEqual(item.result['keyword'], 'lamp')
        self.assertEqual(item.result['pricing']['supplier_cost_sar'], 18.75)

    def test_run_all_walks_keywords_and_finishes(self) -> None:
        job = self._job(keywords=['desk', 'lamp'], targetQuantity=5)
        client = FakeCjClient(pages={('lamp', 1): [_item('P1')]})

        summary = run_job_steps(self.db, client, job.id, mode='all')

        self.assertTrue(summary.done)
        self.assertEqual(summary.steps_run, 3)
        self.assertEqual(summary.candidates_added_total, 1)
        self.assertEqual([c[1:] for c in client.calls], [('desk', 1), ('lamp', 1), ('lamp', 2)])

    def test_filters_skip_candidates(self) -> None:
        job = self._job(filters={'minPrice': 4, 'maxPrice': 10})
        client = FakeCjClient(pages={('lamp', 1): [_item('CHEAP', 1.0), _item('OK', 6.0), _item('DEAR', 50.0)]})

        step_finder_job(self.db, client, job.id)

        self.assertEqual(self._item_pids(job.id), ['OK'])

    def test_cancelled_job_does_not_call_supplier(self) -> None:
        job = self._job()
        cancel_job(self.db, job.id)
        client = FakeCjClient()

        result = step_finder_job(self.db, client, job.id)

        self.assertTrue(result.cancelled)
        self.assertEqual(client.calls, [])

    def test_cancellation_during_fetch_discards_the_page(self) -> None:
        job = self._job()
        client = CancellingClient(self.db, job.id, pages={('lamp', 1): [_item('P1')]})

        result = step_finder_job(self.db, client, job.id)

        self.assertTrue(result.cancelled)
        self.assertEqual(self._item_pids(job.id), [])
        self.db.refresh(job)
        self.assertEqual(job.status, JobStatus.CANCELLED)

    def test_version_conflict_rolls_back_the_step(self) -> None:
        job = self._job()
        client = RacingClient(self.db, job.id, pages={('lamp', 1): [_item('P1'), _item('P2')]})

        result = step_finder_job(self.db, client, job.id)

        self.assertTrue(result.conflict)
        self.assertFalse(result.done)
        self.assertEqual(self._item_pids(job.id), [])
        self.db.refresh(job)
        self.assertEqual(job.status, JobStatus.RUNNING)
        self.assertEqual(job.cursor['page_num'], 1)

    def test_supplier_failure_marks_job_failed(self) -> None:
        job = self._job()
        client = FakeCjClient()

        with patch.object(client, 'list_products_page', side_effect=CjApiError('CJ API error 500: down', status=500)):
            with self.assertRaises(JobStepError):
                step_finder_job(self.db, client, job.id)

        self.db.refresh(job)
        self.assertEqual(job.status, JobStatus.FAILURE)
        self.assertIn('down', job.error_text)

    def test_import_upserts_candidates(self) -> None:
        job = self._job()
        client = FakeCjClient(
            pages={('lamp', 1): [_item('P1'), _item('GONE')]},
            products={'P1': {'pid': 'P1', 'productNameEn': 'Product P1', 'variants': [{'vid': 'V1', 'variantSku': 'S1', 'variantStock': 3}]}},
        )
        step_finder_job(self.db, client, job.id)

        summary = import_job_items(self.db, client, job.id)

        self.assertEqual((summary.total, summary.imported, summary.failed), (2, 1, 1))
        statuses = dict(self.db.execute(select(JobItem.cj_product_id, JobItem.status).where(JobItem.job_id == job.id)).all())
        self.assertEqual(statuses, {'P1': JobItemStatus.IMPORTED, 'GONE': JobItemStatus.ERROR})
        product = self.db.scalar(select(Product).where(Product.cj_product_id == 'P1'))
        self.assertEqual(product.stock, 3)


class ScannerTickTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_tick_hides_sold_out_products_and_records_a_job(self) -> None:
        thin = add_product(self.db, title='Thin', cj_product_id='PID-T', stock=3)
        add_product(self.db, title='Low', cj_product_id='PID-L', stock=8)
        manual = add_product(self.db, title='Manual', cj_product_id='PID-M', stock=0)
        manual.cj_product_id = None
        self.db.commit()

        job, results = run_scanner_tick(self.db, 'all')

        self.assertEqual(job.kind, JobKind.SCANNER)
        self.assertEqual(job.status, JobStatus.SUCCESS)
        daily, inventory = results['jobs']
        self.assertEqual((daily['synced'], daily['autoHidden']), (2, 1))
        self.assertEqual((inventory['checked'], inventory['lowStock'], inventory['outOfStock']), (2, 1, 1))
        self.db.refresh(thin)
        self.assertFalse(thin.is_active)
        self.assertEqual(self.db.scalar(select(func.count()).select_from(Job)), 1)

    def test_unknown_job_type(self) -> None:
        with self.assertRaises(ValueError):
            run_scanner_tick(self.db, 'everything')


if __name__ == '__main__':
    unittest.main()
