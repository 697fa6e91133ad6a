"""
Pipeline behaviour against a real Postgres.

Set TEST_DATABASE_DSN to a disposable database to run these; the tables are
dropped and recreated.
"""
import os
import threading
import unittest

from fakes import FakeEngine, FakeExtractor, FakeRenderer, FakeStorage

from credit_pipeline.job_processors import CreditReportProcessor
from credit_pipeline.letters import LetterGenerator
from credit_pipeline.models import JobStatus
from credit_pipeline.pipeline_db import PipelineDB
from credit_pipeline.queue_handler import JobQueueHandler

TEST_DSN = os.getenv("TEST_DATABASE_DSN")


@unittest.skipUnless(TEST_DSN, "TEST_DATABASE_DSN not set")
class PostgresPipelineTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        PipelineDB(dsn=TEST_DSN).migrate(reset=True)

    def setUp(self):
        self.db = PipelineDB(dsn=TEST_DSN)
        with self.db.connect() as conn:
            conn.execute("truncate reports cascade")
        self.queue = JobQueueHandler(db=self.db)

    def _age_job(self, job_id, minutes):
        with self.db.connect() as conn:
            conn.execute(
                "update jobs set updated_at = now() - %s::int * interval '1 minute' where id=%s::uuid",
                (minutes, job_id),
            )

    def test_concurrent_workers_claim_each_job_exactly_once(self):
        expected = set()
        for i in range(30):
            _, job = self.db.create_report("u1", f"u1/report-{i}.pdf", f"report-{i}.pdf")
            expected.add(job.id)

        claimed = []
        claimed_lock = threading.Lock()

        def poll():
            handler = JobQueueHandler(db=PipelineDB(dsn=TEST_DSN))
            while True:
                job = handler.claim_next_job()
                if job is None:
                    return
                with claimed_lock:
                    claimed.append(job.id)

        threads = [threading.Thread(target=poll) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(len(claimed), len(set(claimed)))
        self.assertEqual(set(claimed), expected)
        self.assertIsNone(self.queue.claim_next_job())
        self.assertEqual(self.queue.queue_length(), 0)

    def test_claims_oldest_job_first(self):
        _, first = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        _, second = self.db.create_report("u2", "u2/b.pdf", "b.pdf")

        self.assertEqual(self.queue.claim_next_job().id, first.id)
        self.assertEqual(self.queue.claim_next_job().id, second.id)
        job = self.db.get_job(first.id)
        self.assertEqual((job.status, job.progress), (JobStatus.PROCESSING, "Downloading"))

    def test_result_upsert_keeps_one_row_per_report(self):
        report, job = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        self.queue.claim_next_job()

        self.assertTrue(self.db.upsert_analysis_result(job.id, report.id, "u1", {"version": 1}))
        self.assertTrue(self.db.upsert_analysis_result(job.id, report.id, "u1", {"version": 2}))

        with self.db.connect() as conn:
            rows = conn.execute(
                "select result_json from analysis_results where report_id=%s::uuid", (report.id,)
            ).fetchall()
        self.assertEqual([r["result_json"] for r in rows], [{"version": 2}])

    def test_retry_clears_jobs_result_and_letters(self):
        report, old_job = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        self.queue.claim_next_job()
        self.db.upsert_analysis_result(old_job.id, report.id, "u1", {"negatives": []})
        for bureau in ("Equifax", "Experian", "TransUnion"):
            self.db.insert_dispute_letter(old_job.id, report.id, "u1", bureau, f"letters/u1/{bureau}.pdf", "text")
        self.db.mark_job_complete(old_job.id)

        new_job = self.db.reset_report(report.id, "u1")

        self.assertIsNone(self.db.get_job(old_job.id))
        self.assertIsNone(self.db.get_analysis_result(report.id, "u1"))
        self.assertEqual(self.db.list_dispute_letters(report.id, "u1"), [])
        jobs = self.db.list_report_jobs(report.id)
        self.assertEqual([(j.id, j.status, j.progress) for j in jobs], [(new_job.id, JobStatus.QUEUED, "Queued")])

    def test_retry_for_other_user_changes_nothing(self):
        report, job = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        self.queue.claim_next_job()
        self.db.upsert_analysis_result(job.id, report.id, "u1", {"negatives": []})

        self.assertIsNone(self.db.reset_report(report.id, "intruder"))
        self.assertEqual([j.id for j in self.db.list_report_jobs(report.id)], [job.id])
        self.assertIsNotNone(self.db.get_analysis_result(report.id, "u1"))

    def test_sweep_fails_only_stale_jobs(self):
        _, stale = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        _, fresh = self.db.create_report("u1", "u1/b.pdf", "b.pdf")
        _, done = self.db.create_report("u1", "u1/c.pdf", "c.pdf")
        for _ in range(3):
            self.queue.claim_next_job()
        self.db.mark_job_complete(done.id)
        self._age_job(stale.id, 11)
        self._age_job(fresh.id, 9)
        self._age_job(done.id, 60)

        self.assertEqual(self.queue.sweep_stale_jobs(600), 1)

        swept = self.db.get_job(stale.id)
        self.assertEqual((swept.status, swept.progress, swept.error), (JobStatus.FAILED, "Error", "job_timeout"))
        self.assertEqual(self.db.get_job(fresh.id).status, JobStatus.PROCESSING)
        self.assertEqual(self.db.get_job(done.id).status, JobStatus.COMPLETE)

    def test_swept_job_is_not_resurrected_by_late_worker(self):
        _, job = self.db.create_report("u1", "u1/a.pdf", "a.pdf")
        self.queue.claim_next_job()
        self._age_job(job.id, 30)
        self.queue.sweep_stale_jobs(600)

        self.assertFalse(self.db.update_job_progress(job.id, "Parsing"))
        self.assertFalse(self.db.mark_job_complete(job.id))
        self.assertEqual(self.db.get_job(job.id).error, "job_timeout")

    def test_end_to_end_job_with_one_failed_letter(self):
        report, job = self.db.create_report("u1", "u1/report.pdf", "report.pdf")
        storage = FakeStorage({"u1/report.pdf": b"%PDF-1.4"})
        letters = LetterGenerator(
            self.db, storage, renderer=FakeRenderer(fail_for=["Experian"]),
            bureaus=["Equifax", "Experian", "TransUnion"],
        )
        processor = CreditReportProcessor(
            db=self.db, storage=storage,
            extractor=FakeExtractor(text="Account XYZ 30 days late..."),
            engine=FakeEngine({"negatives": [{"creditor": "XYZ"}]}),
            letters=letters,
        )

        claimed = self.queue.claim_next_job()
        processor.process_job(claimed)

        finished = self.db.get_job(job.id)
        self.assertEqual((finished.status, finished.progress), (JobStatus.COMPLETE, "Complete"))
        self.assertEqual(self.db.get_analysis_result(report.id, "u1")["result_json"], {"negatives": [{"creditor": "XYZ"}]})
        self.assertEqual(
            sorted(l.bureau for l in self.db.list_dispute_letters(report.id, "u1")),
            ["Equifax", "TransUnion"],
        )

    def test_writes_for_unclaimed_job_are_rejected(self):
        report, job = self.db.create_report("u1", "u1/a.pdf", "a.pdf")

        self.assertFalse(self.db.upsert_analysis_result(job.id, report.id, "u1", {"negatives": []}))
        self.assertIsNone(self.db.insert_dispute_letter(job.id, report.id, "u1", "Equifax", "letters/u1/x.pdf", "t"))
        self.assertIsNone(self.db.get_analysis_result(report.id, "u1"))

    def test_retry_during_analysis_leaves_no_stale_artifacts(self):
        report, _ = self.db.create_report("u1", "u1/report.pdf", "report.pdf")
        retried = {}

        class RetryingEngine(FakeEngine):
            def analyze(inner, text):
                retried["job"] = self.db.reset_report(report.id, "u1")
                return super().analyze(text)

        processor = self._processor(engine=RetryingEngine({"negatives": [{"creditor": "XYZ"}]}))

        result = processor.process_job(self.queue.claim_next_job())

        self.assertEqual(result.error, "job_no_longer_processing")
        self.assertIsNone(self.db.get_analysis_result(report.id, "u1"))
        self.assertEqual(self.db.list_dispute_letters(report.id, "u1"), [])
        jobs = self.db.list_report_jobs(report.id)
        self.assertEqual([(j.id, j.status) for j in jobs], [(retried["job"].id, JobStatus.QUEUED)])

    def test_retry_during_letters_leaves_no_stale_letters(self):
        report, _ = self.db.create_report("u1", "u1/report.pdf", "report.pdf")

        class RetryingRenderer(FakeRenderer):
            def draft(inner, bureau, findings):
                if not inner.drafted:
                    self.db.reset_report(report.id, "u1")
                return super().draft(bureau, findings)

        processor = self._processor(renderer=RetryingRenderer())

        result = processor.process_job(self.queue.claim_next_job())

        self.assertEqual(result.error, "job_no_longer_processing")
        self.assertIsNone(self.db.get_analysis_result(report.id, "u1"))
        self.assertEqual(self.db.list_dispute_letters(report.id, "u1"), [])
        self.assertEqual([j.status for j in self.db.list_report_jobs(report.id)], [JobStatus.QUEUED])

    def _processor(self, engine=None, renderer=None):
        storage = FakeStorage({"u1/report.pdf": b"%PDF-1.4"})
        letters = LetterGenerator(
            self.db, storage, renderer=renderer or FakeRenderer(),
            bureaus=["Equifax", "Experian", "TransUnion"],
        )
        return CreditReportProcessor(
            db=self.db, storage=storage,
            extractor=FakeExtractor(text="Account XYZ 30 days late..."),
            engine=engine or FakeEngine({"negatives": [{"creditor": "XYZ"}]}),
            letters=letters,
        )


if __name__ == "__main__":
    unittest.main()
