"""Background job registration"""

from config import Config
from jobs.scheduler import CoreScheduler


class TestCoreScheduler:

    def test_unconfigured_process_only_cleans_locks(self):
        scheduler = CoreScheduler()
        scheduler.setup_jobs()

        assert [job.id for job in scheduler.scheduler.get_jobs()] == ["lock_cleanup"]
        assert scheduler.running is False

    def test_configured_process_schedules_all_jobs(self, monkeypatch):
        monkeypatch.setattr(Config, "chain_configured", staticmethod(lambda: True))
        monkeypatch.setattr(Config, "payouts_configured", staticmethod(lambda: True))
        scheduler = CoreScheduler()
        scheduler.setup_jobs()

        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"verification_loop", "payout_sync", "lock_cleanup"}
