import pytest
from datetime import date, timedelta

from autoresearch.quota import QuotaLedger
from autoresearch.storage import JsonSnapshot


class FakeCalendar:
    def __init__(self, today: date):
        self.current = today

    def __call__(self) -> date:
        return self.current


@pytest.mark.unit
class TestQuotaLedger:
    @pytest.fixture
    def calendar(self):
        return FakeCalendar(date(2025, 1, 15))

    @pytest.fixture
    def ledger(self, calendar):
        return QuotaLedger(max_jobs_per_day=3, today=calendar)

    def test_can_start_without_record(self, ledger):
        assert ledger.get_quota("user-1") is None
        assert ledger.can_start("user-1") is True

    def test_cap_reached(self, ledger):
        for _ in range(3):
            assert ledger.can_start("user-1")
            ledger.increment("user-1")
        record = ledger.get_quota("user-1")
        assert record.jobs_today == 3
        assert ledger.can_start("user-1") is False
        # Other users are unaffected
        assert ledger.can_start("user-2") is True

    def test_resets_on_date_rollover(self, ledger, calendar):
        for _ in range(3):
            ledger.increment("user-1")
        assert ledger.can_start("user-1") is False

        calendar.current += timedelta(days=1)
        assert ledger.can_start("user-1") is True
        record = ledger.increment("user-1")
        assert record.jobs_today == 1
        assert record.total_jobs_all_time == 4

    def test_set_limit_carries_to_next_day(self, ledger, calendar):
        ledger.set_limit("user-1", 1)
        ledger.increment("user-1")
        assert ledger.can_start("user-1") is False

        calendar.current += timedelta(days=1)
        record = ledger.increment("user-1")
        assert record.max_jobs_per_day == 1

    def test_zero_limit_blocks_after_first_record(self, calendar):
        ledger = QuotaLedger(max_jobs_per_day=0, today=calendar)
        ledger.set_limit("user-1", 0)
        assert ledger.can_start("user-1") is False

    def test_persisted_records_reload(self, tmp_path, calendar):
        path = tmp_path / "quotas.json"
        ledger = QuotaLedger(max_jobs_per_day=2, snapshot=JsonSnapshot(path), today=calendar)
        ledger.increment("user-1")
        ledger.increment("user-1")

        reloaded = QuotaLedger(max_jobs_per_day=2, snapshot=JsonSnapshot(path), today=calendar)
        assert reloaded.get_quota("user-1").jobs_today == 2
        assert reloaded.can_start("user-1") is False
