import logging
from datetime import date, datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from autoresearch.models.quota import QuotaRecord
from autoresearch.storage import JsonSnapshot

logger = logging.getLogger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class QuotaLedger:
    """Per-user, per-day counters gating job creation.

    Checked and incremented at job creation only; a resumed job is a
    continuation of an already-counted job.
    """

    def __init__(
        self,
        max_jobs_per_day: int = 10,
        snapshot: Optional[JsonSnapshot] = None,
        today: Callable[[], date] = _utc_today,
    ):
        self.max_jobs_per_day = max_jobs_per_day
        self._today = today
        self._records: Dict[Tuple[str, date], QuotaRecord] = {}
        self._lock = Lock()
        self._snapshot = snapshot
        if snapshot:
            for raw in snapshot.load().values():
                record = QuotaRecord.model_validate(raw)
                self._records[(record.user_id, record.date)] = record

    def get_quota(self, user_id: str) -> Optional[QuotaRecord]:
        """Today's record for the user, if one exists."""
        with self._lock:
            record = self._records.get((user_id, self._today()))
            return record.model_copy() if record else None

    def can_start(self, user_id: str) -> bool:
        record = self.get_quota(user_id)
        if record is None:
            # No record for today, user can start
            return True
        return record.jobs_today < record.max_jobs_per_day

    def increment(self, user_id: str) -> QuotaRecord:
        """Upsert today's record and count one more job."""
        today = self._today()
        with self._lock:
            record = self._records.get((user_id, today))
            if record is None:
                latest = self._latest_record(user_id)
                record = QuotaRecord(
                    user_id=user_id,
                    date=today,
                    max_jobs_per_day=latest.max_jobs_per_day if latest else self.max_jobs_per_day,
                    total_jobs_all_time=latest.total_jobs_all_time if latest else 0,
                )
                self._records[(user_id, today)] = record
            record.jobs_today += 1
            record.total_jobs_all_time += 1
            self._persist()
            logger.info(f"User {user_id} started job {record.jobs_today}/{record.max_jobs_per_day} today")
            return record.model_copy()

    def set_limit(self, user_id: str, max_jobs_per_day: int) -> QuotaRecord:
        """Override today's (and future days') cap for one user."""
        today = self._today()
        with self._lock:
            record = self._records.get((user_id, today))
            if record is None:
                latest = self._latest_record(user_id)
                record = QuotaRecord(
                    user_id=user_id,
                    date=today,
                    total_jobs_all_time=latest.total_jobs_all_time if latest else 0,
                )
                self._records[(user_id, today)] = record
            record.max_jobs_per_day = max_jobs_per_day
            self._persist()
            return record.model_copy()

    def _latest_record(self, user_id: str) -> Optional[QuotaRecord]:
        records = [r for (uid, _), r in self._records.items() if uid == user_id]
        return max(records, key=lambda r: r.date) if records else None

    def _persist(self) -> None:
        if self._snapshot:
            self._snapshot.save({
                f"{user_id}:{day.isoformat()}": record.model_dump(mode="json")
                for (user_id, day), record in self._records.items()
            })
