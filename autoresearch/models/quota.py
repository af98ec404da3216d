import datetime as dt
from pydantic import BaseModel


class QuotaRecord(BaseModel):
    """Jobs started by one user on one UTC calendar day."""
    user_id: str
    date: dt.date
    jobs_today: int = 0
    max_jobs_per_day: int = 10
    total_jobs_all_time: int = 0
