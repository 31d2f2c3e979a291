from typing import Literal, Optional

from pydantic import BaseModel, Field

JobType = Literal["failed-payments", "sync-records", "cleanup", "monthly-report", "trials", "period-end", "all"]


class RunJobsRequest(BaseModel):
    job_type: JobType = "all"
    year: Optional[int] = Field(default=None, ge=2000, le=9999)
    month: Optional[int] = Field(default=None, ge=1, le=12)
