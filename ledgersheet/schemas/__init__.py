"""
ledgersheet.schemas - Typed records for the execution engine.

Dataset -> Job -> LastWrite

Lifecycle:
1. Dataset: created, edited and deleted through the DatasetRegistry
2. Job: created at each run start, short-lived, queryable while active
3. LastWrite: snapshot stored on the Dataset after each successful run
4. TriggerInfo: a live recurring trigger owned by the trigger host
"""

from .dataset import (
    DAYS_OF_WEEK,
    Dataset,
    DatasetType,
    Frequency,
    LastWrite,
    Pagination,
    Schedule,
    Target,
    sanitize_named_range,
    sanitize_sheet_name,
)
from .job import (
    Job,
    JobStatus,
)
from .trigger import (
    TriggerInfo,
)

__all__ = [
    # Dataset
    "DAYS_OF_WEEK",
    "Dataset",
    "DatasetType",
    "Frequency",
    "LastWrite",
    "Pagination",
    "Schedule",
    "Target",
    "sanitize_named_range",
    "sanitize_sheet_name",
    # Job
    "Job",
    "JobStatus",
    # Trigger
    "TriggerInfo",
]
