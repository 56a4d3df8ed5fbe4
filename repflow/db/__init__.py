from .models import CachedResponse, DomainRow, GenerationJob, QuotaCounter, UsageRecord
from .store import Database, normalize_url

__all__ = [
    "CachedResponse",
    "DomainRow",
    "GenerationJob",
    "QuotaCounter",
    "UsageRecord",
    "Database",
    "normalize_url",
]
