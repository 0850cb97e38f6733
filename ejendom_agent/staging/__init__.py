"""
Staging
=======
Pre-CRM holding area for discovered properties pending review.
"""
from .models import Stage, Source, StagedProperty, STAGE_TRANSITIONS
from .store import StagingStore

__all__ = [
    "Stage",
    "Source",
    "StagedProperty",
    "STAGE_TRANSITIONS",
    "StagingStore",
]
