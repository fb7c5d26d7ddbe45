"""
Termbuffer storage layer.

Local durability for undelivered entries and crawl state tracking.
"""

from termbuffer.storage.recovery import (
    RecoveryFile,
    RecoveryWriteFailure,
    DEFAULT_RECOVERY_PATH,
)
from termbuffer.storage.crawl_state import (
    PageStatus,
    CrawlStateTracker,
    PageStateTable,
)

__all__ = [
    "RecoveryFile",
    "RecoveryWriteFailure",
    "DEFAULT_RECOVERY_PATH",
    "PageStatus",
    "CrawlStateTracker",
    "PageStateTable",
]
