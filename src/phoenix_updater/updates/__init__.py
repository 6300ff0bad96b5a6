"""
Update and migration pipeline.

This package implements the complete update of a game installation:
- Release download with throttled progress reporting
- Rename-based archiving of the current installation
- Safe extraction of ZIP and tar releases
- Identity-based planning and restore of user content
- Rollback to the archived installation on failure
- Deferred background removal of the previous installation
"""

from phoenix_updater.updates.access import (
    InstallationInfo,
    check_installation_access,
    detect_installation,
)
from phoenix_updater.updates.archiver import Archiver
from phoenix_updater.updates.cleanup import (
    DeferredCleanup,
    find_stale_slots,
    purge_stale_slot,
    purge_stale_slots,
)
from phoenix_updater.updates.download import Downloader, DownloadResult, ReleaseAsset
from phoenix_updater.updates.engine import (
    MigrationEngine,
    MigrationHandle,
    MigrationOutcome,
    MigrationResult,
)
from phoenix_updater.updates.extractor import extract, extract_archive, verify_extraction
from phoenix_updater.updates.identity import (
    CATEGORY_ROOTS,
    CategoryRoot,
    ContentCategory,
    ContentIdentity,
    identify,
)
from phoenix_updater.updates.planner import (
    CategoryPlan,
    MigrationPlan,
    build_migration_plan,
    plan,
    plan_category,
)
from phoenix_updater.updates.progress import ProgressChannel, ProgressPhase, ProgressRecord
from phoenix_updater.updates.restorer import Restorer, RestoreSummary
from phoenix_updater.updates.rollback import RollbackController
from phoenix_updater.updates.snapshot import DirectorySnapshot, scan_category
from phoenix_updater.updates.state_machine import MigrationStage, MigrationStateMachine

__all__ = [
    # Engine
    "MigrationEngine",
    "MigrationHandle",
    "MigrationOutcome",
    "MigrationResult",
    # Installation
    "InstallationInfo",
    "detect_installation",
    "check_installation_access",
    # Download
    "Downloader",
    "DownloadResult",
    "ReleaseAsset",
    # Archive / extract
    "Archiver",
    "extract",
    "extract_archive",
    "verify_extraction",
    # Identity and planning
    "CATEGORY_ROOTS",
    "CategoryRoot",
    "ContentCategory",
    "ContentIdentity",
    "identify",
    "DirectorySnapshot",
    "scan_category",
    "CategoryPlan",
    "MigrationPlan",
    "plan",
    "plan_category",
    "build_migration_plan",
    # Restore
    "Restorer",
    "RestoreSummary",
    # Rollback and cleanup
    "RollbackController",
    "MigrationStage",
    "MigrationStateMachine",
    "DeferredCleanup",
    "find_stale_slots",
    "purge_stale_slot",
    "purge_stale_slots",
    # Progress
    "ProgressChannel",
    "ProgressPhase",
    "ProgressRecord",
]
