"""
Decide which boundaries to restore from the snapshot and which to download
"""

import enum
from typing import Iterable, List, NamedTuple, Optional
import logging

logger = logging.getLogger(__name__)


class ReconciliationDecision(str, enum.Enum):
    REUSE_ALL = "reuse_all"
    REUSE_SUBSET = "reuse_subset"
    DOWNLOAD_ALL = "download_all"


class ReconciliationResult(NamedTuple):
    decision: ReconciliationDecision
    existing: List[int]  # authoritative ids the snapshot already holds
    missing: List[int]   # authoritative ids that must be downloaded

    @property
    def to_download(self) -> List[int]:
        return self.missing


def reconcile(
    authoritative_ids: Iterable[int],
    snapshot_ids: Optional[Iterable[int]],
    force_refresh: bool = False
) -> ReconciliationResult:
    """
    Compare the authoritative id list against the snapshot.

    Args:
        authoritative_ids: Ids discovered from the API, in discovery order
        snapshot_ids: Ids held by the snapshot, None when there is no snapshot
        force_refresh: Ignore the snapshot and download everything

    Returns:
        ReconciliationResult; `existing` and `missing` keep authoritative order
    """
    authoritative = list(dict.fromkeys(authoritative_ids))

    if force_refresh or snapshot_ids is None:
        reason = "force refresh" if force_refresh else "no snapshot"
        logger.info(f"Reconciliation: download all {len(authoritative)} boundaries ({reason})")
        return ReconciliationResult(ReconciliationDecision.DOWNLOAD_ALL, [], authoritative)

    snapshot = set(snapshot_ids)
    existing = [i for i in authoritative if i in snapshot]
    missing = [i for i in authoritative if i not in snapshot]

    if not missing:
        decision = ReconciliationDecision.REUSE_ALL
    elif not existing:
        decision = ReconciliationDecision.DOWNLOAD_ALL
    else:
        decision = ReconciliationDecision.REUSE_SUBSET

    logger.info(
        f"Reconciliation: {decision.value} ({len(existing)} from snapshot, {len(missing)} to download)"
    )
    return ReconciliationResult(decision, existing, missing)
