"""
Reconciler - Delete index objects that disappeared from the source

A source fetch cut short by an upstream error looks exactly like a mass
deletion from the diff's point of view. The safety threshold is the circuit
breaker: above it nothing is deleted and the caller gets a loud failure.
"""
from dataclasses import dataclass, asdict
from typing import Dict, Iterable, Optional

from ...utils.logger import get_logger
from .errors import SafetyThresholdExceeded

logger = get_logger('reconciler')

DEFAULT_SAFETY_THRESHOLD = 0.6


@dataclass
class ReconciliationReport:
    """Outcome of one reconciliation pass. Logged and returned, never stored."""
    source_count: int
    index_count: int
    orphan_count: int
    deleted_count: int
    safety_threshold: float
    aborted: bool = False
    dry_run: bool = False
    entity_type: str = 'objects'

    @property
    def deletion_fraction(self) -> float:
        if not self.index_count:
            return 0.0
        return self.orphan_count / self.index_count

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['deletion_fraction'] = round(self.deletion_fraction, 4)
        return data


class Reconciler:
    """Computes orphans and deletes them when it is safe to do so.

    Example:
        >>> reconciler = Reconciler(search_index)
        >>> report = reconciler.reconcile(source_ids, indexed_ids, entity_type='static pages')
        >>> report.deleted_count
    """

    def __init__(self, index, safety_threshold: float = DEFAULT_SAFETY_THRESHOLD):
        """Initialize the reconciler.

        Args:
            index: Search index exposing ``delete_objects(ids)``
            safety_threshold: Default maximum fraction of the index to delete
        """
        self.index = index
        self.safety_threshold = safety_threshold

    def reconcile(
        self,
        source_ids: Iterable[str],
        indexed_ids: Iterable[str],
        safety_threshold: Optional[float] = None,
        dry_run: bool = False,
        entity_type: str = 'objects',
        raise_on_abort: bool = True
    ) -> ReconciliationReport:
        """Delete ``indexed_ids - source_ids`` unless that exceeds the threshold.

        Args:
            source_ids: Every identifier currently in the source of truth
            indexed_ids: Every identifier currently in the index scope
            safety_threshold: Overrides the default threshold
            dry_run: Compute and log only
            entity_type: Label used in logs
            raise_on_abort: Raise SafetyThresholdExceeded instead of only
                returning an aborted report

        Returns:
            ReconciliationReport for this pass

        Raises:
            SafetyThresholdExceeded: When the deletion fraction is above the
                threshold and ``raise_on_abort`` is set
        """
        threshold = self.safety_threshold if safety_threshold is None else safety_threshold
        source = set(source_ids)
        indexed = set(indexed_ids)

        report = ReconciliationReport(
            source_count=len(source),
            index_count=len(indexed),
            orphan_count=0,
            deleted_count=0,
            safety_threshold=threshold,
            dry_run=dry_run,
            entity_type=entity_type,
        )

        if not indexed:
            logger.info(f"[Reconciler] Index holds no {entity_type}, nothing to reconcile")
            return report

        orphans = sorted(indexed - source)
        report.orphan_count = len(orphans)

        if not orphans:
            logger.info(f"[Reconciler] No orphaned {entity_type} found")
            return report

        if report.deletion_fraction > threshold:
            report.aborted = True
            logger.error(
                f"[Reconciler] SAFETY THRESHOLD EXCEEDED: would delete "
                f"{report.orphan_count}/{report.index_count} {entity_type} "
                f"({report.deletion_fraction:.0%}), threshold {threshold:.0%}, "
                f"source has {report.source_count}, sample orphans: {orphans[:10]}"
            )
            if raise_on_abort:
                raise SafetyThresholdExceeded(report)
            return report

        logger.info(
            f"[Reconciler] Found {report.orphan_count} orphaned {entity_type} "
            f"({report.deletion_fraction:.0%} of {report.index_count})"
        )

        if dry_run:
            logger.warning(
                f"[Reconciler] DRY RUN: would delete {report.orphan_count} {entity_type}, "
                f"sample: {orphans[:5]}"
            )
            return report

        self.index.delete_objects(orphans)
        report.deleted_count = len(orphans)
        logger.warning(f"[Reconciler] Deleted {report.deleted_count} orphaned {entity_type}")
        return report
