"""Ownership reconciliation: converge the two ownership mirrors.

The request ledger keeps (user, position) flags; the worker keeps its own
position -> owner index. Both are written on Create and Close completion in
separate commits, so a crash between the two leaves them disagreeing. This
job compares both against the position service's owned ids, which is the
source of truth for whether a position exists.

Repairs, only when the position service confirms the fact:
1. Flagged live position missing from the worker index → add it
2. Worker entry for a position the service no longer holds → remove it
3. Ledger flag for a position the service no longer holds → clear it

Everything else is reported for manual review. Positions of requests still
in Processing are left alone; their completion step converges them.
"""

import logging
from dataclasses import dataclass, field

from sqlmodel import Session

from vaultbridge.engine.worker import _notify
from vaultbridge.errors import CrossLedgerCallFailure
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.request import RequestStatus
from vaultbridge.services.bridge_account import BridgeAccount
from vaultbridge.services.ownership_index import OwnershipIndex
from vaultbridge.services.position_client import PositionLedgerClient
from vaultbridge.services.request_ledger import RequestLedger

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    added: list[int] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    cleared_flags: list[int] = field(default_factory=list)
    divergent: list[int] = field(default_factory=list)  # both mirrors live, owners differ
    unflagged: list[int] = field(default_factory=list)  # worker entry with no ledger flag
    orphaned: list[int] = field(default_factory=list)  # live on the service, unknown to both
    error: str | None = None

    @property
    def repaired(self) -> int:
        return len(self.added) + len(self.removed) + len(self.cleared_flags)

    @property
    def unresolved(self) -> list[int]:
        return sorted(self.divergent + self.unflagged + self.orphaned)

    @property
    def clean(self) -> bool:
        return self.error is None and not self.repaired and not self.unresolved


class OwnershipReconciler:
    def __init__(
        self,
        ledger: RequestLedger,
        bridge: BridgeAccount,
        ownership: OwnershipIndex,
        positions: PositionLedgerClient,
        engine=None,
    ):
        self.ledger = ledger
        self.bridge = bridge
        self.ownership = ownership
        self.positions = positions
        self.engine = engine or ledger.engine

    async def run(self) -> ReconcileReport:
        report = ReconcileReport()

        try:
            live = set(await self.positions.get_owned_position_ids())
        except CrossLedgerCallFailure as e:
            logger.error(f"Reconcile: could not list positions, nothing repaired: {e}")
            report.error = str(e)
            self._log("error", f"Position service unavailable: {e}")
            return report

        flags = self.bridge.view("get_ownership_flags")
        mirror = self.ownership.all_entries()
        in_flight = {
            r.position_id
            for r in self.bridge.view("list_requests", status=RequestStatus.PROCESSING, limit=10_000)
            if r.position_id is not None
        }

        logger.info(
            f"Reconcile: {len(flags)} ledger flags, {len(mirror)} worker entries, "
            f"{len(live)} live positions, {len(in_flight)} in flight"
        )

        for position_id in sorted(set(flags) | set(mirror) | live):
            if position_id in in_flight:
                continue
            flagged_user = flags.get(position_id)
            owner = mirror.get(position_id)
            alive = position_id in live

            if not alive:
                if owner is not None:
                    self.ownership.unregister(position_id)
                    report.removed.append(position_id)
                    logger.warning(f"Reconcile: removed worker entry for dead position {position_id}")
                if flagged_user is not None:
                    result = await self.bridge.call(
                        "clear_ownership_flag", user=flagged_user, position_id=position_id
                    )
                    if result.success:
                        report.cleared_flags.append(position_id)
                        logger.warning(
                            f"Reconcile: cleared ledger flag {flagged_user}/{position_id} for dead position"
                        )
                    else:
                        logger.error(
                            f"Reconcile: could not clear flag for position {position_id}: {result.error}"
                        )
                        report.divergent.append(position_id)
                continue

            if flagged_user is not None and owner is None:
                self.ownership.register(flagged_user, position_id)
                report.added.append(position_id)
                logger.warning(
                    f"Reconcile: added missing worker entry {position_id} -> {flagged_user}"
                )
            elif flagged_user is not None and owner != flagged_user:
                report.divergent.append(position_id)
                logger.warning(
                    f"Reconcile: position {position_id} flagged for {flagged_user} "
                    f"but indexed for {owner}. Manual review needed."
                )
            elif flagged_user is None and owner is not None:
                report.unflagged.append(position_id)
                logger.warning(
                    f"Reconcile: position {position_id} indexed for {owner} has no ledger flag"
                )
            elif flagged_user is None and owner is None:
                report.orphaned.append(position_id)
                logger.warning(f"Reconcile: live position {position_id} not tracked by either mirror")

        self._record(report)
        return report

    def _record(self, report: ReconcileReport):
        if report.clean:
            logger.info("Reconcile: mirrors agree")
            self._log("success", "Mirrors agree")
            return

        message = (
            f"added={report.added} removed={report.removed} cleared={report.cleared_flags} "
            f"divergent={report.divergent} unflagged={report.unflagged} orphaned={report.orphaned}"
        )
        self._log("warning", message, details={
            "added": report.added,
            "removed": report.removed,
            "cleared_flags": report.cleared_flags,
            "divergent": report.divergent,
            "unflagged": report.unflagged,
            "orphaned": report.orphaned,
        })
        if report.unresolved:
            _notify(f"Ownership divergence needs review: positions {report.unresolved}")
        logger.info(f"Reconcile complete: {message}")

    def _log(self, status: str, message: str, details: dict | None = None):
        with Session(self.engine) as session:
            session.add(JobLog(job="reconcile", status=status, message=message, details=details))
            session.commit()


async def run_reconcile() -> ReconcileReport:
    """Interval job entry point."""
    from vaultbridge.engine.worker import get_worker

    worker = get_worker()
    reconciler = OwnershipReconciler(
        ledger=worker.ledger,
        bridge=worker.bridge,
        ownership=worker.ownership,
        positions=worker.positions,
    )
    try:
        return await reconciler.run()
    except Exception as e:
        logger.error(f"Reconcile failed: {e}", exc_info=True)
        raise
