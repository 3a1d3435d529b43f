"""Lease sweeper: recovery path for requests stuck in Processing.

start_processing stamps a lease on the request. If the worker dies between
the lock and the finalize call, the lease runs out and this job force-fails
the request with a refund. Requests held for operator review carry no lease
and are never touched here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlmodel import Session

from vaultbridge.engine.worker import _notify
from vaultbridge.models.job_log import JobLog
from vaultbridge.services.bridge_account import BridgeAccount

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    failed: list[int] = field(default_factory=list)
    stuck: list[int] = field(default_factory=list)  # force-fail itself failed


class LeaseSweeper:
    def __init__(self, bridge: BridgeAccount, engine=None):
        self.bridge = bridge
        self.engine = engine or bridge.ledger.engine

    async def run(self, now: datetime | None = None) -> SweepReport:
        report = SweepReport()
        expired = self.bridge.view("get_expired_leases", now=now)
        if not expired:
            logger.debug("Sweep: no expired leases")
            return report

        logger.warning(f"Sweep: {len(expired)} expired processing lease(s)")
        for request in expired:
            tag = f"[request_{request.id}]"
            result = await self.bridge.call(
                "force_fail",
                request_id=request.id,
                message="Processing lease expired; request failed and refunded",
            )
            if result.success:
                report.failed.append(request.id)
                logger.warning(f"{tag} Lease expired, force-failed with refund")
                continue

            report.stuck.append(request.id)
            logger.critical(
                f"{tag} LEDGER UPDATE FAILURE: lease expired but force-fail failed: {result.error}"
            )
            _notify(f"{tag} stuck in Processing, force-fail failed: {result.error}")

        status = "error" if report.stuck else "warning"
        with Session(self.engine) as session:
            session.add(JobLog(
                job="sweep",
                status=status,
                total=len(expired),
                succeeded=len(report.failed),
                failed=len(report.stuck),
                message=f"force-failed={report.failed} stuck={report.stuck}",
            ))
            session.commit()
        return report


async def run_sweep() -> SweepReport:
    """Interval job entry point."""
    from vaultbridge.engine.worker import get_worker

    return await LeaseSweeper(get_worker().bridge).run()
