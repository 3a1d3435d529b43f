"""APScheduler integration: the self-rescheduling request-processing loop.

Each firing runs the worker over one page of the pending queue. The firing
for slot 0 then reads the backlog, picks the next delay from the threshold
table and schedules the next round: one one-shot job per slot, all at the
same time, each over its own page. Every scheduled job is paid for up front
from the prepaid fee balance; running out halts the chain until it is
re-armed.

Pausing stops work without touching scheduled jobs: they fire, do nothing
and do not reschedule. Unpausing does not restart the chain; `arm` does.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from vaultbridge.config import settings
from vaultbridge.engine.cadence import compute_delay, compute_fanout, normalize_thresholds
from vaultbridge.engine.worker import BatchResult, Worker, _notify
from vaultbridge.errors import SchedulingFailure
from vaultbridge.models.job_log import JobLog
from vaultbridge.models.scheduler_state import SchedulerState
from vaultbridge.utils.constants import (
    MAX_BATCH_SIZE,
    MAX_DELAY_SECONDS,
    MAX_PARALLEL_SLOTS,
    MIN_DELAY_SECONDS,
    PRIORITY_MULTIPLIERS,
)

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

PROCESS_JOB_PREFIX = "process"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _default_state() -> SchedulerState:
    return SchedulerState(
        id=1,
        thresholds={str(k): float(v) for k, v in settings.thresholds.items()},
        default_delay=settings.default_delay_seconds,
        batch_size=settings.batch_size,
        max_parallel=settings.max_parallel,
        priority=settings.priority,
        compute_budget=settings.compute_budget,
        fee_balance=settings.initial_fee_balance,
    )


def load_state(engine) -> SchedulerState:
    """The persisted scheduler state, created from settings on first use."""
    with Session(engine) as session:
        state = session.get(SchedulerState, 1)
        if state is None:
            state = _default_state()
            session.add(state)
            session.commit()
            session.refresh(state)
        return state


def update_state(engine, **changes) -> SchedulerState:
    with Session(engine) as session:
        state = session.get(SchedulerState, 1) or _default_state()
        for key, value in changes.items():
            setattr(state, key, value)
        session.add(state)
        session.commit()
        session.refresh(state)
        return state


class TransactionOrchestrator:
    """Schedules one-shot handler runs and charges each one to the prepaid fee balance."""

    def __init__(self, aps_scheduler: AsyncIOScheduler, engine, base_fee=None, fee_per_compute_unit=None):
        self._scheduler = aps_scheduler
        self.engine = engine
        self.base_fee = Decimal(base_fee if base_fee is not None else settings.base_fee)
        self.fee_per_compute_unit = Decimal(
            fee_per_compute_unit if fee_per_compute_unit is not None else settings.fee_per_compute_unit
        )

    def estimate_fee(self, priority: str, compute_budget: int) -> Decimal:
        multiplier = PRIORITY_MULTIPLIERS.get(priority)
        if multiplier is None:
            raise ValueError(f"Unknown priority: {priority}")
        return (self.base_fee + self.fee_per_compute_unit * compute_budget) * multiplier

    def fee_balance(self) -> Decimal:
        return Decimal(load_state(self.engine).fee_balance)

    def top_up(self, amount: Decimal) -> Decimal:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Top-up amount must be positive")
        with Session(self.engine) as session:
            state = session.get(SchedulerState, 1) or _default_state()
            state.fee_balance = Decimal(state.fee_balance) + amount
            session.add(state)
            session.commit()
            balance = Decimal(state.fee_balance)
        logger.info(f"Fee balance topped up by {amount} to {balance}")
        return balance

    def _charge(self, total: Decimal):
        with Session(self.engine) as session:
            state = session.get(SchedulerState, 1) or _default_state()
            balance = Decimal(state.fee_balance)
            if balance < total:
                raise SchedulingFailure(
                    f"Prepaid fee balance {balance} cannot cover scheduling fee {total}"
                )
            state.fee_balance = balance - total
            session.add(state)
            session.commit()

    def schedule(
        self,
        handler,
        run_at: datetime,
        priority: str,
        compute_budget: int,
        prepaid_fee: Decimal | None = None,
        kwargs: dict | None = None,
        name: str = "job",
    ) -> str:
        """Schedule `handler(**kwargs)` at `run_at`; returns the schedule id."""
        estimate = self.estimate_fee(priority, compute_budget)
        fee = estimate if prepaid_fee is None else Decimal(prepaid_fee)
        if fee < estimate:
            raise SchedulingFailure(f"Prepaid fee {fee} is below the estimate {estimate}")
        self._charge(fee)
        return self._add(handler, run_at, kwargs or {}, name)

    def schedule_many(
        self,
        handler,
        run_at: datetime,
        priority: str,
        compute_budget: int,
        kwargs_list: list[dict],
        name: str = "job",
    ) -> list[str]:
        """Schedule several runs at the same time; all are paid for or none is scheduled."""
        fee = self.estimate_fee(priority, compute_budget)
        self._charge(fee * len(kwargs_list))
        return [self._add(handler, run_at, kwargs, name) for kwargs in kwargs_list]

    def _add(self, handler, run_at: datetime, kwargs: dict, name: str) -> str:
        job_id = f"{name}-{uuid4().hex[:12]}"
        self._scheduler.add_job(
            handler,
            trigger=DateTrigger(run_date=run_at),
            kwargs=kwargs,
            id=job_id,
            name=name,
            misfire_grace_time=60,
            coalesce=True,
        )
        return job_id

    def cancel(self, schedule_id: str) -> bool:
        if self._scheduler.get_job(schedule_id):
            self._scheduler.remove_job(schedule_id)
            return True
        return False

    def scheduled(self, name: str) -> list:
        return [job for job in self._scheduler.get_jobs() if job.name == name]


class AdaptiveProcessingLoop:
    def __init__(self, worker: Worker, orchestrator: TransactionOrchestrator, engine):
        self.worker = worker
        self.orchestrator = orchestrator
        self.engine = engine
        self._slot_locks: dict[int, asyncio.Lock] = {}

    def get_state(self) -> SchedulerState:
        return load_state(self.engine)

    async def fire(self, slot: int = 0, start: int = 0) -> BatchResult | None:
        """One invocation. Only slot 0 plans the next round."""
        state = self.get_state()
        if state.paused:
            logger.info(f"[loop] Paused: slot {slot} skipped and not rescheduled")
            self._log("skipped", slot, "Paused; chain stopped")
            return None

        lock = self._slot_locks.setdefault(slot, asyncio.Lock())
        if lock.locked():
            logger.warning(f"[loop] Slot {slot} still running, skipping overlapping firing")
            self._log("skipped", slot, "Previous run of this slot still in progress")
            return None

        async with lock:
            batch = None
            try:
                batch = await self.worker.process_requests(
                    start=start, count=state.batch_size, slot=slot
                )
            except Exception as e:
                logger.error(f"[loop] Slot {slot} processing error: {e}", exc_info=True)
                self._log("error", slot, str(e))

            if slot == 0:
                self._plan_next_round(state)
        return batch

    def _plan_next_round(self, state: SchedulerState):
        try:
            pending = self.worker.bridge.view("get_pending_request_count")
        except Exception as e:
            logger.error(f"[loop] Could not read pending count, using default delay: {e}")
            pending = None

        if pending is None:
            delay, slots = state.default_delay, 1
        else:
            delay = compute_delay(pending, state.thresholds, state.default_delay)
            slots = compute_fanout(pending, state.batch_size, state.max_parallel)

        run_at = _now() + timedelta(seconds=delay)
        try:
            self.orchestrator.schedule_many(
                self.fire,
                run_at,
                state.priority,
                state.compute_budget,
                [{"slot": i, "start": i * state.batch_size} for i in range(slots)],
                name=PROCESS_JOB_PREFIX,
            )
        except SchedulingFailure as e:
            self._halt(str(e))
            return

        update_state(
            self.engine,
            round=state.round + 1,
            last_run_at=_now(),
            next_run_at=run_at,
            last_pending_count=pending or 0,
        )
        logger.info(
            f"[loop] pending={pending} -> next round in {delay:.0f}s with {slots} slot(s)"
        )
        self._log(
            "success", 0, f"Scheduled {slots} slot(s)",
            pending_count=pending, next_delay=delay,
        )

    def _halt(self, reason: str):
        update_state(self.engine, halted_reason=reason, next_run_at=None)
        logger.critical(f"[loop] SCHEDULING FAILURE, chain halted until re-armed: {reason}")
        _notify(f"Processing loop halted: {reason}")
        self._log("error", 0, f"Scheduling failure: {reason}")

    def is_armed(self) -> bool:
        running = self._slot_locks.get(0)
        return bool(self.orchestrator.scheduled(PROCESS_JOB_PREFIX)) or bool(running and running.locked())

    def arm(self, delay: float | None = None) -> str | None:
        """Start (or restart) the chain with a single slot-0 run."""
        state = self.get_state()
        if state.paused:
            raise SchedulingFailure("Loop is paused; unpause before arming")
        if self.is_armed():
            logger.info("[loop] Already armed")
            return None

        delay = MIN_DELAY_SECONDS if delay is None else float(delay)
        run_at = _now() + timedelta(seconds=delay)
        schedule_id = self.orchestrator.schedule(
            self.fire,
            run_at,
            state.priority,
            state.compute_budget,
            kwargs={"slot": 0, "start": 0},
            name=PROCESS_JOB_PREFIX,
        )
        update_state(self.engine, halted_reason=None, next_run_at=run_at)
        logger.info(f"[loop] Armed: first run in {delay:.0f}s ({schedule_id})")
        return schedule_id

    def pause(self):
        update_state(self.engine, paused=True)
        logger.warning("[loop] Paused")

    def unpause(self):
        update_state(self.engine, paused=False)
        logger.info("[loop] Unpaused; call arm to resume processing")

    def set_max_parallel_transactions(self, n: int):
        if not 1 <= n <= MAX_PARALLEL_SLOTS:
            raise ValueError(f"max parallel must be between 1 and {MAX_PARALLEL_SLOTS}")
        update_state(self.engine, max_parallel=n)

    def set_batch_size(self, n: int):
        if not 1 <= n <= MAX_BATCH_SIZE:
            raise ValueError(f"batch size must be between 1 and {MAX_BATCH_SIZE}")
        update_state(self.engine, batch_size=n)

    def set_threshold_to_delay(self, table: dict, default_delay: float | None = None):
        pairs = normalize_thresholds(table)
        state = self.get_state()
        default_delay = state.default_delay if default_delay is None else float(default_delay)
        if not MIN_DELAY_SECONDS <= default_delay <= MAX_DELAY_SECONDS:
            raise ValueError("default delay out of bounds")
        if pairs and pairs[-1][0] > 0 and default_delay < pairs[-1][1]:
            raise ValueError(
                f"Default delay {default_delay}s is faster than the lowest threshold's {pairs[-1][1]}s"
            )
        update_state(
            self.engine,
            thresholds={str(t): d for t, d in pairs},
            default_delay=default_delay,
        )

    def set_default_delay(self, delay: float):
        """Delay used when the backlog is below every threshold."""
        self.set_threshold_to_delay(self.get_state().thresholds, default_delay=delay)

    def top_up_fees(self, amount: Decimal) -> Decimal:
        """Fund future runs. A halted loop still needs an explicit arm."""
        balance = self.orchestrator.top_up(amount)
        if self.get_state().halted_reason:
            logger.info(f"[loop] Fees topped up to {balance} while halted; arm to resume")
        return balance

    def set_priority(self, priority: str, compute_budget: int | None = None):
        if priority not in PRIORITY_MULTIPLIERS:
            raise ValueError(f"Unknown priority: {priority}")
        changes = {"priority": priority}
        if compute_budget is not None:
            if compute_budget <= 0:
                raise ValueError("compute budget must be positive")
            changes["compute_budget"] = compute_budget
        update_state(self.engine, **changes)

    def status(self) -> dict:
        state = self.get_state()
        jobs = self.orchestrator.scheduled(PROCESS_JOB_PREFIX)
        return {
            "paused": state.paused,
            "halted_reason": state.halted_reason,
            "armed": self.is_armed(),
            "round": state.round,
            "batch_size": state.batch_size,
            "max_parallel": state.max_parallel,
            "thresholds": state.thresholds,
            "default_delay": state.default_delay,
            "priority": state.priority,
            "compute_budget": state.compute_budget,
            "fee_balance": str(state.fee_balance),
            "fee_per_run": str(self.orchestrator.estimate_fee(state.priority, state.compute_budget)),
            "last_pending_count": state.last_pending_count,
            "last_run_at": state.last_run_at.isoformat() if state.last_run_at else None,
            "next_run_at": state.next_run_at.isoformat() if state.next_run_at else None,
            "scheduled_slots": len(jobs),
        }

    def _log(self, status: str, slot: int | None, message: str, pending_count=None, next_delay=None):
        with Session(self.engine) as session:
            session.add(JobLog(
                job="schedule",
                status=status,
                slot=slot,
                pending_count=pending_count,
                next_delay=next_delay,
                message=message,
            ))
            session.commit()


_loop: AdaptiveProcessingLoop | None = None


def get_loop() -> AdaptiveProcessingLoop:
    global _loop
    if _loop is None:
        from vaultbridge.database import engine
        from vaultbridge.engine.worker import get_worker

        _loop = AdaptiveProcessingLoop(
            worker=get_worker(),
            orchestrator=TransactionOrchestrator(scheduler, engine),
            engine=engine,
        )
    return _loop


def start_scheduler():
    """Start APScheduler, the maintenance jobs and (unless paused or halted) the loop."""
    from vaultbridge.engine.reconcile import run_reconcile
    from vaultbridge.engine.sweeper import run_sweep

    loop = get_loop()
    state = loop.get_state()

    scheduler.add_job(
        run_reconcile,
        trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
        id="reconcile",
        name="reconcile",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        id="sweep",
        name="sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()

    if not settings.scheduler_autostart:
        logger.info("Scheduler started; processing loop not armed (autostart off)")
    elif state.paused or state.halted_reason:
        logger.warning(
            f"Scheduler started; processing loop not armed "
            f"(paused={state.paused}, halted={state.halted_reason})"
        )
    else:
        try:
            loop.arm()
        except SchedulingFailure as e:
            loop._halt(str(e))
    logger.info(f"Scheduler started with {len(scheduler.get_jobs())} jobs")


def stop_scheduler():
    """Shut down the scheduler."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
        "loop": get_loop().status(),
    }
