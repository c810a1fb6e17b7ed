"""
Batch orchestrator for population-wide analytics, using APScheduler.

Jobs (intervals configurable):
- RFM segmentation (every 6 hours)
- CLV prediction (every 24 hours)
- Churn scoring (every 12 hours)
- Recommendation generation (every 24 hours)
- Expired cache cleanup (every hour)

Features:
- Job execution history with durations
- Prevents job pile-up (max_instances=1, coalesce)
- Manual "run all now" running the four scorers in sequence
- Optional one-off run at startup
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from crm_analytics.batch import BatchSummary
from crm_analytics.config import SchedulerConfig
from crm_analytics.events import (
    EventBus,
    emit_batch_completed,
    emit_batch_failed,
    emit_batch_started,
)
from crm_analytics.observability import correlation_context, generate_correlation_id, get_logger

logger = get_logger(__name__)

INITIAL_RUN_JOB_ID = "initial_analytics"


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    last_duration_ms: Optional[float] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class AnalyticsScheduler:
    """
    Periodic batch recomputation with monitoring.

    Usage:
        scheduler = AnalyticsScheduler(rfm, clv, churn, recommendations, cache)
        await scheduler.start()

        # Later...
        scheduler.shutdown()
    """

    def __init__(
        self,
        rfm_service,
        clv_service,
        churn_service,
        recommendation_service,
        cache,
        scheduler_config: SchedulerConfig = None,
        bus: Optional[EventBus] = None,
    ):
        self.rfm = rfm_service
        self.clv = clv_service
        self.churn = churn_service
        self.recommendations = recommendation_service
        self.cache = cache
        self.config = scheduler_config or SchedulerConfig()
        self._bus = bus
        self._tz = ZoneInfo(self.config.timezone)

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._job_started: Dict[str, datetime] = {}
        self._max_history = self.config.max_history
        self._started = False

    def _now(self) -> datetime:
        return datetime.now(self._tz)

    async def start(self) -> None:
        """Start the scheduler and register all jobs."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._tz)
        self._scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_jobs()

        if self.config.run_initial_analytics:
            self._add_job(
                job_id=INITIAL_RUN_JOB_ID,
                name="Initial Analytics",
                description="Run every scorer once at startup",
                func=self.run_all_analytics_now,
                trigger=None,
                next_run_time=self._now(),
            )

        self._scheduler.start()
        self._started = True
        self._refresh_next_runs()
        logger.info("Analytics scheduler started", extra={"jobs": len(self._job_info)})

    def _register_jobs(self) -> None:
        """Register the recurring analytics jobs."""
        cfg = self.config

        self._add_job(
            job_id="rfm_analysis",
            name="RFM Analysis",
            description="Recompute RFM scores and segments for all customers",
            func=self._job_runner("rfm_analysis", self.rfm.calculate_all_customers_rfm),
            trigger=IntervalTrigger(hours=cfg.rfm_interval_hours),
        )

        self._add_job(
            job_id="clv_prediction",
            name="CLV Prediction",
            description="Recompute predicted lifetime value for all customers",
            func=self._job_runner("clv_prediction", self.clv.calculate_all_customers_clv),
            trigger=IntervalTrigger(hours=cfg.clv_interval_hours),
        )

        self._add_job(
            job_id="churn_scoring",
            name="Churn Risk Scoring",
            description="Recompute churn risk for all customers",
            func=self._job_runner("churn_scoring", self.churn.calculate_all_customers_churn_risk),
            trigger=IntervalTrigger(hours=cfg.churn_interval_hours),
        )

        self._add_job(
            job_id="recommendation_generation",
            name="Recommendation Generation",
            description="Regenerate personalized recommendations for all customers",
            func=self._job_runner("recommendation_generation", self.recommendations.generate_all_recommendations),
            trigger=IntervalTrigger(hours=cfg.recommendations_interval_hours),
        )

        self._add_job(
            job_id="cache_cleanup",
            name="Cache Cleanup",
            description="Delete expired cache entries",
            func=self._run_cache_cleanup,
            trigger=IntervalTrigger(hours=cfg.cache_cleanup_interval_hours),
        )

        logger.info(f"Registered {len(self._job_info)} analytics jobs")

    def _add_job(
        self,
        job_id: str,
        name: str,
        description: str,
        func: Callable,
        trigger,
        next_run_time: Optional[datetime] = None,
    ) -> None:
        kwargs = {"next_run_time": next_run_time} if next_run_time else {}
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
            **kwargs,
        )
        self._job_info[job_id] = JobInfo(id=job_id, name=name, description=description)
        self._job_history[job_id] = []

    def _refresh_next_runs(self) -> None:
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id)
            info.next_run = job.next_run_time if job else None

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB IMPLEMENTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def _job_runner(
        self,
        job_id: str,
        batch_fn: Callable[[], Awaitable[BatchSummary]]
    ) -> Callable[[], Awaitable[Dict[str, Any]]]:
        """Wrap a batch function with correlation, timing and lifecycle events."""

        async def _run() -> Dict[str, Any]:
            self._job_started[job_id] = self._now()
            with correlation_context(generate_correlation_id(job_id)):
                logger.info(f"Starting job {job_id}")
                if self._bus:
                    await emit_batch_started(self._bus, job_id)
                try:
                    summary = await batch_fn()
                except Exception as e:
                    if self._bus:
                        await emit_batch_failed(self._bus, job_id, str(e))
                    raise

                result = summary.to_dict()
                logger.info(
                    f"Job {job_id} complete",
                    extra={"processed": summary.processed, "failed": summary.failed},
                )
                if self._bus:
                    await emit_batch_completed(self._bus, job_id, result)
                return result

        _run.__name__ = f"run_{job_id}"
        return _run

    async def _run_cache_cleanup(self) -> Dict[str, Any]:
        self._job_started["cache_cleanup"] = self._now()
        with correlation_context(generate_correlation_id("cache_cleanup")):
            removed = await self.cache.clean_expired()
            return {"removed": removed}

    async def run_all_analytics_now(self) -> Dict[str, Dict[str, Any]]:
        """
        Run RFM, CLV, churn and recommendations in sequence.

        Recommendations run last so they see fresh segments.

        Returns:
            Summary per job
        """
        self._job_started[INITIAL_RUN_JOB_ID] = self._now()
        results: Dict[str, Dict[str, Any]] = {}
        with correlation_context(generate_correlation_id("run_all")):
            logger.info("Running all analytics now")
            for name, fn in (
                ("rfm", self.rfm.calculate_all_customers_rfm),
                ("clv", self.clv.calculate_all_customers_clv),
                ("churn", self.churn.calculate_all_customers_churn_risk),
                ("recommendations", self.recommendations.generate_all_recommendations),
            ):
                if self._bus:
                    await emit_batch_started(self._bus, name)
                summary = await fn()
                results[name] = summary.to_dict()
                if self._bus:
                    await emit_batch_completed(self._bus, name, results[name])
            logger.info("All analytics complete")
        return results

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _finish(self, job_id: str, status: JobStatus, **fields) -> JobExecution:
        finished = self._now()
        started = self._job_started.pop(job_id, finished)
        execution = JobExecution(
            job_id=job_id,
            started_at=started,
            finished_at=finished,
            status=status,
            duration_ms=(finished - started).total_seconds() * 1000,
            **fields,
        )

        info = self._job_info[job_id]
        info.last_run = started
        info.last_status = status
        info.last_duration_ms = execution.duration_ms
        job = self._scheduler.get_job(job_id) if self._scheduler else None
        info.next_run = job.next_run_time if job else None

        self._add_execution(job_id, execution)
        return execution

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        if event.job_id not in self._job_info:
            return
        info = self._job_info[event.job_id]
        info.run_count += 1
        self._finish(event.job_id, JobStatus.SUCCESS, result=event.retval)

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        if event.job_id not in self._job_info:
            return
        info = self._job_info[event.job_id]
        info.run_count += 1
        info.error_count += 1
        info.last_error = str(event.exception) if event.exception else "Unknown error"
        self._finish(event.job_id, JobStatus.FAILED, error=info.last_error)

        logger.error(
            f"Job {event.job_id} failed: {info.last_error}",
            extra={"job_id": event.job_id, "error": info.last_error}
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        if event.job_id not in self._job_info:
            return
        self._finish(event.job_id, JobStatus.MISSED)
        logger.warning(
            f"Job {event.job_id} missed scheduled execution",
            extra={"job_id": event.job_id}
        )

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)
        if len(history) > self._max_history:
            del history[:-self._max_history]

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """All jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else "",
                "next_run": job.next_run_time.isoformat() if job and job.next_run_time else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "last_duration_ms": round(info.last_duration_ms, 2) if info.last_duration_ms is not None else None,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Execution history for a job, newest first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "started_at": e.started_at.isoformat() if e.started_at else None,
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": round(e.duration_ms, 2) if e.duration_ms is not None else None,
            "error": e.error,
        } for e in reversed(history)]

    def _require_job(self, job_id: str):
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")
        if not self.is_running:
            raise RuntimeError("Scheduler is not running")
        job = self._scheduler.get_job(job_id)
        if not job:
            raise ValueError(f"Job not found: {job_id}")
        return job

    async def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Trigger a job to run immediately on the scheduler."""
        job = self._require_job(job_id)
        logger.info(f"Manually triggering job: {job_id}")
        job.modify(next_run_time=self._now())
        return {"status": "triggered", "job_id": job_id}

    def pause_job(self, job_id: str) -> None:
        self._require_job(job_id)
        self._scheduler.pause_job(job_id)
        logger.info(f"Paused job: {job_id}")

    def resume_job(self, job_id: str) -> None:
        self._require_job(job_id)
        self._scheduler.resume_job(job_id)
        logger.info(f"Resumed job: {job_id}")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Analytics scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None
