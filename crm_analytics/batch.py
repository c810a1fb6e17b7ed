"""
Continue-on-error batch runner.

Every population-wide job (RFM, CLV, churn, recommendations) awaits one
customer at a time and records an explicit per-item result, so a single
failure is counted instead of aborting the run.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from crm_analytics.exceptions import AnalyticsError
from crm_analytics.observability import Timer, correlation_context, generate_correlation_id, get_logger, metrics

logger = get_logger(__name__)

T = TypeVar("T")

# Cap on error messages kept in a summary
MAX_RECORDED_ERRORS = 50


@dataclass
class ItemResult(Generic[T]):
    """Outcome for one customer in a batch."""
    item_id: int
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, item_id: int, value: T) -> "ItemResult[T]":
        return cls(item_id=item_id, ok=True, value=value)

    @classmethod
    def failure(cls, item_id: int, error: BaseException) -> "ItemResult[T]":
        return cls(item_id=item_id, ok=False, error=f"{type(error).__name__}: {error}")


@dataclass
class BatchSummary:
    """Aggregate of one batch run."""
    job: str
    total: int = 0
    processed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    aggregates: Dict[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    def add(self, result: ItemResult) -> None:
        self.total += 1
        if result.ok:
            self.processed += 1
        else:
            self.failed += 1
            if len(self.errors) < MAX_RECORDED_ERRORS:
                self.errors.append({"customer_id": result.item_id, "error": result.error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 2),
            **self.aggregates,
        }


async def run_batch(
    job: str,
    item_ids: Iterable[int],
    fn: Callable[[int], Awaitable[T]],
    aggregate: Optional[Callable[[BatchSummary, T], None]] = None,
    initial: Optional[Dict[str, Any]] = None,
) -> BatchSummary:
    """
    Await ``fn(item_id)`` for each id in turn.

    Args:
        job: Job name used in logs and the summary
        item_ids: Customer ids to process, in order
        fn: Per-item coroutine
        aggregate: Optional hook folding each successful value into the summary
        initial: Starting value of ``summary.aggregates``

    Returns:
        BatchSummary with per-item counts and job-specific aggregates
    """
    summary = BatchSummary(job=job, aggregates=dict(initial or {}))

    with correlation_context(generate_correlation_id(job)), Timer(f"batch_{job}", logger) as timer:
        logger.info(f"Starting {job} batch")
        for item_id in item_ids:
            try:
                value = await fn(item_id)
                result = ItemResult.success(item_id, value)
            except AnalyticsError as e:
                result = ItemResult.failure(item_id, e)
                logger.warning(f"{job} failed for customer {item_id}: {e}")
            except Exception as e:
                result = ItemResult.failure(item_id, e)
                logger.error(f"{job} crashed for customer {item_id}: {e}", exc_info=True)

            summary.add(result)
            metrics.record_item(job, result.ok)
            if result.ok and aggregate is not None:
                aggregate(summary, result.value)

    summary.duration_ms = timer.elapsed_ms
    logger.info(
        f"Finished {job} batch",
        extra={"total": summary.total, "processed": summary.processed, "failed": summary.failed},
    )
    return summary
