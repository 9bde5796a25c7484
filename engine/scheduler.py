"""
Scheduled pipeline runs on an APScheduler AsyncIOScheduler.

The schedule comes from the root TRIGGER step's config
(`intervalSeconds` or `cron`) unless given explicitly.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.exceptions import ConfigValidationError, RateLimitExceeded
from engine.checkpoint import CheckpointStore
from engine.orchestrator import PipelineOrchestrator
from engine.results import RunResult
from schemas.pipeline import PipelineDefinition, StepType

logger = logging.getLogger(__name__)


def _root_trigger_config(definition: PipelineDefinition) -> Dict[str, Any]:
    targets = {edge.target for edge in definition.resolved_edges()}
    for step in definition.steps:
        if step.step_type == StepType.TRIGGER and step.key not in targets:
            return step.config.adapter_settings()
    return {}


def trigger_for(
    definition: PipelineDefinition,
    interval_seconds: Optional[float] = None,
    cron: Optional[str] = None,
) -> BaseTrigger:
    """
    Build the APScheduler trigger for a pipeline.

    Raises:
        ConfigValidationError: Neither an interval nor a cron expression is available
    """
    if interval_seconds is None and cron is None:
        config = _root_trigger_config(definition)
        interval_seconds = config.get("intervalSeconds")
        cron = config.get("cron")

    if cron:
        try:
            return CronTrigger.from_crontab(cron)
        except ValueError as e:
            raise ConfigValidationError(
                f"Invalid cron expression '{cron}' for pipeline {definition.code}",
                code="INVALID_CONFIG",
                context={"pipeline_code": definition.code, "cron": cron},
                original_exception=e
            )
    if interval_seconds:
        return IntervalTrigger(seconds=float(interval_seconds))

    raise ConfigValidationError(
        f"Pipeline {definition.code} has no schedule (intervalSeconds or cron)",
        code="MISSING_CONFIG",
        context={"pipeline_code": definition.code}
    )


class PipelineScheduler:
    """
    Runs pipelines on a schedule through the orchestrator.

    Job failures are logged and never propagate into the scheduler.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.scheduler = scheduler or AsyncIOScheduler()
        self.last_results: Dict[str, RunResult] = {}

    @staticmethod
    def job_id(definition: PipelineDefinition) -> str:
        return f"pipeline:{definition.code}"

    def schedule(
        self,
        definition: PipelineDefinition,
        interval_seconds: Optional[float] = None,
        cron: Optional[str] = None,
        checkpoint_store_factory: Optional[Callable[[], CheckpointStore]] = None,
    ) -> str:
        """Register (or replace) the job for a pipeline; returns the job id"""
        trigger = trigger_for(definition, interval_seconds=interval_seconds, cron=cron)
        job_id = self.job_id(definition)
        # Pending jobs of a stopped scheduler are not deduplicated by replace_existing
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
        self.scheduler.add_job(
            self.run_pipeline_job,
            trigger=trigger,
            args=[definition, checkpoint_store_factory],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Scheduled pipeline {definition.code} ({trigger})")
        return job_id

    def unschedule(self, definition: PipelineDefinition) -> bool:
        job_id = self.job_id(definition)
        if self.scheduler.get_job(job_id) is None:
            return False
        self.scheduler.remove_job(job_id)
        logger.info(f"Unscheduled pipeline {definition.code}")
        return True

    def jobs(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    async def run_pipeline_job(
        self,
        definition: PipelineDefinition,
        checkpoint_store_factory: Optional[Callable[[], CheckpointStore]] = None,
    ) -> Optional[RunResult]:
        """Job body: one run of the pipeline"""
        logger.info(f"Scheduler: starting pipeline {definition.code}")
        try:
            store = checkpoint_store_factory() if checkpoint_store_factory else None
            if hasattr(store, "load"):
                await store.load()
            result = await self.orchestrator.run(definition, checkpoint_store=store)
        except RateLimitExceeded as e:
            logger.warning(f"Scheduler: pipeline {definition.code} rate limited, retry in {e.retry_after_ms}ms")
            return None
        except Exception as e:
            logger.error(f"Scheduler: pipeline {definition.code} job failed - {e}", exc_info=True)
            return None

        self.last_results[definition.code] = result
        logger.info(f"Scheduler: pipeline {definition.code} finished {result.status.value}")
        return result

    def start(self) -> None:
        """Start the scheduler; needs a running event loop"""
        self.scheduler.start()
        logger.info("Pipeline scheduler started")

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Pipeline scheduler stopped")
