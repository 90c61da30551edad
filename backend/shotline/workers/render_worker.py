"""render queue: start or resume an external render and follow it to the end.

A RenderJob moves ``pending/queued -> rendering -> completed | failed |
cancelled``. The external handle is persisted before the first poll, so a
redelivered job resumes polling instead of starting a second render.
"""

import logging
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy import and_, or_

from shotline.models.caption_project import CaptionProject
from shotline.models.render_job import (
    CLAIMABLE_RENDER_STATUSES,
    TERMINAL_RENDER_STATUSES,
    RenderJob,
    RenderStatus,
)
from shotline.runtime.retry import retry_with_backoff
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.schemas.render import RenderHandle, RenderProgress
from shotline.services.quota_service import render_minutes_kind
from shotline.workers.common import JobLogger, Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "render"

RENDERING = (RenderStatus.RENDERING.value,)


def render_duration_minutes(job: RenderJob) -> float:
    project = (job.input_spec or {}).get("project") or {}
    try:
        return max(float(project.get("duration") or 0), 0.0) / 60
    except (TypeError, ValueError):
        return 0.0


class RenderProcessor:
    def __init__(self, services: Services):
        self.services = services
        self.store = services.store
        self.settings = services.settings
        self.clock = services.clock

    def __call__(self, job: JobContext) -> dict[str, Any]:
        render_job_id = job.payload["render_job_id"]
        log = job_logger(logger, "Render", render_job_id)

        record = self.store.get(RenderJob, render_job_id)
        if record is None:
            log.warning("Render job not found, skipping")
            return skipped("not found")

        if record.status in TERMINAL_RENDER_STATUSES:
            if record.status == RenderStatus.COMPLETED.value and record.output_url and not record.thumbnail_url:
                log.info("Backfilling missing thumbnail")
                self.services.side_effects.fire("Thumbnail", self._thumbnail, record, record.output_url, log=log)
            return skipped(f"already {record.status}")

        if record.status == RenderStatus.RENDERING.value and record.render_id:
            log.info(f"Resuming render {record.render_id}")
            handle = RenderHandle(render_id=record.render_id, bucket_name=record.bucket_name or "")
        else:
            handle = self._claim_and_start(record, log)
            if handle is None:
                return skipped("claimed by another worker")

        return self._poll(record, handle, log)

    def _claim_and_start(self, record: RenderJob, log: JobLogger) -> RenderHandle | None:
        stale_before = self.clock.now() - timedelta(seconds=self.settings.render_claim_stale_s)
        claimable = or_(
            RenderJob.status.in_(CLAIMABLE_RENDER_STATUSES),
            # Claimed but the claimant died before writing a handle
            and_(
                RenderJob.status == RenderStatus.RENDERING.value,
                RenderJob.render_id.is_(None),
                RenderJob.started_at < stale_before,
            ),
        )
        if not self.store.conditional_update(
            RenderJob,
            record.id,
            claimable,
            status=RenderStatus.RENDERING.value,
            started_at=self.clock.now(),
            error=None,
        ):
            log.info("Already claimed, skipping")
            return None
        if record.status == RenderStatus.RENDERING.value:
            log.warning(f"Reclaimed stale start from {record.started_at}")

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            log.warning(f"Start attempt {attempt} failed: {error}. Retrying in {delay:.1f}s")

        try:
            handle = retry_with_backoff(
                lambda: self.services.render.start(record),
                max_retries=self.settings.render_start_retries,
                initial_delay=self.settings.render_start_initial_delay_s,
                max_delay=self.settings.render_start_max_delay_s,
                on_retry=on_retry,
                sleep=self.clock.sleep,
                retry_on=(httpx.HTTPError,),
            )
        except Exception as e:
            log.error(f"Failed to start render: {e}")
            self.store.conditional_update(
                RenderJob,
                record.id,
                statuses=RENDERING,
                status=RenderStatus.FAILED.value,
                error=f"Failed to start render: {e}",
                completed_at=self.clock.now(),
            )
            raise

        # Written once; never overwritten or cleared
        if not self.store.conditional_update(
            RenderJob,
            record.id,
            RenderJob.render_id.is_(None),
            render_id=handle.render_id,
            bucket_name=handle.bucket_name,
        ):
            current = self.store.get(RenderJob, record.id)
            log.warning(f"External handle already set to {current.render_id if current else None}")
            if current is None or not current.render_id:
                return None
            return RenderHandle(render_id=current.render_id, bucket_name=current.bucket_name or "")

        log.info(f"Started render {handle.render_id}")
        return handle

    def _poll(self, record: RenderJob, handle: RenderHandle, log: JobLogger) -> dict[str, Any]:
        interval = self.settings.poll_interval_s
        max_iterations = max(int(self.settings.render_timeout_s / interval), 1)
        progress_floor = record.progress or 0

        for _ in range(max_iterations):
            self.clock.sleep(interval)

            current = self.store.get(RenderJob, record.id)
            if current is None:
                log.warning("Render job deleted while rendering")
                return skipped("deleted")
            if current.status == RenderStatus.CANCELLED.value:
                log.info("Cancelled, stopping")
                return {"status": RenderStatus.CANCELLED.value, "render_job_id": str(record.id)}
            if current.status != RenderStatus.RENDERING.value:
                return skipped(f"status changed to {current.status}")

            try:
                progress = self.services.render.poll_progress(handle.render_id, handle.bucket_name)
            except Exception as e:
                log.warning(f"Progress check failed: {e}")
                self.clock.sleep(self.settings.render_transient_error_delay_s)
                continue

            progress_floor = max(progress_floor, current.progress or 0, progress.percent)

            if progress.fatal_error:
                log.error(f"Render failed: {progress.fatal_error}")
                self.store.conditional_update(
                    RenderJob,
                    record.id,
                    statuses=RENDERING,
                    status=RenderStatus.FAILED.value,
                    error=progress.fatal_error,
                    completed_at=self.clock.now(),
                    **progress.metrics(),
                )
                return {"status": RenderStatus.FAILED.value, "error": progress.fatal_error}

            if progress.done:
                return self._complete(record, progress, log)

            self.store.conditional_update(
                RenderJob, record.id, statuses=RENDERING, progress=progress_floor, **progress.metrics()
            )

        minutes = self.settings.render_timeout_s / 60
        error = f"Render timed out after {minutes:g} minutes"
        log.error(error)
        self.store.conditional_update(
            RenderJob,
            record.id,
            statuses=RENDERING,
            status=RenderStatus.FAILED.value,
            error=error,
            completed_at=self.clock.now(),
        )
        return {"status": RenderStatus.FAILED.value, "error": error}

    def _complete(self, record: RenderJob, progress: RenderProgress, log: JobLogger) -> dict[str, Any]:
        if not self.store.conditional_update(
            RenderJob,
            record.id,
            statuses=RENDERING,
            status=RenderStatus.COMPLETED.value,
            progress=100,
            output_url=progress.output_url,
            output_size=progress.output_size,
            completed_at=self.clock.now(),
            **progress.metrics(),
        ):
            return skipped("settled concurrently")
        log.info(f"Completed: {progress.output_url}")

        side_effects = self.services.side_effects
        minutes = render_duration_minutes(record)
        if minutes > 0:
            side_effects.run(
                "Quota commit",
                self.services.quota.commit,
                record.owner_id,
                render_minutes_kind(record.render_type),
                minutes,
                log=log,
            )
        if progress.output_url:
            side_effects.fire("Thumbnail", self._thumbnail, record, progress.output_url, log=log)
        side_effects.fire("Webhook", self._notify, record, progress.output_url, log=log)

        return {
            "status": RenderStatus.COMPLETED.value,
            "render_job_id": str(record.id),
            "output_url": progress.output_url,
        }

    def _thumbnail(self, record: RenderJob, output_url: str) -> None:
        url = self.services.thumbnails.create_thumbnail(
            output_url, f"thumbnails/renders/{record.owner_id}/{record.id}.jpg"
        )
        self.store.update(RenderJob, record.id, thumbnail_url=url)
        if record.caption_project_id:
            self.store.conditional_update(
                CaptionProject, record.caption_project_id, CaptionProject.thumbnail_url.is_(None), thumbnail_url=url
            )

    def _notify(self, record: RenderJob, output_url: str | None) -> None:
        data = {
            "render_job_id": str(record.id),
            "status": RenderStatus.COMPLETED.value,
            "output_url": output_url,
            "render_type": record.render_type,
        }
        if record.webhook_url and self.store.conditional_update(
            RenderJob, record.id, RenderJob.webhook_sent.is_(False), webhook_sent=True
        ):
            self.services.webhooks.notify_url(record.webhook_url, "render.completed", data)
        self.services.webhooks.trigger(record.owner_id, "render.completed", data)


def create_render_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        RenderProcessor(services),
        concurrency=settings.render_concurrency,
        lock_duration=settings.render_lock_duration_s,
    )
