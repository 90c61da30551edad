"""caption queue: the transcribe -> compose -> render pipeline for one project.

The pipeline never subscribes to completion events. It enqueues work for the
transcription and render workers and re-reads their records on an interval,
so each worker can restart independently. Progress bands: transcription
0-40, composition 40-50, render 50-95, finished 100.

Nothing is retried at this level. A failed stage marks the project failed
and the caller must create a new project.
"""

import logging
from typing import Any

from shotline.exceptions import PipelineCancelledError, StageFailedError
from shotline.models.caption_project import (
    ACTIVE_CAPTION_STATUSES,
    TERMINAL_CAPTION_STATUSES,
    CaptionPreset,
    CaptionProject,
    CaptionStatus,
)
from shotline.models.media_file import MediaFile
from shotline.models.render_job import RenderJob, RenderStatus, RenderType
from shotline.models.transcription import OPEN_TRANSCRIPTION_STATUSES, Transcription, TranscriptionStatus
from shotline.runtime.worker import JobContext, WorkerHandle, WorkerRuntime
from shotline.services.composition_service import VideoMeta, generate_composition
from shotline.services.quota_service import QuotaKind
from shotline.workers.common import JobLogger, Services, job_logger, skipped

logger = logging.getLogger(__name__)

QUEUE_NAME = "caption"
RENDER_PRIORITY = 1  # ahead of ad-hoc template renders
LOG_EVERY = 15  # poll iterations between "still waiting" lines

STAGE_ORDER = [status.value for status in CaptionStatus if status is not CaptionStatus.FAILED]


class PipelineRun:
    """Per-delivery state: the project as loaded and the highest progress written."""

    def __init__(self, project: CaptionProject, log: JobLogger):
        self.project = project
        self.log = log
        self.progress = project.progress or 0

    @property
    def id(self):
        return self.project.id

    def bump(self, value: int) -> int:
        self.progress = max(self.progress, value)
        return self.progress


class CaptionPipeline:
    def __init__(self, services: Services):
        self.services = services
        self.store = services.store
        self.settings = services.settings
        self.clock = services.clock

    def __call__(self, job: JobContext) -> dict[str, Any]:
        project_id = job.payload["caption_project_id"]
        log = job_logger(logger, "Caption", project_id)

        project = self.store.get(CaptionProject, project_id)
        if project is None:
            log.warning("Project not found, skipping")
            return skipped("not found")
        if project.status in TERMINAL_CAPTION_STATUSES:
            return skipped(f"already {project.status}")

        run = PipelineRun(project, log)
        try:
            if project.status == CaptionStatus.PENDING.value and not self._admit(run):
                return skipped("claimed by another worker")
            transcription = self._transcription_stage(run)
            composition = self._composition_stage(run, transcription)
            render_job = self._render_stage(run, composition)
            return self._complete(run, render_job)
        except PipelineCancelledError as e:
            log.info(f"Stopped: project marked failed during {e.stage}")
            return {"success": False, "stage": e.stage, "cancelled": True}
        except StageFailedError as e:
            log.error(f"{e.stage} stage failed: {e.message}")
            self._fail(run, e.message)
            return {"success": False, "stage": e.stage, "error": e.message}
        except Exception as e:
            log.error(f"Pipeline error: {e}")
            self._fail(run, str(e) or type(e).__name__)
            raise

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def _admit(self, run: PipelineRun) -> bool:
        project = run.project
        if not self.services.quota.check_and_reserve(project.owner_id, QuotaKind.CAPTION_PROJECTS, 1):
            raise StageFailedError("admission", "Caption project quota exceeded")

        # Only the delivery that moves the project out of pending commits usage
        if not self.store.conditional_update(
            CaptionProject,
            run.id,
            statuses=(CaptionStatus.PENDING,),
            status=CaptionStatus.TRANSCRIBING.value,
            progress=run.bump(5),
            transcription_started_at=self.clock.now(),
        ):
            return False
        project.status = CaptionStatus.TRANSCRIBING.value
        self.services.side_effects.run(
            "Quota commit",
            self.services.quota.commit,
            project.owner_id,
            QuotaKind.CAPTION_PROJECTS,
            1,
            log=run.log,
        )
        return True

    # -------------------------------------------------------------------------
    # Stage bookkeeping
    # -------------------------------------------------------------------------

    def _advance(self, run: PipelineRun, status: CaptionStatus, progress: int, **fields: Any) -> None:
        """Move forward to ``status``; never backwards.

        A project already past ``status`` (a resumed run) is left as is.
        """
        allowed = STAGE_ORDER[: STAGE_ORDER.index(status.value) + 1]
        if self.store.conditional_update(
            CaptionProject, run.id, statuses=allowed, status=status.value, progress=run.bump(progress), **fields
        ):
            run.project.status = status.value
            return
        self._check_cancelled(run, status.value)

    def _set_progress(self, run: PipelineRun, progress: int) -> None:
        if progress > run.progress:
            self.store.conditional_update(
                CaptionProject, run.id, statuses=ACTIVE_CAPTION_STATUSES, progress=run.bump(progress)
            )

    def _check_cancelled(self, run: PipelineRun, stage: str) -> None:
        current = self.store.get(CaptionProject, run.id)
        if current is None or current.status == CaptionStatus.FAILED.value:
            raise PipelineCancelledError(stage)

    def _fail(self, run: PipelineRun, error: str) -> None:
        if self.store.conditional_update(
            CaptionProject,
            run.id,
            statuses=ACTIVE_CAPTION_STATUSES,
            status=CaptionStatus.FAILED.value,
            error=error,
        ):
            self.services.side_effects.fire(
                "Webhook trigger",
                self.services.webhooks.trigger,
                run.project.owner_id,
                "caption.failed",
                {"caption_project_id": str(run.id), "error": error},
                log=run.log,
            )

    def _poll_limit(self, timeout_s: float) -> int:
        return max(int(timeout_s / self.settings.poll_interval_s), 1)

    # -------------------------------------------------------------------------
    # Transcription (0-40%)
    # -------------------------------------------------------------------------

    def _transcription_stage(self, run: PipelineRun) -> Transcription:
        project = run.project
        self._advance(run, CaptionStatus.TRANSCRIBING, 5)

        transcription = None
        if project.transcription_id:
            transcription = self.store.get(Transcription, project.transcription_id)
        if transcription is None:
            transcription = self._find_or_create_transcription(run)
            # Attach before waiting so a redelivery resumes this transcription
            self.store.conditional_update(
                CaptionProject, run.id, statuses=ACTIVE_CAPTION_STATUSES, transcription_id=transcription.id
            )
            project.transcription_id = transcription.id

        if transcription.status == TranscriptionStatus.FAILED.value:
            raise StageFailedError("transcription", f"Transcription failed: {transcription.error or 'unknown error'}")
        if transcription.status != TranscriptionStatus.COMPLETED.value:
            transcription = self._wait_for_transcription(run, transcription.id)

        self._advance(run, CaptionStatus.TRANSCRIBING, 40, transcription_completed_at=self.clock.now())
        return transcription

    def _find_or_create_transcription(self, run: PipelineRun) -> Transcription:
        project = run.project
        file = self.store.get(MediaFile, project.file_id)
        if file is None:
            raise StageFailedError("transcription", "Source file not found")
        if not file.cdn_url:
            raise StageFailedError("transcription", "Source file has no URL")

        completed = self.store.find_one(
            Transcription,
            Transcription.file_id == file.id,
            Transcription.status == TranscriptionStatus.COMPLETED.value,
            order_by=Transcription.created_at.desc(),
        )
        if completed is not None:
            run.log.info(f"Reusing transcription {completed.id}")
            return completed

        in_progress = self.store.find_one(
            Transcription,
            Transcription.file_id == file.id,
            Transcription.status.in_(OPEN_TRANSCRIPTION_STATUSES),
            order_by=Transcription.created_at.desc(),
        )
        if in_progress is not None:
            run.log.info(f"Attaching to in-progress transcription {in_progress.id}")
            return in_progress

        created = self.store.create(
            Transcription(owner_id=project.owner_id, file_id=file.id, status=TranscriptionStatus.PENDING.value)
        )
        language = (project.settings or {}).get("language")
        self.services.registry.enqueue(
            "transcription",
            "transcribe",
            {"transcription_id": str(created.id), "file_url": file.cdn_url, "language": language},
        )
        run.log.info(f"Created transcription {created.id}")
        return created

    def _wait_for_transcription(self, run: PipelineRun, transcription_id: Any) -> Transcription:
        interval = self.settings.poll_interval_s
        for iteration in range(self._poll_limit(self.settings.transcription_timeout_s)):
            self.clock.sleep(interval)
            self._check_cancelled(run, "transcription")

            transcription = self.store.get(Transcription, transcription_id)
            if transcription is None:
                raise StageFailedError("transcription", "Transcription not found")
            if transcription.status == TranscriptionStatus.COMPLETED.value:
                return transcription
            if transcription.status == TranscriptionStatus.FAILED.value:
                raise StageFailedError(
                    "transcription", f"Transcription failed: {transcription.error or 'unknown error'}"
                )
            if iteration % LOG_EVERY == 0:
                run.log.info(f"Waiting for transcription ({iteration * interval:.0f}s)")

        raise StageFailedError("transcription", "Transcription timeout")

    # -------------------------------------------------------------------------
    # Composition (40-50%)
    # -------------------------------------------------------------------------

    def _composition_stage(self, run: PipelineRun, transcription: Transcription) -> dict[str, Any]:
        project = run.project
        if project.composition and project.status == CaptionStatus.RENDERING.value:
            return project.composition

        self._advance(run, CaptionStatus.GENERATING, 42, generation_started_at=self.clock.now())

        file = self.store.get(MediaFile, project.file_id)
        if file is None:
            raise StageFailedError("generation", "Source file not found")
        preset = None
        if project.preset_id:
            preset = self.store.get(CaptionPreset, project.preset_id)
            if preset is None:
                raise StageFailedError("generation", f"Preset not found: {project.preset_id}")

        try:
            composition = generate_composition(
                transcription.words or [],
                preset.styles if preset else None,
                VideoMeta.from_metadata(file.media_metadata),
                project.settings,
                name=project.name,
                video_url=file.cdn_url,
                file_id=str(file.id),
                language=transcription.language,
            )
        except ValueError as e:
            raise StageFailedError("generation", f"Composition generation failed: {e}")

        self._advance(
            run, CaptionStatus.GENERATING, 50, composition=composition, generation_completed_at=self.clock.now()
        )
        project.composition = composition
        return composition

    # -------------------------------------------------------------------------
    # Render (50-95%)
    # -------------------------------------------------------------------------

    def _render_stage(self, run: PipelineRun, composition: dict[str, Any]) -> RenderJob:
        project = run.project
        render_job = None
        if project.render_job_id:
            render_job = self.store.get(RenderJob, project.render_job_id)

        if render_job is None:
            self._advance(run, CaptionStatus.RENDERING, 50, render_started_at=self.clock.now())
            render_job = self.store.create(
                RenderJob(
                    owner_id=project.owner_id,
                    caption_project_id=project.id,
                    render_type=RenderType.CAPTION.value,
                    input_spec=composition,
                    output_format=composition.get("project", {}).get("output_format", "mp4"),
                    status=RenderStatus.QUEUED.value,
                )
            )
            self.store.conditional_update(
                CaptionProject, run.id, statuses=ACTIVE_CAPTION_STATUSES, render_job_id=render_job.id
            )
            project.render_job_id = render_job.id
            self.services.registry.enqueue(
                "render", "render", {"render_job_id": str(render_job.id)}, {"priority": RENDER_PRIORITY}
            )
            run.log.info(f"Queued render job {render_job.id}")
        else:
            run.log.info(f"Resuming render job {render_job.id}")

        return self._wait_for_render(run, render_job.id)

    def _wait_for_render(self, run: PipelineRun, render_job_id: Any) -> RenderJob:
        interval = self.settings.poll_interval_s
        for iteration in range(self._poll_limit(self.settings.render_timeout_s)):
            self.clock.sleep(interval)
            self._check_cancelled(run, "render")

            render_job = self.store.get(RenderJob, render_job_id)
            if render_job is None:
                raise StageFailedError("render", "Render job not found")
            if render_job.status == RenderStatus.COMPLETED.value:
                return render_job
            if render_job.status == RenderStatus.FAILED.value:
                raise StageFailedError("render", f"Render failed: {render_job.error or 'unknown error'}")
            if render_job.status == RenderStatus.CANCELLED.value:
                raise StageFailedError("render", "Render cancelled")

            self._set_progress(run, 50 + int((render_job.progress or 0) * 0.45))
            if iteration % LOG_EVERY == 0:
                run.log.info(f"Rendering... {render_job.progress or 0}%")

        raise StageFailedError("render", "Render timeout")

    # -------------------------------------------------------------------------
    # Completion (100%)
    # -------------------------------------------------------------------------

    def _complete(self, run: PipelineRun, render_job: RenderJob) -> dict[str, Any]:
        if not self.store.conditional_update(
            CaptionProject,
            run.id,
            statuses=(CaptionStatus.RENDERING,),
            status=CaptionStatus.COMPLETED.value,
            progress=run.bump(100),
            output_url=render_job.output_url,
            thumbnail_url=render_job.thumbnail_url,
            render_completed_at=self.clock.now(),
            error=None,
        ):
            self._check_cancelled(run, "completion")
            return skipped("settled concurrently")
        run.log.info(f"Completed: {render_job.output_url}")

        self.services.side_effects.fire(
            "Webhook trigger",
            self.services.webhooks.trigger,
            run.project.owner_id,
            "caption.completed",
            {
                "caption_project_id": str(run.id),
                "output_url": render_job.output_url,
                "thumbnail_url": render_job.thumbnail_url,
            },
            log=run.log,
        )
        return {
            "success": True,
            "caption_project_id": str(run.id),
            "render_job_id": str(render_job.id),
            "output_url": render_job.output_url,
        }


def create_caption_worker(runtime: WorkerRuntime, services: Services) -> WorkerHandle:
    settings = services.settings
    return runtime.create_worker(
        QUEUE_NAME,
        CaptionPipeline(services),
        concurrency=settings.caption_concurrency,
        lock_duration=settings.caption_lock_duration_s,
    )
