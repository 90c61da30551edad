import logging
from typing import Callable

from shotline.runtime.worker import WorkerHandle, WorkerRuntime
from shotline.workers.caption_worker import create_caption_worker
from shotline.workers.common import Services
from shotline.workers.file_import_worker import create_file_import_worker
from shotline.workers.file_worker import create_file_worker
from shotline.workers.render_worker import create_render_worker
from shotline.workers.transcription_worker import create_transcription_worker
from shotline.workers.webhook_worker import create_webhook_worker

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[WorkerRuntime, Services], WorkerHandle]

# Queue name -> factory, in start order
WORKERS: list[tuple[str, WorkerFactory]] = [
    ("file-processing", create_file_worker),
    ("transcription", create_transcription_worker),
    ("webhooks", create_webhook_worker),
    ("file-import", create_file_import_worker),
    ("render", create_render_worker),
    ("caption", create_caption_worker),
]


def start_workers(
    runtime: WorkerRuntime, services: Services, enabled: list[str] | None = None
) -> list[WorkerHandle]:
    """Create the enabled workers. An empty or missing list enables all of them."""
    known = {name for name, _ in WORKERS}
    for name in enabled or []:
        if name not in known:
            logger.warning(f"Unknown worker '{name}' in enabled list, ignoring")

    handles = []
    for name, factory in WORKERS:
        if enabled and name not in enabled:
            continue
        handles.append(factory(runtime, services))
    logger.info(f"Started {len(handles)} worker(s): {', '.join(h.name for h in handles)}")
    return handles
