"""Client for the managed render service.

``start`` submits a composition and returns the handle needed to poll it;
``poll_progress`` reads the current state. Neither call waits for the
render to finish.
"""

import logging
from typing import Protocol

import httpx

from shotline.config import Settings
from shotline.exceptions import RenderProviderError
from shotline.models.render_job import RenderJob
from shotline.schemas.render import RenderHandle, RenderProgress

logger = logging.getLogger(__name__)


class RenderProvider(Protocol):
    def start(self, job: RenderJob) -> RenderHandle: ...

    def poll_progress(self, render_id: str, bucket_name: str) -> RenderProgress: ...


def output_key(job: RenderJob) -> str:
    return f"renders/{job.owner_id}/{job.id}.{job.output_format}"


class HttpRenderProvider:
    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        headers = {}
        if settings.render_service_token:
            headers["Authorization"] = f"Bearer {settings.render_service_token}"
        self._client = client or httpx.Client(
            base_url=settings.render_service_url, headers=headers, timeout=30.0
        )

    def start(self, job: RenderJob) -> RenderHandle:
        spec = job.input_spec or {}
        body = {
            "composition": "VideoEditor",
            "input_props": {
                "project_settings": spec.get("project", {}),
                "elements": spec.get("elements", []),
            },
            "codec": "h264" if job.output_format == "mp4" else job.output_format,
            "frames_per_chunk": self.settings.render_frames_per_chunk,
            "out_name": output_key(job),
            "image_format": "png",
        }
        response = self._client.post("/renders", json=body)
        self._raise_for_status(response, "start render")
        data = response.json()
        logger.info(f"Render started for job {job.id}: {data.get('render_id')}")
        return RenderHandle(render_id=data["render_id"], bucket_name=data["bucket_name"])

    def poll_progress(self, render_id: str, bucket_name: str) -> RenderProgress:
        response = self._client.get(f"/renders/{render_id}", params={"bucket_name": bucket_name})
        self._raise_for_status(response, "poll render")
        data = response.json()

        costs = data.get("costs") or {}
        fraction = data.get("overall_progress", data.get("progress", 0.0)) or 0.0
        errors = data.get("errors") or []
        fatal_error = None
        if data.get("fatal_error_encountered"):
            first = errors[0] if errors else {}
            fatal_error = (first.get("message") if isinstance(first, dict) else str(first)) or "Render failed"

        return RenderProgress(
            fraction_done=min(max(float(fraction), 0.0), 1.0),
            done=bool(data.get("done")),
            fatal_error=fatal_error,
            output_url=data.get("output_file"),
            output_size=data.get("output_size_in_bytes"),
            frames_rendered=data.get("frames_rendered"),
            estimated_cost=costs.get("accrued_so_far"),
            cost_display=costs.get("display_cost"),
            currency=costs.get("currency"),
            encoding_status=data.get("encoding_status"),
            errors=errors,
        )

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.status_code >= 500 or response.status_code == 429:
            raise httpx.HTTPStatusError(
                f"Render service returned {response.status_code} on {action}",
                request=response.request,
                response=response,
            )
        if response.status_code >= 400:
            raise RenderProviderError(f"Failed to {action}: HTTP {response.status_code} {response.text[:200]}")

    def close(self) -> None:
        self._client.close()
