"""
Speech-to-text through the ElevenLabs API.

The provider downloads the audio itself from ``cloud_storage_url`` and
answers synchronously with word-level timestamps, so a call can take
minutes for long files.
"""

import logging
from typing import Protocol

import httpx

from shotline.config import Settings
from shotline.exceptions import TranscriptionProviderError
from shotline.schemas.transcription import TranscriptResult, TranscriptWord

logger = logging.getLogger(__name__)


class TranscriptionProvider(Protocol):
    def submit(self, audio_url: str, language: str | None = None) -> TranscriptResult: ...


class ElevenLabsTranscriptionProvider:
    def __init__(self, settings: Settings, client: httpx.Client | None = None):
        self.settings = settings
        self.model_id = settings.transcription_model
        self._client = client or httpx.Client(
            base_url=settings.elevenlabs_api_url,
            headers={"xi-api-key": settings.elevenlabs_api_key},
            # Long files are transcribed synchronously
            timeout=httpx.Timeout(settings.transcription_timeout_s, connect=10.0),
        )

    def submit(self, audio_url: str, language: str | None = None) -> TranscriptResult:
        form = {
            "cloud_storage_url": audio_url,
            "model_id": self.model_id,
            "timestamps_granularity": "word",
            "diarize": "true",
            "tag_audio_events": "true",
        }
        if language:
            form["language_code"] = language

        logger.info(f"Starting transcription of {audio_url}")
        response = self._client.post("/speech-to-text", data=form)

        if response.status_code >= 500 or response.status_code == 429:
            # Overloaded or down; the retry helper tries again
            raise httpx.HTTPStatusError(
                f"ElevenLabs returned {response.status_code}", request=response.request, response=response
            )
        if response.status_code != 200:
            detail = _error_detail(response)
            raise TranscriptionProviderError(f"ElevenLabs error: {detail}")

        return self._convert(response.json())

    def _convert(self, data: dict) -> TranscriptResult:
        words = [
            TranscriptWord(
                text=w.get("text", ""),
                start=float(w.get("start", 0.0)),
                end=float(w.get("end", 0.0)),
                type=w.get("type", "word"),
                speaker_id=w.get("speaker_id"),
            )
            for w in data.get("words", [])
        ]
        duration = data.get("audio_duration")
        if duration is None and words:
            duration = words[-1].end
        return TranscriptResult(
            provider_id=data.get("transcription_id") or data.get("id"),
            text=data.get("text", ""),
            words=words,
            language=data.get("language_code"),
            duration=duration,
        )

    def close(self) -> None:
        self._client.close()


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, dict):
        detail = detail.get("message")
    return str(detail or f"HTTP {response.status_code}")
