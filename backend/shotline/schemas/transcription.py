from pydantic import BaseModel, Field


class TranscriptWord(BaseModel):
    text: str
    start: float  # seconds
    end: float
    type: str = "word"  # word, spacing, audio_event
    speaker_id: str | None = None


class TranscriptResult(BaseModel):
    provider_id: str | None = None
    text: str = ""
    words: list[TranscriptWord] = Field(default_factory=list)
    language: str | None = None
    duration: float | None = None

    @property
    def speakers(self) -> list[dict]:
        seen: dict[str, dict] = {}
        for word in self.words:
            if word.speaker_id and word.speaker_id not in seen:
                seen[word.speaker_id] = {"id": word.speaker_id, "name": f"Speaker {len(seen) + 1}"}
        return list(seen.values())
