from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass
class Upload:
    id: str
    user_id: str
    file_name: str
    mime: str
    size: int
    temp_path: str
    status: str  # 'Queued' | 'Processing' | 'Completed' | 'Failed'
    error: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class Track:
    id: str  # always equal to the originating upload id
    owner_id: str
    title: str
    artist: str
    album: str
    genre: str
    duration_sec: int
    bpm: Optional[float]
    loudness_i: float
    status: str  # 'Processing' | 'Ready' | 'Failed'
    source_type: str
    original_file_key: str
    audio_128_key: str
    audio_320_key: str
    waveform_json_key: str
    cover_image_key: Optional[str]
    created_at: str


@dataclass
class TranscodeJob:
    upload_id: str
    user_id: str
    temp_path: str
    temp_file_name: str
    year_month: str
    request_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TranscodeJob":
        return cls(
            upload_id=data["upload_id"],
            user_id=data["user_id"],
            temp_path=data["temp_path"],
            temp_file_name=data["temp_file_name"],
            year_month=data["year_month"],
            request_id=data.get("request_id"),
        )


@dataclass
class ClaimedJob:
    id: str
    data: TranscodeJob
    attempts_made: int  # includes the current attempt
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts


@dataclass
class JobStatus:
    id: str
    state: str  # 'waiting' | 'active' | 'delayed' | 'completed' | 'failed'
    progress: int
    failed_reason: Optional[str]
    attempts_made: int
    data: dict
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    result: Optional[dict] = None


@dataclass
class RetrySummary:
    retried: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)  # temp file already gone
    total_failed: int = 0


@dataclass
class AudioAnalysis:
    duration: float
    loudness: float
    bpm: Optional[float] = None
    cover_image: Optional[bytes] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None


@dataclass
class ArtifactKeys:
    audio_128: str
    audio_320: str
    waveform: str
    cover: Optional[str] = None
