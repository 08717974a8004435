import os


def _flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


DB_PATH = os.environ.get("DB_PATH", "/data/transcoder.db")

REDIS_URL = os.environ.get("REDIS_URL", "").strip()
REDIS_DISABLED = _flag("REDIS_DISABLED")
REDIS_PROBE_TIMEOUT = float(os.environ.get("REDIS_PROBE_TIMEOUT", "2.0"))
QUEUE_NAME = os.environ.get("QUEUE_NAME", "transcode")

WORKER_CONCURRENCY = int(os.environ.get("WORKER_CONCURRENCY", "2"))
JOB_ATTEMPTS = int(os.environ.get("JOB_ATTEMPTS", "3"))
JOB_BACKOFF_MS = int(os.environ.get("JOB_BACKOFF_MS", "2000"))
KEEP_COMPLETED = int(os.environ.get("KEEP_COMPLETED", "10"))
KEEP_FAILED = int(os.environ.get("KEEP_FAILED", "5"))
MEMORY_QUEUE_SIZE = int(os.environ.get("MEMORY_QUEUE_SIZE", "1000"))

PROCESSING_DIR = os.environ.get("PROCESSING_DIR", "/tmp/mixora")
FFMPEG_TIMEOUT = int(os.environ.get("FFMPEG_TIMEOUT", "600"))

STORAGE_PROVIDER = os.environ.get("STORAGE_PROVIDER", "local")
STORAGE_DIR = os.environ.get("STORAGE_DIR", "/storage")
S3_BUCKET = os.environ.get("S3_BUCKET", "")
S3_REGION = os.environ.get("S3_REGION", "us-east-1")
S3_ENDPOINT = os.environ.get("S3_ENDPOINT") or None

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
