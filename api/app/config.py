
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./signing.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
SIGNING_APP_URL = os.getenv("SIGNING_APP_URL", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# "inline" runs assembly inside the submitting request, "celery" hands it to the worker
ASSEMBLY_MODE = os.getenv("ASSEMBLY_MODE", "inline")
ASSEMBLY_MAX_ATTEMPTS = int(os.getenv("ASSEMBLY_MAX_ATTEMPTS", "3"))
ASSEMBLY_BACKOFF_BASE_SECONDS = float(os.getenv("ASSEMBLY_BACKOFF_BASE_SECONDS", "2"))
FINALIZING_STUCK_MINUTES = int(os.getenv("FINALIZING_STUCK_MINUTES", "30"))

DEFAULT_EXPIRATION_DAYS = int(os.getenv("SIGNATURE_DEFAULT_EXPIRATION_DAYS", "30"))
MAX_EXPIRATION_DAYS = int(os.getenv("SIGNATURE_MAX_EXPIRATION_DAYS", "365"))
EXPIRATION_SWEEP_BATCH_SIZE = int(os.getenv("SIGNATURE_EXPIRATION_BATCH_SIZE", "100"))
MAX_SIGNERS_PER_REQUEST = int(os.getenv("SIGNATURE_MAX_SIGNERS_PER_REQUEST", "50"))
MIN_REMINDER_INTERVAL_HOURS = int(os.getenv("SIGNATURE_MIN_REMINDER_INTERVAL_HOURS", "24"))
MAX_REMINDERS_PER_SIGNER = int(os.getenv("SIGNATURE_MAX_REMINDERS_PER_SIGNER", "5"))
