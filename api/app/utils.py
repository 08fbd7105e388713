
import base64, binascii, hashlib, json
from datetime import datetime, timezone
from itsdangerous import URLSafeSerializer
from .config import SECRET_KEY

def b64png_to_bytes(data_url: str) -> bytes:
    # accepts "data:image/png;base64,....." or bare base64
    if "," in data_url:
        data_url = data_url.split(",", 1)[1]
    return base64.b64decode(data_url, validate=True)

def is_b64_image(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        b64png_to_bytes(value.strip())
    except (binascii.Error, ValueError):
        return False
    return True

def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)

def load_json(raw, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default

def utcnow() -> datetime:
    # naive UTC, matching what the datetime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)

def make_token(payload: dict) -> str:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.dumps(payload)

def read_token(token: str) -> dict:
    s = URLSafeSerializer(SECRET_KEY, salt="signing")
    return s.loads(token)

def sa_to_dict(obj, exclude=()):
    if obj is None:
        return {}
    from sqlalchemy.inspection import inspect as sa_inspect
    mapper = sa_inspect(obj).mapper
    return {col.key: getattr(obj, col.key) for col in mapper.columns if col.key not in exclude}
