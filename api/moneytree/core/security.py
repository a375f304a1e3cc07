import hashlib
import hmac
import json
import secrets

from cryptography.fernet import Fernet

from moneytree.core.config import settings


# ─── Fernet encryption (for provider credentials at rest) ──────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return get_fernet().decrypt(encrypted.encode()).decode()


def encrypt_json(payload: dict) -> str:
    return encrypt_value(json.dumps(payload, sort_keys=True))


def decrypt_json(encrypted: str) -> dict:
    return json.loads(decrypt_value(encrypted))


# ─── Webhook secrets & signatures ──────────────────────
def generate_webhook_secret() -> str:
    return secrets.token_urlsafe(32)


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()


def sign_payload(secret: str, timestamp: int, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 over ``"<timestamp>.<raw_body>"``."""
    message = f"{timestamp}.".encode() + raw_body
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
