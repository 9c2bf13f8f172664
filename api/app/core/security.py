from cryptography.fernet import Fernet
from jose import JWTError, jwt

from app.core.config import settings


# ─── JWT tokens (issued by the identity provider) ──────
def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None


# ─── Fernet encryption (for Conta Azul tokens at rest) ─
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return get_fernet().decrypt(encrypted.encode()).decode()
