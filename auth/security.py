"""
Security utilities: access code hashing, JWT session tokens, and
encryption of relay credentials at rest.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi.security import HTTPBearer
from cryptography.fernet import Fernet
import bcrypt
import hashlib
import base64
import binascii

from core.logger import logger
import config

# JWT settings
SECRET_KEY_ALGORITHM = "HS256"

# Security schemes
security = HTTPBearer(auto_error=False)


# Encryption utilities
def get_encryption_key() -> bytes:
    """
    Get encryption key from config.
    If not set, generate one (not recommended for production).
    """
    encryption_key = getattr(config, 'ENCRYPTION_KEY', None)
    if not encryption_key:
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production!)")
        encryption_key = Fernet.generate_key().decode()
        config.ENCRYPTION_KEY = encryption_key

    if isinstance(encryption_key, str):
        try:
            key_bytes = base64.urlsafe_b64decode(encryption_key)
        except (binascii.Error, ValueError):
            key_bytes = b""
        if len(key_bytes) != 32:
            # Not a Fernet key: derive 32 bytes from the passphrase
            key_bytes = hashlib.sha256(encryption_key.encode()).digest()
    else:
        key_bytes = encryption_key

    if len(key_bytes) != 32:
        key_bytes = hashlib.sha256(bytes(key_bytes)).digest()

    return base64.urlsafe_b64encode(key_bytes)


def encrypt_data(data: str) -> str:
    """
    Encrypt sensitive data using Fernet symmetric encryption.

    Args:
        data: Data to encrypt

    Returns:
        Encrypted string (base64)
    """
    f = Fernet(get_encryption_key())
    return f.encrypt(data.encode()).decode()


def decrypt_data(encrypted_data: str) -> str:
    """
    Decrypt data using Fernet symmetric encryption.

    Args:
        encrypted_data: Encrypted string (base64)

    Returns:
        Decrypted string
    """
    f = Fernet(get_encryption_key())
    return f.decrypt(encrypted_data.encode()).decode()


# Access code utilities
def hash_access_code(access_code: str, rounds: int) -> str:
    """
    Hash an access code with bcrypt.

    Args:
        access_code: Plain access code
        rounds: bcrypt cost factor (config.ACCESS_CODE_HASH_ROUNDS)

    Returns:
        bcrypt hash ($2b$...)
    """
    code_bytes = access_code.encode('utf-8')
    if len(code_bytes) > 72:
        raise ValueError("Access code cannot be longer than 72 bytes")
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(code_bytes, salt).decode('utf-8')


def verify_access_code(access_code: str, hashed_code: Optional[str]) -> bool:
    """Verify an access code against a stored hash. Malformed hashes never match."""
    if not access_code or not hashed_code:
        return False
    code_bytes = access_code.encode('utf-8')
    if len(code_bytes) > 72:
        return False
    try:
        return bcrypt.checkpw(code_bytes, hashed_code.encode('utf-8'))
    except ValueError:
        logger.warning("Stored access code hash is malformed")
        return False


# JWT Token utilities
def create_access_token(
    data: Dict[str, Any],
    secret_key: str,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Data to encode in token
        secret_key: Secret key for signing
        expires_delta: Optional expiration time

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow(),
        "type": "access"
    })
    return jwt.encode(to_encode, secret_key, algorithm=SECRET_KEY_ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT access token.

    Returns:
        Decoded token data or None if invalid or expired
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[SECRET_KEY_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    return payload
