"""Encryption utilities for provider credentials stored on connections."""

from cryptography.fernet import Fernet

from app.config import get_settings


def get_cipher() -> Fernet:
    """Get Fernet cipher instance using the encryption key from settings."""
    settings = get_settings()
    return Fernet(settings.encryption_key.encode())


def encrypt_token(token: str) -> str:
    """Encrypt a credential (API key, client secret, private key PEM).

    Args:
        token: Plain text credential to encrypt

    Returns:
        Encrypted credential as a string
    """
    cipher = get_cipher()
    encrypted = cipher.encrypt(token.encode())
    return encrypted.decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt an encrypted credential.

    Args:
        encrypted_token: Encrypted credential string

    Returns:
        Decrypted plain text credential
    """
    cipher = get_cipher()
    decrypted = cipher.decrypt(encrypted_token.encode())
    return decrypted.decode()


def decrypt_fields(row: dict, fields: tuple[str, ...]) -> dict:
    """Return a copy of a connection row with the given secret columns decrypted.

    Columns that are missing or empty are left as-is.
    """
    decrypted = dict(row)
    for field in fields:
        if decrypted.get(field):
            decrypted[field] = decrypt_token(decrypted[field])
    return decrypted
