from cryptography.fernet import Fernet, InvalidToken

from n8n_monitor import config


def _fernet() -> Fernet:
    if not config.ENCRYPTION_KEY:
        raise RuntimeError("N8N_MONITOR_ENCRYPTION_KEY is not set")
    return Fernet(config.ENCRYPTION_KEY.encode())


def encrypt(plaintext: str) -> str:
    return _fernet().encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    try:
        return _fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored credential could not be decrypted") from e
