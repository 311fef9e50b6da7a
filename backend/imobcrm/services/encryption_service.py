"""
Criptografia dos tokens OAuth do Google Calendar em repouso.
Usa Fernet (symmetric encryption) do cryptography.
"""
import base64
import binascii
import logging
from functools import lru_cache
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from imobcrm.config import settings

logger = logging.getLogger(__name__)

DEV_ENCRYPTION_KEY = "imobcrm-default-encryption-key-change-in-production"


def _derive_key(secret: str) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=secret.encode()[:16],  # primeiros 16 bytes como salt
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


def get_encryption_key(secret: Optional[str] = None) -> bytes:
    """
    Chave Fernet a partir de ENCRYPTION_KEY.
    Aceita uma chave Fernet pronta (base64 de 32 bytes) ou uma frase, que é derivada.
    """
    secret = secret or settings.encryption_key
    if not secret:
        # EM PRODUÇÃO, SEMPRE defina ENCRYPTION_KEY
        logger.warning("ENCRYPTION_KEY não definida. Usando chave de desenvolvimento.")
        return _derive_key(DEV_ENCRYPTION_KEY)

    try:
        if len(base64.urlsafe_b64decode(secret.encode())) == 32:
            return secret.encode()
    except (binascii.Error, ValueError):
        pass
    return _derive_key(secret)


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    return Fernet(get_encryption_key())


def encrypt_token(value: str) -> str:
    try:
        return get_fernet().encrypt(value.encode()).decode()
    except Exception as e:
        logger.error(f"Erro ao criptografar token: {e}")
        raise ValueError(f"Falha ao criptografar token: {str(e)}")


def decrypt_token(encrypted_value: str) -> str:
    try:
        return get_fernet().decrypt(encrypted_value.encode()).decode()
    except InvalidToken as e:
        logger.error("Erro ao descriptografar token: chave inválida ou token corrompido")
        raise ValueError("Falha ao descriptografar token") from e
