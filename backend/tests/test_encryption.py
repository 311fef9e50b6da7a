import pytest
from cryptography.fernet import Fernet

from imobcrm.services.encryption_service import decrypt_token, encrypt_token, get_encryption_key


def test_encrypted_token_is_opaque_and_reversible():
    encrypted = encrypt_token("ya29.access-token")

    assert "ya29" not in encrypted
    assert decrypt_token(encrypted) == "ya29.access-token"


def test_ready_fernet_key_is_used_as_is():
    key = Fernet.generate_key().decode()

    assert get_encryption_key(key) == key.encode()


def test_passphrase_is_derived_deterministically():
    assert get_encryption_key("uma frase qualquer") == get_encryption_key("uma frase qualquer")
    assert get_encryption_key("uma frase qualquer") != get_encryption_key("outra frase")


def test_corrupted_token_fails():
    with pytest.raises(ValueError, match="Falha ao descriptografar token"):
        decrypt_token("nao-e-um-token-fernet")
