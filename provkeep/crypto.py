"""
Secret cipher for provider API keys.
AES-256-CBC keyed to the local machine and OS user, stored as `enc:<ivHex>:<cipherHex>`.

The key is SHA-256("<hostname>-<username>"). Anyone able to run code as the same
user on the same host can re-derive it; this protects secrets against casual
exposure (stray file copies, backups on other machines), not against that user.
"""
import hashlib
import os
import socket
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import DecryptionError, EncryptionError, MalformedCiphertextError
from .utils import current_user

TAG = "enc"
IV_LEN = 16
KEY_LEN = 32
BLOCK_BITS = 128


def machine_identity() -> str:
    """The `<hostname>-<username>` string the cipher key is derived from."""
    return f"{socket.gethostname()}-{current_user()}"

def derive_machine_key(identity: Optional[str] = None) -> bytes:
    """Derive the 32-byte AES key from the machine identity via SHA-256."""
    ident = identity if identity is not None else machine_identity()
    return hashlib.sha256(ident.encode("utf-8")).digest()

def is_encrypted(value: str) -> bool:
    """True if value carries the `enc:` tag."""
    return isinstance(value, str) and value.startswith(TAG + ":")


class SecretCipher:
    """Encrypts/decrypts secret fields; both directions are no-ops on already-converted input."""

    def __init__(self, key: Optional[bytes] = None):
        self._key = key if key is not None else derive_machine_key()
        if len(self._key) != KEY_LEN:
            raise EncryptionError("Invalid key length for AES-256.")

    def encrypt(self, plaintext: str) -> str:
        if is_encrypted(plaintext):
            return plaintext
        try:
            iv = os.urandom(IV_LEN)
            padder = padding.PKCS7(BLOCK_BITS).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"Encryption failed: {e}") from e
        return f"{TAG}:{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, value: str) -> str:
        if not is_encrypted(value):
            return value

        parts = value.split(":")
        if len(parts) != 3:
            raise MalformedCiphertextError(f"Expected 3 segments in tagged secret, found {len(parts)}.")
        _, iv_hex, cipher_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(cipher_hex)
        except ValueError as e:
            raise MalformedCiphertextError("Tagged secret payload is not valid hex.") from e
        if len(iv) != IV_LEN:
            raise MalformedCiphertextError(f"IV must be {IV_LEN} bytes, found {len(iv)}.")
        if not ciphertext or len(ciphertext) % (BLOCK_BITS // 8):
            raise MalformedCiphertextError("Ciphertext length is not a whole number of AES blocks.")

        try:
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as e:
            # Bad padding or non-UTF-8 output: the key does not match this value.
            raise DecryptionError("Decryption failed. Secret was encrypted on another machine or user, or is corrupted.") from e
