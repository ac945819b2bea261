"""
ActGuard Encryption Module
AES-256-GCM secret protection, salted hashing and secure random generation.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
import string
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from actguard.core.config import Settings, settings as default_settings
from actguard.core.logging import LoggerMixin
from actguard.security.errors import CryptoError


# Blob layout: version (1 byte) | nonce (12 bytes) | ciphertext + GCM tag (16 bytes)
BLOB_VERSION = 1
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
HEADER_LENGTH = 1 + NONCE_LENGTH

HASH_ITERATIONS = 100_000
HASH_LENGTH = 64
SALT_LENGTH = 32

ALPHANUMERIC = string.ascii_letters + string.digits
BACKUP_CODE_CHARSET = string.ascii_uppercase + string.digits
BACKUP_CODE_LENGTH = 8


@dataclass
class HashResult:
    """Hex encoded PBKDF2 digest and the salt that produced it"""
    hash: str
    salt: str


class SecretCipher(LoggerMixin):
    """
    Symmetric authenticated encryption for secrets at rest.

    Every call draws a fresh random nonce, so encrypting the same plaintext
    twice yields different blobs. The version byte and nonce are bound to the
    ciphertext as associated data: changing any byte of a blob makes
    decryption fail with CryptoError.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
            raise CryptoError(f"Encryption key must be exactly {KEY_LENGTH} bytes")
        self._aesgcm = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, key_hex: str) -> "SecretCipher":
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise CryptoError(f"Encryption key is not valid hex: {e}")
        return cls(key)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SecretCipher":
        """Build from ACTGUARD_ENCRYPTION_KEY, generating a throwaway key outside production"""
        settings = settings or default_settings
        if settings.ENCRYPTION_KEY:
            return cls.from_hex(settings.ENCRYPTION_KEY)

        if settings.is_production():
            raise CryptoError("ACTGUARD_ENCRYPTION_KEY must be set in production")

        cipher = cls(AESGCM.generate_key(bit_length=256))
        cipher.logger.warning(
            "No encryption key configured, generated an ephemeral one; "
            "data encrypted in this process cannot be read after restart"
        )
        return cipher

    @staticmethod
    def generate_key() -> str:
        """New random 256-bit key, hex encoded"""
        return secrets.token_hex(KEY_LENGTH)

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        """Encrypt to a self-describing binary blob"""
        try:
            nonce = secrets.token_bytes(NONCE_LENGTH)
            header = bytes([BLOB_VERSION]) + nonce
            return header + self._aesgcm.encrypt(nonce, plaintext, header)
        except Exception as e:
            self.logger.error(f"Encryption failed: {e}")
            raise CryptoError("Failed to encrypt data")

    def decrypt_bytes(self, blob: bytes) -> bytes:
        """Decrypt a blob produced by encrypt_bytes"""
        if len(blob) < HEADER_LENGTH + TAG_LENGTH:
            raise CryptoError("Failed to decrypt data: blob too short")
        if blob[0] != BLOB_VERSION:
            raise CryptoError(f"Failed to decrypt data: unsupported blob version {blob[0]}")

        header = blob[:HEADER_LENGTH]
        nonce = blob[1:HEADER_LENGTH]
        try:
            return self._aesgcm.decrypt(nonce, blob[HEADER_LENGTH:], header)
        except InvalidTag:
            self.logger.warning("Decryption rejected: authentication tag mismatch")
            raise CryptoError("Failed to decrypt data: integrity check failed")
        except Exception as e:
            self.logger.error(f"Decryption failed: {e}")
            raise CryptoError("Failed to decrypt data")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text to a base64 encoded blob"""
        blob = self.encrypt_bytes(plaintext.encode("utf-8"))
        return base64.b64encode(blob).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a base64 blob produced by encrypt"""
        try:
            blob = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
            raise CryptoError(f"Failed to decrypt data: malformed input ({e})")

        plaintext = self.decrypt_bytes(blob)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise CryptoError("Failed to decrypt data: plaintext is not text")

    def hash(self, value: str, salt: Optional[str] = None) -> HashResult:
        """PBKDF2-HMAC-SHA512 digest of `value`, with a fresh salt unless one is given"""
        try:
            salt = salt or secrets.token_hex(SALT_LENGTH)
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA512(),
                length=HASH_LENGTH,
                salt=salt.encode("utf-8"),
                iterations=HASH_ITERATIONS,
            )
            digest = kdf.derive(value.encode("utf-8"))
            return HashResult(hash=digest.hex(), salt=salt)
        except Exception as e:
            self.logger.error(f"Hashing failed: {e}")
            raise CryptoError("Failed to hash data")

    def verify_hash(self, value: str, expected_hash: str, salt: str) -> bool:
        """Constant-time comparison against a stored digest"""
        try:
            computed = self.hash(value, salt).hash
        except CryptoError:
            return False
        return hmac.compare_digest(computed, expected_hash)

    @staticmethod
    def lookup_digest(value: str) -> str:
        """Unsalted SHA-256 digest, only suitable for indexing high-entropy tokens"""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()

    @staticmethod
    def secure_random_string(length: int = 32, charset: str = ALPHANUMERIC) -> str:
        if length < 0:
            raise ValueError("length must not be negative")
        if not charset:
            raise ValueError("charset must not be empty")
        return "".join(secrets.choice(charset) for _ in range(length))

    @classmethod
    def generate_backup_codes(cls, count: int = 10) -> list:
        """Distinct 8-character uppercase alphanumeric recovery codes"""
        codes: list = []
        while len(codes) < count:
            code = cls.secure_random_string(BACKUP_CODE_LENGTH, BACKUP_CODE_CHARSET)
            if code not in codes:
                codes.append(code)
        return codes
