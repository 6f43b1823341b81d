"""
AES-256-GCM encryption for tenant credentials.

Each tenant gets its own key, derived with PBKDF2-HMAC-SHA256 from the tenant
id and a server-wide salt. Keys are re-derived on every call and never stored.
Every encryption uses a fresh 12-byte nonce. The stored blob is a JSON string:

    {"iv": <hex>, "authTag": <hex>, "encryptedData": <hex>, "algorithm": "aes-256-gcm"}

Rotating the salt invalidates every stored blob.
"""

import json
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from kpisync.core.config import DEFAULT_ENCRYPTION_SALT
from kpisync.core.errors import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
MIN_ITERATIONS = 100_000


class CredentialVault:
    """The only component that sees credential plaintext."""

    def __init__(self, salt: str, iterations: int = MIN_ITERATIONS):
        if iterations < MIN_ITERATIONS:
            raise ValueError(f"Key derivation needs at least {MIN_ITERATIONS} iterations")
        if not salt:
            raise ValueError("Encryption salt must not be empty")
        if salt == DEFAULT_ENCRYPTION_SALT:
            logger.warning("Using the default encryption salt - set ENCRYPTION_KEY_SALT in production")
        self._salt = salt.encode("utf-8")
        self._iterations = iterations

    def _derive_key(self, tenant_id: int | str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=self._salt,
            iterations=self._iterations,
        )
        return kdf.derive(str(tenant_id).encode("utf-8"))

    def encrypt(self, plaintext_json: str, tenant_id: int | str) -> str:
        """Encrypt a credential JSON string for one tenant."""
        try:
            key = self._derive_key(tenant_id)
            nonce = secrets.token_bytes(NONCE_LENGTH)
            sealed = AESGCM(key).encrypt(nonce, plaintext_json.encode("utf-8"), None)
        except Exception as e:
            logger.error(f"Credential encryption failed for tenant {tenant_id} (no details logged)")
            raise EncryptionError("Failed to encrypt credential") from e

        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return json.dumps({
            "iv": nonce.hex(),
            "authTag": tag.hex(),
            "encryptedData": ciphertext.hex(),
            "algorithm": ALGORITHM,
        })

    def decrypt(self, blob: str, tenant_id: int | str) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            DecryptionError: tampered data, wrong tenant or malformed blob.
        """
        try:
            parsed = json.loads(blob)
            if parsed.get("algorithm", ALGORITHM) != ALGORITHM:
                raise ValueError(f"Unsupported algorithm {parsed.get('algorithm')}")
            nonce = bytes.fromhex(parsed["iv"])
            tag = bytes.fromhex(parsed["authTag"])
            ciphertext = bytes.fromhex(parsed["encryptedData"])
            if len(tag) != TAG_LENGTH:
                raise ValueError("Bad authentication tag length")
            key = self._derive_key(tenant_id)
            plaintext = AESGCM(key).decrypt(nonce, ciphertext + tag, None)
        except (InvalidTag, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Credential decryption failed for tenant {tenant_id} (invalid blob or key)")
            raise DecryptionError("Failed to decrypt credential - invalid key or corrupted data") from e

        return plaintext.decode("utf-8")
