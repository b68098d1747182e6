"""Key vault for custodial deposit keypairs.

Uses Fernet (AES-128-CBC with HMAC) for symmetric encryption. Every
ciphertext is tagged with the id of the key that produced it so retired keys
can still open old orders after a rotation.
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken
from solders.keypair import Keypair

from mixerex.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


def key_fingerprint(master_key: str) -> str:
    """Short, non-reversible identifier for a master key."""
    return hashlib.sha256(master_key.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class GeneratedKeypair:
    """A fresh deposit keypair. Only the public half is readable."""

    address: str
    encrypted_secret: str
    key_id: str

    def __repr__(self) -> str:
        return f"GeneratedKeypair(address={self.address!r}, key_id={self.key_id!r})"


class KeyVault:
    """Generates deposit keypairs and guards their secret halves.

    Usage:
        vault = KeyVault(master_key)
        generated = vault.generate_deposit_keypair()
        with vault.unlocked_keypair(generated.encrypted_secret, generated.key_id) as kp:
            ...  # sign with kp
    """

    def __init__(self, master_key: str, previous_keys: Sequence[str] = ()):
        """Initialize with the current key and any retired keys.

        Args:
            master_key: Base64-encoded Fernet key used for new ciphertexts
            previous_keys: Retired Fernet keys accepted for decryption only

        Raises:
            ConfigurationError: If a key is missing or malformed
        """
        if not master_key:
            raise ConfigurationError("Key vault requires an encryption key")

        self._fernets: dict[str, Fernet] = {}
        self.key_id = self._register(master_key)
        for old_key in previous_keys:
            self._register(old_key)

    def _register(self, key: str) -> str:
        try:
            fernet = Fernet(key.encode())
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid Fernet key: {e}") from None
        key_id = key_fingerprint(key)
        self._fernets[key_id] = fernet
        return key_id

    @property
    def known_key_ids(self) -> list[str]:
        return list(self._fernets)

    def generate_deposit_keypair(self) -> GeneratedKeypair:
        """Create a single-use keypair and encrypt its secret immediately."""
        keypair = Keypair()
        encrypted = self._fernets[self.key_id].encrypt(bytes(keypair)).decode()
        return GeneratedKeypair(
            address=str(keypair.pubkey()),
            encrypted_secret=encrypted,
            key_id=self.key_id,
        )

    def encrypt(self, secret: bytes) -> str:
        """Encrypt raw secret bytes under the current key."""
        return self._fernets[self.key_id].encrypt(secret).decode()

    def decrypt(self, encrypted_secret: Optional[str], key_id: Optional[str] = None) -> bytes:
        """Decrypt secret material.

        Args:
            encrypted_secret: Fernet token, or None if the secret was discarded
            key_id: Tag stored with the ciphertext; None tries every known key

        Returns:
            Raw secret bytes

        Raises:
            DecryptionError: Wrong key, tampered data, unknown key id or
                discarded secret
        """
        if not encrypted_secret:
            raise DecryptionError("Secret has been discarded")

        if key_id is not None:
            fernet = self._fernets.get(key_id)
            if fernet is None:
                raise DecryptionError(f"Unknown encryption key id: {key_id}")
            candidates = [fernet]
        else:
            candidates = list(self._fernets.values())

        token = encrypted_secret.encode()
        for fernet in candidates:
            try:
                return fernet.decrypt(token)
            except InvalidToken:
                continue

        raise DecryptionError("Ciphertext does not match any configured key")

    @contextmanager
    def unlocked_keypair(
        self, encrypted_secret: Optional[str], key_id: Optional[str] = None
    ) -> Iterator[Keypair]:
        """Yield a signing keypair that exists only inside the block."""
        secret = bytearray(self.decrypt(encrypted_secret, key_id))
        try:
            try:
                keypair = Keypair.from_bytes(bytes(secret))
            except ValueError:
                raise DecryptionError("Decrypted secret is not a valid keypair") from None
            yield keypair
        finally:
            for i in range(len(secret)):
                secret[i] = 0
            keypair = None

    def rotate(self, encrypted_secret: str, key_id: Optional[str] = None) -> tuple[str, str]:
        """Re-encrypt a secret under the current key.

        Returns:
            Tuple of (new ciphertext, current key id)
        """
        secret = self.decrypt(encrypted_secret, key_id)
        return self.encrypt(secret), self.key_id


def get_key_vault() -> KeyVault:
    """Build the process key vault from settings.

    Raises:
        ConfigurationError: If MIXER_ENCRYPTION_KEY is not set
    """
    from mixerex.config import get_settings

    settings = get_settings()
    return KeyVault(settings.require_encryption_key(), settings.previous_keys)
