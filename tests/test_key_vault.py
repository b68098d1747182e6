"""Tests for the key vault."""

import pytest
from cryptography.fernet import Fernet
from solders.keypair import Keypair

from mixerex.crypto import KeyVault, generate_master_key, key_fingerprint
from mixerex.errors import ConfigurationError, DecryptionError


class TestKeyGeneration:
    """Tests for deposit keypair generation."""

    def test_generated_keypair_is_encrypted(self, vault):
        generated = vault.generate_deposit_keypair()

        assert generated.encrypted_secret
        assert generated.key_id == vault.key_id

        secret = vault.decrypt(generated.encrypted_secret, generated.key_id)
        assert secret not in generated.encrypted_secret.encode()
        assert str(Keypair.from_bytes(secret).pubkey()) == generated.address

    def test_addresses_are_unique(self, vault):
        addresses = {vault.generate_deposit_keypair().address for _ in range(50)}
        assert len(addresses) == 50

    def test_repr_hides_secret(self, vault):
        generated = vault.generate_deposit_keypair()
        assert generated.encrypted_secret not in repr(generated)
        assert generated.address in repr(generated)

    def test_unlocked_keypair_signs(self, vault):
        generated = vault.generate_deposit_keypair()

        with vault.unlocked_keypair(generated.encrypted_secret, generated.key_id) as keypair:
            assert str(keypair.pubkey()) == generated.address


class TestDecryption:
    """Tests for decryption failures."""

    def test_wrong_key_fails(self, vault):
        generated = vault.generate_deposit_keypair()
        other = KeyVault(generate_master_key())

        with pytest.raises(DecryptionError):
            other.decrypt(generated.encrypted_secret)

    def test_unknown_key_id_fails(self, vault):
        generated = vault.generate_deposit_keypair()

        with pytest.raises(DecryptionError):
            vault.decrypt(generated.encrypted_secret, "0" * 16)

    def test_tampered_ciphertext_fails(self, vault):
        generated = vault.generate_deposit_keypair()
        token = generated.encrypted_secret
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(DecryptionError):
            vault.decrypt(tampered, generated.key_id)

    def test_discarded_secret_fails(self, vault):
        with pytest.raises(DecryptionError):
            vault.decrypt(None)
        with pytest.raises(DecryptionError):
            with vault.unlocked_keypair(""):
                pass


class TestConfiguration:
    """Tests for vault construction and rotation."""

    def test_missing_key_rejected(self):
        with pytest.raises(ConfigurationError):
            KeyVault("")

    def test_invalid_key_rejected(self):
        with pytest.raises(ConfigurationError):
            KeyVault("not-a-fernet-key")

    def test_key_id_is_fingerprint(self, master_key, vault):
        assert vault.key_id == key_fingerprint(master_key)
        assert master_key not in vault.key_id

    def test_rotation_keeps_old_ciphertexts_readable(self, master_key, vault):
        generated = vault.generate_deposit_keypair()
        new_key = Fernet.generate_key().decode()
        rotated_vault = KeyVault(new_key, previous_keys=[master_key])

        secret = rotated_vault.decrypt(generated.encrypted_secret, generated.key_id)
        assert str(Keypair.from_bytes(secret).pubkey()) == generated.address

        ciphertext, key_id = rotated_vault.rotate(generated.encrypted_secret, generated.key_id)
        assert key_id == rotated_vault.key_id != generated.key_id
        assert KeyVault(new_key).decrypt(ciphertext, key_id) == secret
