"""
The device's identity session.

Owns the live Identity and the local key store. Onboarding, rotation,
restore and shredding all go through here so the in-memory identity and
the stored one never diverge.
"""

import logging
from typing import List, Optional, Sequence

from ghostcrypto.errors import GhostError, ValidationError
from ghostcrypto.identity import Identity
from ghostcrypto.mnemonic import (
    entropy_to_mnemonic,
    generate_recovery_seed,
    mnemonic_to_seed,
    validate_mnemonic,
)
from ghostcrypto.primitives import constant_time_compare
from ghostcrypto.validation import validate_passphrase
from ghostcrypto.vault import PassphraseVault

from .keystore import LocalKeyStore

logger = logging.getLogger(__name__)


class IdentitySession:
    """
    Live identity for one device.
    """

    def __init__(self, keystore: LocalKeyStore, vault: Optional[PassphraseVault] = None):
        """
        Args:
            keystore: Local storage for the identity record
            vault: Vault used to seal and unseal private keys
        """
        self.keystore = keystore
        self.vault = vault or PassphraseVault()
        self.identity: Optional[Identity] = None

    def load(self) -> Optional[Identity]:
        """Load the stored identity, or None if this device has none"""
        record = self.keystore.load_identity()
        self.identity = Identity.from_dict(record) if record else None
        return self.identity

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise ValidationError("No identity on this device")
        return self.identity

    def _store(self, identity: Identity):
        self.keystore.save_identity(identity.to_dict())
        self.identity = identity

    def onboard(self, passphrase: str) -> List[str]:
        """
        Create this device's identity.

        Returns:
            The 12 recovery words, for display once

        Raises:
            ValidationError: Weak passphrase, or an identity already exists
        """
        validate_passphrase(passphrase)
        if self.identity is not None or self.keystore.load_identity() is not None:
            raise ValidationError("An identity already exists on this device")

        identity = Identity.create(passphrase, vault=self.vault)
        words = entropy_to_mnemonic(generate_recovery_seed())
        self._store(identity)
        self.keystore.save_recovery_digest(mnemonic_to_seed(words))
        logger.info("Onboarded identity %s", identity.id)
        return words

    def _require_published_rotation(self):
        if self.keystore.load_rotation_signature() is not None:
            raise ValidationError("Publish the previous key change before rotating again")

    def rotate(self, passphrase: str, new_passphrase: Optional[str] = None) -> Identity:
        """
        Replace the identity's keys (and therefore its alias), keeping its id.

        The current signing key endorses the new one; the endorsement is
        kept until publish() hands it to the relay.

        Args:
            passphrase: Current passphrase, checked by unsealing the signing key
            new_passphrase: Passphrase for the new keys (current one if omitted)

        Raises:
            AuthenticationFailure: Wrong current passphrase
            ValidationError: A previous rotation has not been published yet
        """
        current = self._require_identity()
        new_passphrase = new_passphrase or passphrase
        validate_passphrase(new_passphrase)
        self._require_published_rotation()
        self.vault.open(current.sealed_signing_key, passphrase)

        identity = Identity.create(new_passphrase, identity_id=current.id, vault=self.vault)
        endorsement = current.endorse(identity, passphrase, self.vault)
        self._store(identity)
        self.keystore.save_rotation_signature(endorsement)
        logger.info("Rotated identity %s: %s -> %s", identity.id, current.alias, identity.alias)
        return identity

    def restore(self, words: Sequence[str], passphrase: str,
                current_passphrase: Optional[str] = None) -> Identity:
        """
        Install a fresh identity under a recovery phrase.

        The phrase does not regenerate the old keys: a NEW keypair (and
        alias) is created and the phrase is kept for later verification.
        The account id survives only when the current identity's passphrase
        is given, so its signing key can endorse the new one. Otherwise the
        relay would refuse the key change and a new id is used.

        Raises:
            ValidationError: Invalid phrase or weak passphrase
            AuthenticationFailure: Wrong current_passphrase
        """
        if not validate_mnemonic(words):
            raise ValidationError("Invalid recovery phrase")
        validate_passphrase(passphrase)

        current = self.identity if current_passphrase else None
        if current is not None:
            self._require_published_rotation()
            self.vault.open(current.sealed_signing_key, current_passphrase)

        identity = Identity.create(passphrase, identity_id=current.id if current else None, vault=self.vault)
        if current is not None:
            self.keystore.save_rotation_signature(current.endorse(identity, current_passphrase, self.vault))
        else:
            self.keystore.clear_rotation_signature()
        self._store(identity)
        self.keystore.save_recovery_digest(mnemonic_to_seed(words))
        logger.info("Restored identity %s with new alias %s", identity.id, identity.alias)
        return identity

    def verify_recovery_phrase(self, words: Sequence[str]) -> bool:
        """True if words are the phrase recorded at onboarding or restore"""
        digest = self.keystore.load_recovery_digest()
        if digest is None or not validate_mnemonic(words):
            return False
        return constant_time_compare(digest, mnemonic_to_seed(words))

    def shred(self):
        """Wipe every local identity item"""
        self.keystore.shred()
        self.identity = None

    async def publish(self, relay, passphrase: str) -> str:
        """
        Register the identity with the relay and authenticate the client.

        Args:
            relay: RelayClient
            passphrase: Unseals the signing key to sign the registration

        Returns:
            The relay's access token
        """
        identity = self._require_identity()
        request = identity.registration_request(
            passphrase, self.vault, rotation_signature=self.keystore.load_rotation_signature())
        try:
            token = await relay.register(request)
        except GhostError:
            logger.warning("Publishing identity %s failed", identity.id)
            raise
        self.keystore.clear_rotation_signature()
        return token
