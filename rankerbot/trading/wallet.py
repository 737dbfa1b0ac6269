"""
Wallet custody for RankerBot.

Generates project and worker wallets and keeps their secrets encrypted
at rest. A loaded Wallet is the signing capability the engines use.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

import base58
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from solders.keypair import Keypair

from rankerbot.core.store import StoredWallet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Wallet:
    """An address plus its signing keypair."""
    address: str
    keypair: Keypair


class WalletManager:
    """
    Creates wallets and manages their encrypted storage.

    Uses AES-256-GCM encryption with a random nonce per wallet.
    """

    def __init__(self, encryption_key: str):
        """
        Initialize wallet manager.

        Args:
            encryption_key: 32-byte hex-encoded encryption key
        """
        if not encryption_key:
            raise ValueError("WALLET_ENCRYPTION_KEY is required")

        self.encryption_key = bytes.fromhex(encryption_key)
        if len(self.encryption_key) != 32:
            raise ValueError("WALLET_ENCRYPTION_KEY must be 32 bytes (64 hex chars)")

        self.aesgcm = AESGCM(self.encryption_key)

    def encrypt_secret(self, private_key_base58: str) -> Tuple[bytes, bytes]:
        """
        Encrypt a private key for storage.

        Returns:
            Tuple of (encrypted_secret, salt)
        """
        # 12-byte nonce for GCM
        salt = os.urandom(12)
        ciphertext = self.aesgcm.encrypt(salt, private_key_base58.encode('utf-8'), None)
        return ciphertext, salt

    def decrypt_secret(self, encrypted_secret: bytes, salt: bytes) -> Optional[str]:
        """
        Decrypt a stored secret.

        Returns:
            Base58-encoded private key, or None on error
        """
        try:
            plaintext = self.aesgcm.decrypt(salt, encrypted_secret, None)
            return plaintext.decode('utf-8')
        except Exception as e:
            logger.error(f"Failed to decrypt wallet: {e}")
            return None

    def create_wallet(self) -> StoredWallet:
        """Generate a fresh keypair and return it encrypted."""
        keypair = Keypair()
        secret = base58.b58encode(bytes(keypair)).decode()
        encrypted, salt = self.encrypt_secret(secret)
        return StoredWallet(pubkey=str(keypair.pubkey()), encrypted_secret=encrypted, salt=salt)

    def create_wallets(self, count: int) -> List[StoredWallet]:
        return [self.create_wallet() for _ in range(count)]

    def load_wallet(self, stored: StoredWallet) -> Optional[Wallet]:
        """
        Decrypt a stored wallet into a signing Wallet.

        Returns:
            Wallet, or None if the secret cannot be decrypted or does not
            match the stored address
        """
        private_key_base58 = self.decrypt_secret(stored.encrypted_secret, stored.salt)
        if not private_key_base58:
            return None

        try:
            key_bytes = base58.b58decode(private_key_base58)
            if len(key_bytes) == 64:
                keypair = Keypair.from_bytes(key_bytes)
            elif len(key_bytes) == 32:
                keypair = Keypair.from_seed(key_bytes)
            else:
                logger.error(f"Invalid key length for {stored.pubkey}: {len(key_bytes)} bytes")
                return None
        except Exception as e:
            logger.error(f"Failed to create keypair: {e}")
            return None
        finally:
            private_key_base58 = None

        if str(keypair.pubkey()) != stored.pubkey:
            logger.error(f"Decrypted key does not match wallet {stored.pubkey}")
            return None

        return Wallet(address=stored.pubkey, keypair=keypair)

    def load_wallets(self, stored: List[StoredWallet]) -> List[Wallet]:
        """Load every wallet that decrypts; undecryptable ones are skipped."""
        wallets = []
        for item in stored:
            wallet = self.load_wallet(item)
            if wallet is not None:
                wallets.append(wallet)
        return wallets
