"""
Signer Capabilities
One signer shape for every chain family; the key object lives only in
the closure that produces signatures
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import base58
from eth_account import Account
from eth_keys import keys as eth_keys
from nacl.signing import SigningKey
from loguru import logger
from dotenv import load_dotenv

from blockchain.errors import WalletRejected
from blockchain.models import ChainFamily, Network

load_dotenv()

SR25519 = "sr25519"
ED25519 = "ed25519"
SECP256K1 = "secp256k1"


@dataclass
class Signer:
    """
    Signing capability for one account

    payload is chain-specific: an unsigned transaction dict for EVM
    (signature is the raw signed envelope), message bytes for Solana and
    Polkadot (signature is the 64-byte Ed25519/sr25519 signature).
    """

    family: ChainFamily
    address: str
    public_key: bytes
    crypto_type: str
    ss58_format: int = 42
    _sign: Optional[Callable[[Any], bytes]] = field(default=None, repr=False)

    @property
    def released(self) -> bool:
        return self._sign is None

    def sign(self, payload: Any) -> bytes:
        if self._sign is None:
            raise WalletRejected("Signer has been released")
        return self._sign(payload)

    def derive_address(self) -> str:
        return derive_address(self.family, self.public_key, self.ss58_format)

    def release(self):
        """Drop the signing closure; idempotent"""
        self._sign = None


def derive_address(family: ChainFamily, public_key: bytes, ss58_format: int = 42) -> str:
    """
    Address for a public key in the family's native format

    Args:
        family: Chain family
        public_key: Raw public key (64-byte uncompressed secp256k1 for EVM,
            32 bytes otherwise)
        ss58_format: SS58 network prefix (Polkadot only)

    Returns:
        Checksummed 0x address, base58 key, or SS58 address
    """
    if family == ChainFamily.EVM:
        return eth_keys.PublicKey(public_key).to_checksum_address()
    if family == ChainFamily.SOLANA:
        return base58.b58encode(public_key).decode("utf-8")
    if family == ChainFamily.POLKADOT:
        from substrateinterface.utils.ss58 import ss58_encode
        return ss58_encode(public_key, ss58_format)
    raise ValueError(f"Unsupported chain family: {family}")


def evm_signer(private_key: str) -> Signer:
    """ECDSA secp256k1 signer from a 0x-prefixed hex key"""
    account = Account.from_key(private_key)
    public_key = eth_keys.PrivateKey(bytes(account.key)).public_key.to_bytes()

    def _sign(transaction: dict) -> bytes:
        signed = account.sign_transaction(transaction)
        return bytes(signed.raw_transaction)

    return Signer(
        family=ChainFamily.EVM,
        address=account.address,
        public_key=public_key,
        crypto_type=SECP256K1,
        _sign=_sign,
    )


def solana_signer(secret: str) -> Signer:
    """
    Ed25519 signer from a base58 secret

    Accepts the 64-byte keypair form (seed + public key) used by Solana
    wallets or a bare 32-byte seed.
    """
    raw = base58.b58decode(secret)
    if len(raw) not in (32, 64):
        raise ValueError("Solana secret must decode to 32 or 64 bytes")

    signing_key = SigningKey(raw[:32])
    public_key = bytes(signing_key.verify_key)

    if len(raw) == 64 and raw[32:] != public_key:
        raise ValueError("Solana secret key does not match its public half")

    def _sign(message: bytes) -> bytes:
        return signing_key.sign(bytes(message)).signature

    return Signer(
        family=ChainFamily.SOLANA,
        address=base58.b58encode(public_key).decode("utf-8"),
        public_key=public_key,
        crypto_type=ED25519,
        _sign=_sign,
    )


def polkadot_signer(secret: str, ss58_format: int = 42, crypto_type: str = SR25519) -> Signer:
    """
    sr25519 or ed25519 signer from a secret URI ("//Alice", mnemonic) or
    0x-prefixed hex seed
    """
    from substrateinterface import Keypair, KeypairType

    keypair_type = KeypairType.SR25519 if crypto_type == SR25519 else KeypairType.ED25519

    if secret.startswith("0x"):
        keypair = Keypair.create_from_seed(secret, ss58_format=ss58_format, crypto_type=keypair_type)
    else:
        keypair = Keypair.create_from_uri(secret, ss58_format=ss58_format, crypto_type=keypair_type)

    def _sign(payload: bytes) -> bytes:
        return bytes(keypair.sign(bytes(payload)))

    return Signer(
        family=ChainFamily.POLKADOT,
        address=keypair.ss58_address,
        public_key=bytes(keypair.public_key),
        crypto_type=crypto_type,
        ss58_format=ss58_format,
        _sign=_sign,
    )


class EnvKeyAuth:
    """
    Authorize with key material read from the environment

    The variable is read at authorization time and never retained.
    """

    def __init__(self, env_var: str, crypto_type: str = SR25519):
        self.env_var = env_var
        self.crypto_type = crypto_type

    async def __call__(self, network: Network) -> Signer:
        secret = os.getenv(self.env_var)
        if not secret:
            raise WalletRejected(f"{self.env_var} is not set", network_id=network.id)

        try:
            if network.family == ChainFamily.EVM:
                return evm_signer(secret)
            if network.family == ChainFamily.SOLANA:
                return solana_signer(secret)
            return polkadot_signer(secret, network.ss58_format, self.crypto_type)
        except ValueError as e:
            logger.error(f"Invalid key material in {self.env_var}")
            raise WalletRejected(f"Invalid key material in {self.env_var}", network_id=network.id) from e


class SignerAuth:
    """Hands over a signer produced by an external approval flow"""

    def __init__(self, signer: Signer):
        self.signer = signer

    async def __call__(self, network: Network) -> Signer:
        return self.signer
