"""
auth/keys.py -- RSA key material for RS256 token signing.

TokenSigner wraps one RSA keypair. The private half signs tokens on the node
that issues them; the public half is all any other node needs to verify, so
verification can run anywhere without a shared secret.

Key files (PEM):
  <keys_dir>/private_key.pem   PKCS#8, unencrypted, file mode 0600
  <keys_dir>/public_key.pem    SubjectPublicKeyInfo

load_or_create() validates that the two files belong together before using
them. A mismatched or unreadable pair is regenerated only when generation is
allowed; otherwise startup fails with KeyMaterialError. Regenerating keys
invalidates every token already in circulation.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from auth.errors import KeyMaterialError

logger = logging.getLogger("sessionguard.keys")

KEY_SIZE = 2048
ALGORITHM = "RS256"
PRIVATE_KEY_FILE = "private_key.pem"
PUBLIC_KEY_FILE = "public_key.pem"


class TokenSigner:
    """Holds an RSA keypair (or just a public key) as PEM strings for python-jose."""

    def __init__(self, public_key: rsa.RSAPublicKey, private_key: rsa.RSAPrivateKey | None = None) -> None:
        if private_key is not None and not _pair_matches(private_key, public_key):
            raise KeyMaterialError("RSA private key does not match the public key.")
        self._private_key = private_key
        self._public_key = public_key
        self._public_pem = public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
        self._private_pem = (
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            ).decode("ascii")
            if private_key is not None
            else None
        )
        self.key_id = hashlib.sha256(self._public_pem.encode("ascii")).hexdigest()[:16]

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def generate(cls, key_size: int = KEY_SIZE) -> "TokenSigner":
        """Create a fresh in-memory keypair (tests, throwaway dev keys)."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(private_key.public_key(), private_key)

    @classmethod
    def from_pem(cls, private_pem: str | bytes | None, public_pem: str | bytes) -> "TokenSigner":
        """Build a signer from PEM text. Pass private_pem=None for verify-only."""
        public_key = _load_public(public_pem)
        private_key = _load_private(private_pem) if private_pem is not None else None
        return cls(public_key, private_key)

    @classmethod
    def from_public_pem(cls, public_pem: str | bytes) -> "TokenSigner":
        return cls.from_pem(None, public_pem)

    @classmethod
    def load_or_create(cls, keys_dir: str | Path, generate: bool = False) -> "TokenSigner":
        """Load the keypair from keys_dir, generating it when allowed.

        Raises KeyMaterialError when the keys are missing or invalid and
        generate is False.
        """
        directory = Path(keys_dir)
        private_path = directory / PRIVATE_KEY_FILE
        public_path = directory / PUBLIC_KEY_FILE

        if private_path.is_file() and public_path.is_file():
            try:
                signer = cls.from_pem(private_path.read_bytes(), public_path.read_bytes())
                logger.info("RSA keys loaded from %s (kid=%s)", directory, signer.key_id)
                return signer
            except (KeyMaterialError, OSError) as exc:
                if not generate:
                    raise KeyMaterialError(f"RSA keys in {directory} are unusable: {exc}") from exc
                logger.warning("RSA keys in %s are unusable (%s) -- generating a new pair", directory, exc)
        elif not generate:
            raise KeyMaterialError(
                f"RSA keys not found in {directory}. "
                "Provide private_key.pem and public_key.pem, or set GENERATE_MISSING_KEYS=true."
            )
        else:
            logger.info("RSA keys not found in %s -- generating a new pair", directory)

        signer = cls.generate()
        signer.save(directory)
        return signer

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def can_sign(self) -> bool:
        return self._private_pem is not None

    @property
    def private_pem(self) -> str:
        if self._private_pem is None:
            raise KeyMaterialError("This signer holds only a public key and cannot issue tokens.")
        return self._private_pem

    @property
    def public_pem(self) -> str:
        return self._public_pem

    def save(self, keys_dir: str | Path) -> None:
        """Write both PEM files. The private key is created with mode 0600."""
        directory = Path(keys_dir)
        directory.mkdir(parents=True, exist_ok=True)
        private_path = directory / PRIVATE_KEY_FILE
        fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="ascii") as fh:
            fh.write(self.private_pem)
        (directory / PUBLIC_KEY_FILE).write_text(self._public_pem, encoding="ascii")
        logger.info("RSA keypair written to %s (kid=%s)", directory, self.key_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_bytes(pem: str | bytes) -> bytes:
    return pem.encode("ascii") if isinstance(pem, str) else pem


def _load_public(pem: str | bytes) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(_as_bytes(pem))
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError(f"Invalid public key PEM: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyMaterialError("Public key is not an RSA key.")
    return key


def _load_private(pem: str | bytes) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(_as_bytes(pem), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyMaterialError(f"Invalid private key PEM: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyMaterialError("Private key is not an RSA key.")
    return key


def _pair_matches(private_key: rsa.RSAPrivateKey, public_key: rsa.RSAPublicKey) -> bool:
    return private_key.public_key().public_numbers() == public_key.public_numbers()
