"""age decryption helpers: identity parsing, passphrase derivation and file decryption."""

import hashlib
import logging
from typing import List, Union

import bech32
import pyrage

from ..utils.deps import OSFS


logger = logging.getLogger(__name__)

SECRET_KEY_PREFIX = "AGE-SECRET-KEY-"

# Current salt first; the legacy one keeps archives from older producers readable.
PASSPHRASE_SALTS = (
    b"proxsave/age-passphrase/v1",
    b"proxmox-backup-go/age-passphrase/v1",
)

SCRYPT_N = 1 << 15
SCRYPT_R = 8
SCRYPT_P = 1
KEY_LEN = 32

WRONG_KEY_MARKERS = ("no matching", "incorrect")


def _clamp(key: bytearray):
    key[0] &= 248
    key[31] &= 127
    key[31] |= 64


def _encode_secret_key(key: bytes) -> str:
    words = bech32.convertbits(list(key), 8, 5)
    if words is None:
        raise ValueError("derive identity: bech32 conversion failed")
    return bech32.bech32_encode(SECRET_KEY_PREFIX.lower(), words).upper()


def derive_secret_keys(passphrase: Union[bytes, bytearray]) -> List[str]:
    """AGE-SECRET-KEY strings derived from a passphrase, one per known salt."""
    if not passphrase:
        raise ValueError("passphrase cannot be empty")
    keys: List[str] = []
    for salt in PASSPHRASE_SALTS:
        derived = bytearray(hashlib.scrypt(bytes(passphrase), salt=salt, n=SCRYPT_N, r=SCRYPT_R,
                                           p=SCRYPT_P, dklen=KEY_LEN, maxmem=64 * 1024 * 1024))
        _clamp(derived)
        secret = _encode_secret_key(bytes(derived))
        derived[:] = b"\x00" * len(derived)
        if secret not in keys:
            keys.append(secret)
    return keys


def derive_identities(passphrase: Union[bytes, bytearray]) -> List[pyrage.x25519.Identity]:
    return [pyrage.x25519.Identity.from_str(k) for k in derive_secret_keys(passphrase)]


def parse_identity_input(secret: Union[bytes, bytearray]) -> List[pyrage.x25519.Identity]:
    """Turn operator input into identities: a literal secret key or a passphrase."""
    text = bytes(secret).decode("utf-8", errors="replace").strip()
    if text.upper().startswith(SECRET_KEY_PREFIX):
        return [pyrage.x25519.Identity.from_str(text.upper())]
    return derive_identities(text.encode("utf-8"))


def is_wrong_key_error(err: BaseException) -> bool:
    """True when decryption failed because no identity matched the archive."""
    message = str(err).lower()
    return any(marker in message for marker in WRONG_KEY_MARKERS)


def decrypt_file(fs: OSFS, src: str, dst: str, identities: List[pyrage.x25519.Identity]):
    """Decrypt ``src`` into ``dst``.

    Plaintext is written to a sibling ``.partial`` file that is renamed into
    place only after decryption succeeds, so a failed attempt leaves nothing
    at ``dst``.
    """
    partial = dst + ".partial"
    try:
        pyrage.decrypt_file(fs.path(src), fs.path(partial), identities)
        fs.chmod(partial, 0o640)
        fs.rename(partial, dst)
    finally:
        if fs.exists(partial):
            fs.remove(partial)
    logger.debug(f"Decrypted {src} to {dst}")
