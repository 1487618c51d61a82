"""
Deterministic receiving keys: (seed, index) -> private key, public key, account.

Follows the ledger's standard wallet derivation:

    private = blake2b(seed || uint32_be(index), digest_size=32)
    public  = ed25519-blake2b public key of private
    account = prefix + base32(4 zero bits || public) + base32(reversed blake2b-40(public))
"""
import hashlib
from dataclasses import dataclass

import ed25519_blake2b

from common.error_handling import InvalidInputError

ALPHABET = "13456789abcdefghijkmnopqrstuwxyz"
MAX_INDEX = 0xFFFFFFFF
SEED_BYTES = 32
KEY_CHARS = 52
CHECKSUM_CHARS = 8


@dataclass(frozen=True)
class DerivedKey:
    private_key: bytes
    public_key: str
    account: str


def parse_seed(seed: str) -> bytes:
    try:
        raw = bytes.fromhex(seed)
    except (TypeError, ValueError):
        raise InvalidInputError("seed must be hex encoded", field="seed")
    if len(raw) != SEED_BYTES:
        raise InvalidInputError(f"seed must be {SEED_BYTES} bytes", field="seed")
    return raw


def _b32encode(value: int, chars: int) -> str:
    return "".join(ALPHABET[(value >> (5 * i)) & 0x1F] for i in reversed(range(chars)))


def _b32decode(text: str) -> int:
    value = 0
    for ch in text:
        pos = ALPHABET.find(ch)
        if pos < 0:
            raise InvalidInputError(f"invalid account character {ch!r}", field="account")
        value = (value << 5) | pos
    return value


def _checksum(public_key: bytes) -> bytes:
    return hashlib.blake2b(public_key, digest_size=5).digest()[::-1]


def encode_account(public_key: bytes, prefix: str = "nano_") -> str:
    body = _b32encode(int.from_bytes(public_key, "big"), KEY_CHARS)
    check = _b32encode(int.from_bytes(_checksum(public_key), "big"), CHECKSUM_CHARS)
    return prefix + body + check


def decode_account(account: str, prefix: str = "nano_") -> bytes:
    """Return the public key of a well-formed account, InvalidInputError otherwise."""
    if not account or not account.startswith(prefix):
        raise InvalidInputError(f"account must start with {prefix}", field="account")
    rest = account[len(prefix):]
    if len(rest) != KEY_CHARS + CHECKSUM_CHARS:
        raise InvalidInputError("invalid account length", field="account")
    key_value = _b32decode(rest[:KEY_CHARS])
    if key_value >> 256:
        raise InvalidInputError("invalid account padding", field="account")
    public_key = key_value.to_bytes(32, "big")
    if _b32decode(rest[KEY_CHARS:]).to_bytes(5, "big") != _checksum(public_key):
        raise InvalidInputError("invalid account checksum", field="account")
    return public_key


def derive(seed: str, index: int, prefix: str = "nano_") -> DerivedKey:
    seed_bytes = parse_seed(seed)
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index <= MAX_INDEX:
        raise InvalidInputError(f"index {index!r} outside 0..{MAX_INDEX}", field="index")

    private_key = hashlib.blake2b(seed_bytes + index.to_bytes(4, "big"), digest_size=32).digest()
    public_key = ed25519_blake2b.SigningKey(private_key).get_verifying_key().to_bytes()
    return DerivedKey(
        private_key=private_key,
        public_key=public_key.hex(),
        account=encode_account(public_key, prefix),
    )
