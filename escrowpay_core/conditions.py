"""
Crypto-condition engine for XRPL escrows.

Escrows are locked with a PREIMAGE-SHA-256 crypto-condition
(draft-thomas-crypto-conditions).  For a 32-byte preimage the DER
encodings used on the ledger are:

    condition   = A0 25  80 20 <SHA-256(preimage)>  81 01 20
    fulfillment = A0 22  80 20 <preimage>

The condition is public and goes into EscrowCreate; the fulfillment (and
the preimage it wraps) stays secret until the escrow is finished.

The hash-lock primitive is injected as a ``HashLockProvider``.  A mock
generator exists for restricted environments; its output carries the ASCII
marker ``MOCK`` so the builders refuse it unless explicitly allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from escrowpay_core.errors import ConfigError, CryptoUnavailable, InvalidEscrowParams

if TYPE_CHECKING:
    from escrowpay_core.config import ConditionsConfig, EscrowConfig

logger = logging.getLogger("escrowpay_conditions")

PREIMAGE_BYTES = 32
MIN_PREIMAGE_BYTES = 32

# DER tags for the PREIMAGE-SHA-256 type (type id 0).
_TAG_TYPE = 0xA0
_TAG_FINGERPRINT = 0x80
_TAG_COST = 0x81
_TAG_PREIMAGE = 0x80

MOCK_MARKER = b"MOCK".hex().upper()  # "4D4F434B"

_SHA256_ABC = bytes.fromhex(
    "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
)


@dataclass(frozen=True)
class ConditionBundle:
    """Condition / fulfillment / preimage triple, all uppercase hex."""
    condition: str
    fulfillment: str = field(repr=False)
    preimage: str = field(repr=False)
    mock: bool = False

    def to_dict(self) -> dict:
        return {
            "condition": self.condition,
            "fulfillment": self.fulfillment,
            "preimage": self.preimage,
            "mock": self.mock,
        }


# ═══════════════════════════════════════════════════════════════════
#  DER codec
# ═══════════════════════════════════════════════════════════════════

def _tlv(tag: int, value: bytes) -> bytes:
    if len(value) > 0x7F:
        raise ValueError("Only short-form DER lengths are supported")
    return bytes([tag, len(value)]) + value


def _read_tlv(data: bytes, pos: int, tag: int) -> tuple[bytes, int]:
    if pos + 2 > len(data):
        raise ValueError("Truncated encoding")
    if data[pos] != tag:
        raise ValueError(f"Expected tag {tag:#04x}, found {data[pos]:#04x}")
    length = data[pos + 1]
    if length & 0x80:
        raise ValueError("Long-form lengths are not used by PREIMAGE-SHA-256")
    end = pos + 2 + length
    if end > len(data):
        raise ValueError("Length exceeds encoding")
    return data[pos + 2:end], end


def _cost_bytes(cost: int) -> bytes:
    return cost.to_bytes(max(1, (cost.bit_length() + 7) // 8), "big")


def _hex_bytes(text: str, name: str) -> bytes:
    if not isinstance(text, str) or not text:
        raise ValueError(f"{name} must be a non-empty hex string")
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise ValueError(f"{name} is not valid hex") from None


def encode_condition(fingerprint: bytes, cost: int) -> str:
    body = _tlv(_TAG_FINGERPRINT, fingerprint) + _tlv(_TAG_COST, _cost_bytes(cost))
    return _tlv(_TAG_TYPE, body).hex().upper()


def encode_fulfillment(preimage: bytes) -> str:
    return _tlv(_TAG_TYPE, _tlv(_TAG_PREIMAGE, preimage)).hex().upper()


def parse_condition(condition: str) -> tuple[bytes, int]:
    """Return (fingerprint, cost).  Raises ValueError on malformed input."""
    raw = _hex_bytes(condition, "condition")
    body, end = _read_tlv(raw, 0, _TAG_TYPE)
    if end != len(raw):
        raise ValueError("Trailing bytes after condition")
    fingerprint, pos = _read_tlv(body, 0, _TAG_FINGERPRINT)
    if len(fingerprint) != 32:
        raise ValueError("Fingerprint must be 32 bytes")
    cost_raw, pos = _read_tlv(body, pos, _TAG_COST)
    if pos != len(body) or not cost_raw:
        raise ValueError("Malformed cost field")
    return fingerprint, int.from_bytes(cost_raw, "big")


def parse_fulfillment(fulfillment: str) -> bytes:
    """Return the preimage.  Raises ValueError on malformed input."""
    raw = _hex_bytes(fulfillment, "fulfillment")
    body, end = _read_tlv(raw, 0, _TAG_TYPE)
    if end != len(raw):
        raise ValueError("Trailing bytes after fulfillment")
    preimage, pos = _read_tlv(body, 0, _TAG_PREIMAGE)
    if pos != len(body):
        raise ValueError("Trailing bytes inside fulfillment")
    return preimage


def decode_condition(condition: str) -> tuple[bytes, int]:
    """Like ``parse_condition`` but raises InvalidEscrowParams."""
    try:
        return parse_condition(condition)
    except ValueError as exc:
        raise InvalidEscrowParams({"condition": str(exc)}) from exc


def decode_fulfillment(fulfillment: str) -> bytes:
    try:
        return parse_fulfillment(fulfillment)
    except ValueError as exc:
        raise InvalidEscrowParams({"fulfillment": str(exc)}) from exc


def is_mock_encoding(value: str) -> bool:
    return isinstance(value, str) and value.upper().startswith(MOCK_MARKER)


def fulfillment_to_condition(fulfillment: str) -> str:
    preimage = parse_fulfillment(fulfillment)
    return encode_condition(hashlib.sha256(preimage).digest(), len(preimage))


def verify_fulfillment(condition: str, fulfillment: str) -> bool:
    """True when *fulfillment* satisfies *condition*."""
    if is_mock_encoding(condition) or is_mock_encoding(fulfillment):
        return _verify_mock(condition, fulfillment)
    try:
        fingerprint, cost = parse_condition(condition)
        preimage = parse_fulfillment(fulfillment)
    except ValueError:
        return False
    if cost != len(preimage):
        return False
    return hmac.compare_digest(hashlib.sha256(preimage).digest(), fingerprint)


def _verify_mock(condition: str, fulfillment: str) -> bool:
    if not (is_mock_encoding(condition) and is_mock_encoding(fulfillment)):
        return False
    n = len(MOCK_MARKER)
    try:
        preimage = bytes.fromhex(fulfillment[n:])
        digest = bytes.fromhex(condition[n:])
    except ValueError:
        return False
    return hmac.compare_digest(hashlib.sha256(preimage).digest(), digest)


# ═══════════════════════════════════════════════════════════════════
#  Hash-lock providers
# ═══════════════════════════════════════════════════════════════════

class HashLockProvider(Protocol):
    name: str

    def random_bytes(self, n: int) -> bytes: ...

    def sha256(self, data: bytes) -> bytes: ...


class PreimageSha256Provider:
    """pycryptodome-backed CSPRNG and SHA-256."""

    name = "pycryptodome"

    def random_bytes(self, n: int) -> bytes:
        from Crypto.Random import get_random_bytes
        return get_random_bytes(n)

    def sha256(self, data: bytes) -> bytes:
        from Crypto.Hash import SHA256
        return SHA256.new(data).digest()


def self_test(provider: HashLockProvider) -> None:
    """Known-answer test for the provider.  Raises CryptoUnavailable on failure."""
    try:
        digest = provider.sha256(b"abc")
        sample = provider.random_bytes(PREIMAGE_BYTES)
    except Exception as exc:
        raise CryptoUnavailable(f"Hash-lock provider {provider.name!r} failed: {exc}") from exc
    if digest != _SHA256_ABC:
        raise CryptoUnavailable(f"Hash-lock provider {provider.name!r} failed SHA-256 self test")
    if len(sample) != PREIMAGE_BYTES:
        raise CryptoUnavailable(f"Hash-lock provider {provider.name!r} returned short randomness")


# ═══════════════════════════════════════════════════════════════════
#  Generators
# ═══════════════════════════════════════════════════════════════════

class ConditionEngine:
    """Produces genuine PREIMAGE-SHA-256 bundles from an injected provider."""

    name = "preimage-sha256"

    def __init__(self, provider: HashLockProvider | None, preimage_bytes: int = PREIMAGE_BYTES):
        if provider is None:
            raise CryptoUnavailable("No hash-lock provider configured")
        if preimage_bytes < MIN_PREIMAGE_BYTES:
            raise ConfigError(f"Preimage must be at least {MIN_PREIMAGE_BYTES} bytes")
        self_test(provider)
        self.provider = provider
        self.preimage_bytes = preimage_bytes

    def generate_condition_and_fulfillment(self) -> ConditionBundle:
        try:
            preimage = self.provider.random_bytes(self.preimage_bytes)
            fingerprint = self.provider.sha256(preimage)
        except Exception as exc:
            raise CryptoUnavailable(f"Hash-lock provider failed: {exc}") from exc
        if len(preimage) < MIN_PREIMAGE_BYTES or len(fingerprint) != 32:
            raise CryptoUnavailable("Hash-lock provider returned malformed output")
        return ConditionBundle(
            condition=encode_condition(fingerprint, len(preimage)),
            fulfillment=encode_fulfillment(preimage),
            preimage=preimage.hex().upper(),
        )

    generate = generate_condition_and_fulfillment


class MockConditionGenerator:
    """
    Deterministic stand-in for development sandboxes.

    Output is tagged with ``MOCK`` and is refused by the transaction builders
    unless ``allow_mock`` is set, so it can never lock real funds.
    """

    name = "mock"

    def __init__(self, seed: str = "escrowpay-mock"):
        self.seed = seed
        self._counter = 0

    def generate_mock_condition_and_fulfillment(self) -> ConditionBundle:
        self._counter += 1
        preimage = hashlib.sha256(f"{self.seed}:{self._counter}".encode()).digest()
        digest = hashlib.sha256(preimage).digest()
        return ConditionBundle(
            condition=MOCK_MARKER + digest.hex().upper(),
            fulfillment=MOCK_MARKER + preimage.hex().upper(),
            preimage=preimage.hex().upper(),
            mock=True,
        )

    generate = generate_mock_condition_and_fulfillment


def safe_generate_condition_and_fulfillment(
    engine: ConditionEngine,
    fallback: MockConditionGenerator,
    production: bool,
) -> ConditionBundle:
    """Real bundle first; mock only outside production, and never silently."""
    try:
        return engine.generate_condition_and_fulfillment()
    except CryptoUnavailable as exc:
        if production:
            raise
        logger.warning(f"Crypto-conditions unavailable ({exc}); falling back to MOCK conditions")
        return fallback.generate_mock_condition_and_fulfillment()


class FallbackConditionStrategy:
    """Engine with an explicit, logged mock fallback (non-production only)."""

    name = "preimage-sha256+mock-fallback"

    def __init__(self, engine: ConditionEngine, fallback: MockConditionGenerator):
        self.engine = engine
        self.fallback = fallback

    def generate(self) -> ConditionBundle:
        return safe_generate_condition_and_fulfillment(self.engine, self.fallback, production=False)


class ConditionStrategy(Protocol):
    name: str

    def generate(self) -> ConditionBundle: ...


def build_condition_strategy(
    escrow_cfg: EscrowConfig,
    cond_cfg: ConditionsConfig,
    provider: HashLockProvider | None = None,
) -> ConditionStrategy:
    """Select the condition generator from configuration and log the choice."""
    production = escrow_cfg.is_production
    if cond_cfg.strategy == "mock":
        if production:
            raise ConfigError("Mock crypto-conditions are not allowed in production")
        logger.warning("Condition strategy: MOCK (development only, never moves real funds)")
        return MockConditionGenerator()
    if cond_cfg.strategy != "preimage-sha256":
        raise ConfigError(f"Unknown condition strategy {cond_cfg.strategy!r}")

    if provider is None:
        provider = PreimageSha256Provider()
    try:
        engine = ConditionEngine(provider, cond_cfg.preimage_bytes)
    except CryptoUnavailable:
        if production or not cond_cfg.allow_mock_fallback:
            raise
        logger.warning("Hash-lock provider unavailable at startup; using MOCK conditions")
        return MockConditionGenerator()

    if not production and cond_cfg.allow_mock_fallback:
        logger.info(f"Condition strategy: preimage-sha256 via {provider.name} (mock fallback enabled)")
        return FallbackConditionStrategy(engine, MockConditionGenerator())
    logger.info(f"Condition strategy: preimage-sha256 via {provider.name}")
    return engine
