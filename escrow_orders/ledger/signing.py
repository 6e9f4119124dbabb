from __future__ import annotations

import base64
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from escrow_orders.core.config import get_settings
from escrow_orders.ledger.canonical import canonical_json

PLATFORM_KEY_ID = "platform"


@dataclass(frozen=True)
class KeyMaterial:
    key_id: str
    signing_key: SigningKey

    @property
    def verify_key(self) -> VerifyKey:
        return self.signing_key.verify_key

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(bytes(self.verify_key)).decode("ascii")


def key_from_seed_b64(seed_b64: str, key_id: str) -> KeyMaterial:
    seed = base64.b64decode(seed_b64)
    if len(seed) != 32:
        raise ValueError("Ed25519 seed must be exactly 32 bytes")
    return KeyMaterial(key_id=key_id, signing_key=SigningKey(seed))


@lru_cache(maxsize=4)
def _platform_key(seed_b64: str) -> KeyMaterial:
    return key_from_seed_b64(seed_b64, PLATFORM_KEY_ID)


def load_platform_key() -> KeyMaterial:
    return _platform_key(get_settings().platform_signing_key)


def sign_object(value: Any, key: KeyMaterial) -> str:
    signature = key.signing_key.sign(canonical_json(value)).signature
    return base64.b64encode(signature).decode("ascii")


def verify_object(value: Any, signature_b64: str, public_key_b64: str) -> bool:
    verify_key = VerifyKey(base64.b64decode(public_key_b64))
    try:
        verify_key.verify(canonical_json(value), base64.b64decode(signature_b64))
        return True
    except BadSignatureError:
        return False
