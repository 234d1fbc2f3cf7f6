"""Offline key derivation and worker payload signing.

Keys follow the Cosmos convention (BIP39 mnemonic, BIP44 path
``m/44'/118'/0'/0/0``, secp256k1) with the ``allo`` bech32 prefix. The
bundle signature is a 64-byte ``r||s`` over ``sha256`` of the canonical JSON
encoding, with ``s`` in low form.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from bip_utils import (
    AtomAddrEncoder,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_string, sigencode_string_canonize

from .models import WorkerPrediction

__all__ = [
    "ADDRESS_PREFIX",
    "KeyPair",
    "JsonPayloadCodec",
    "generate_mnemonic",
    "derive_keypair",
    "address_for",
    "canonical_json",
    "sign_bundle",
    "verify_bundle",
    "build_worker_bundle",
]

ADDRESS_PREFIX = "allo"
ENTROPY_BYTES = 32


@dataclass(frozen=True)
class KeyPair:
    private_key: bytes = field(repr=False)
    public_key: bytes
    address: str

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()


def generate_mnemonic(entropy: Optional[bytes] = None) -> str:
    """Return a 24 word mnemonic from 256 bits of entropy."""

    entropy = entropy if entropy is not None else os.urandom(ENTROPY_BYTES)
    if len(entropy) != ENTROPY_BYTES:
        raise ValueError(f"expected {ENTROPY_BYTES} bytes of entropy, got {len(entropy)}")
    return str(Bip39MnemonicGenerator().FromEntropy(entropy))


def derive_keypair(mnemonic: str, prefix: str = ADDRESS_PREFIX) -> KeyPair:
    if not Bip39MnemonicValidator().IsValid(mnemonic):
        raise ValueError("invalid BIP39 mnemonic")
    seed = Bip39SeedGenerator(mnemonic).Generate()
    node = (
        Bip44.FromSeed(seed, Bip44Coins.COSMOS)
        .Purpose()
        .Coin()
        .Account(0)
        .Change(Bip44Changes.CHAIN_EXT)
        .AddressIndex(0)
    )
    public_key = node.PublicKey().RawCompressed().ToBytes()
    return KeyPair(
        private_key=node.PrivateKey().Raw().ToBytes(),
        public_key=public_key,
        address=AtomAddrEncoder.EncodeKey(public_key, hrp=prefix),
    )


def address_for(mnemonic: str, prefix: str = ADDRESS_PREFIX) -> str:
    return derive_keypair(mnemonic, prefix).address


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_bundle(keypair: KeyPair, bundle: Dict[str, Any]) -> str:
    """Sign ``bundle`` and return the hex encoded ``r||s`` signature."""

    digest = hashlib.sha256(canonical_json(bundle).encode("utf-8")).digest()
    signing_key = SigningKey.from_string(keypair.private_key, curve=SECP256k1)
    signature = signing_key.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_string_canonize
    )
    return signature.hex()


def verify_bundle(public_key_hex: str, bundle: Dict[str, Any], signature_hex: str) -> bool:
    digest = hashlib.sha256(canonical_json(bundle).encode("utf-8")).digest()
    verifying_key = VerifyingKey.from_string(bytes.fromhex(public_key_hex), curve=SECP256k1)
    try:
        return verifying_key.verify_digest(bytes.fromhex(signature_hex), digest, sigdecode=sigdecode_string)
    except Exception:  # noqa: BLE001 - ecdsa raises BadSignatureError or BadDigestError
        return False


def build_worker_bundle(
    keypair: KeyPair,
    topic_id: int,
    nonce_height: int,
    prediction: WorkerPrediction,
) -> Dict[str, Any]:
    """Assemble a signed ``InputWorkerDataBundle`` for ``insert-worker-payload``."""

    extra_data = base64.b64encode(prediction.extra_data).decode("ascii") if prediction.extra_data else ""
    inner: Dict[str, Any] = {}
    if prediction.inference_value is not None:
        inner["inference"] = {
            "topic_id": topic_id,
            "block_height": nonce_height,
            "inferer": keypair.address,
            "value": prediction.inference_value,
            "extra_data": extra_data,
            "proof": prediction.proof or "",
        }
    if prediction.forecasts:
        inner["forecast"] = {
            "topic_id": topic_id,
            "block_height": nonce_height,
            "forecaster": keypair.address,
            "forecast_elements": [
                {"inferer": entry.worker_address, "value": entry.forecasted_value}
                for entry in prediction.forecasts
            ],
            "extra_data": extra_data,
        }
    if not inner:
        raise ValueError("a worker bundle needs an inference or at least one forecast")

    return {
        "worker": keypair.address,
        "nonce": {"block_height": nonce_height},
        "topic_id": topic_id,
        "inference_forecasts_bundle": inner,
        "inferences_forecasts_bundle_signature": sign_bundle(keypair, inner),
        "pubkey": keypair.public_key_hex,
    }


class JsonPayloadCodec:
    """Encodes worker bundles as canonical JSON for the CLI.

    This is a stand-in for the chain's protobuf wire format; a codec with the
    same ``encode``/``decode`` pair can replace it without touching callers.
    """

    content_type = "application/json"

    def encode(self, bundle: Dict[str, Any]) -> str:
        return canonical_json(bundle)

    def decode(self, raw: str) -> Dict[str, Any]:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("worker bundle must decode to an object")
        return data
