# crypto_core/keys.py
from __future__ import annotations

import json
import os
from pathlib import Path

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.utils import random as nacl_random

MASTER_LEN = 32


def derive_subkey(master: bytes, label: str) -> bytes:
    """Domain-separated 32-byte key from the coprocessor master secret."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"pools-coproc-v1|" + label.encode(),
    )
    return hkdf.derive(master)


def new_master() -> bytes:
    return nacl_random(MASTER_LEN)


def load_master(path: str | Path) -> bytes:
    raw = json.loads(Path(path).read_text())
    master = bytes.fromhex(raw["master_hex"])
    if len(master) != MASTER_LEN:
        raise ValueError(f"coprocessor key in {path} must be {MASTER_LEN} bytes")
    return master


def load_or_create_master(path: str | Path) -> bytes:
    p = Path(path)
    if p.exists():
        return load_master(p)
    p.parent.mkdir(parents=True, exist_ok=True)
    master = new_master()
    p.write_text(json.dumps({"master_hex": master.hex()}))
    os.chmod(p, 0o600)
    return master
