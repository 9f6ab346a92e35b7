"""Identity utilities for deterministic request fingerprints.

- canonicalize_config: recursively key-sorted compact JSON of a pipeline config
- derive_idempotency_key: stable fingerprint of a transform request
- derive_seed: deterministic 32-bit seed from an idempotency key

Nothing in this module may use randomness or process-dependent state
(``hash()`` is salted per process, so it is never used here).
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from atelier.models.types import PipelineConfig, TransformRequest

# 64-bit FNV-1a parameters
FNV64_OFFSET_BASIS = 0xCBF29CE484222325
FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF
_MASK32 = 0xFFFFFFFF

KEY_DELIMITER = "|"


def sort_keys_recursive(value: Any) -> Any:
    """Return a copy of ``value`` with every mapping's keys sorted.

    Lists keep their order (element order is meaningful, e.g. cleanup targets)
    but their elements are sorted recursively.
    """
    if isinstance(value, dict):
        return {key: sort_keys_recursive(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [sort_keys_recursive(item) for item in value]
    return value


def canonicalize_config(config: PipelineConfig | dict) -> str:
    """Canonical JSON for a pipeline config.

    Pydantic fills in defaults before dumping, so a config that omits a default
    canonicalizes identically to one that spells it out.

    Args:
        config: PipelineConfig model or plain dict.

    Returns:
        Compact JSON string with recursively sorted keys.
    """
    if isinstance(config, BaseModel):
        data = config.model_dump(mode="json")
    else:
        data = PipelineConfig.model_validate(config).model_dump(mode="json")

    return json.dumps(
        sort_keys_recursive(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def fnv1a_64(text: str) -> int:
    """64-bit FNV-1a over the UTF-8 bytes of ``text``."""
    value = FNV64_OFFSET_BASIS
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * FNV64_PRIME) & _MASK64
    return value


def derive_idempotency_key(
    request: TransformRequest,
    model_version: str,
    app_version: str,
) -> str:
    """Compute the idempotency key of a transform request.

    key = fnv1a_64(source_image_id | canonical_config | model_version |
                   app_version | seed_offset)

    Args:
        request: Transform request.
        model_version: Generative model version the result depends on.
        app_version: Application version the result depends on.

    Returns:
        16-character lowercase hex string.
    """
    raw = KEY_DELIMITER.join(
        [
            request.source_image_id,
            canonicalize_config(request.pipeline_config),
            model_version,
            app_version,
            str(request.seed_offset),
        ]
    )
    return f"{fnv1a_64(raw):016x}"


def derive_seed(idempotency_key: str) -> int:
    """Derive a deterministic seed from an idempotency key.

    Classic ``h = h * 31 + c`` rolling hash, wrapped to a signed 32-bit
    integer after every step, then made non-negative.

    Args:
        idempotency_key: Key from derive_idempotency_key.

    Returns:
        Integer in [0, 2**31].

    Examples:
        >>> derive_seed("")
        0
        >>> derive_seed("a")
        97
    """
    value = 0
    for char in idempotency_key:
        value = (value * 31 + ord(char)) & _MASK32
    if value >= 2**31:
        value -= 2**32
    return abs(value)
