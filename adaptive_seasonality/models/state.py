"""Tagged state documents.

A seasonal component persists to a nested dict of JSON-compatible values::

    {
        "rng": {...},            # jitter generator state
        "bucketing": {...},      # period, limits, time origin, bucket list
        "splines": {...} | None, # last interpolation (time, value, variance)
    }

Unknown tags are ignored on restore. A missing required tag makes the
restore fail.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import numpy as np

RNG_TAG = "rng"
BUCKETING_TAG = "bucketing"
SPLINES_TAG = "splines"
SPLINES_TIME_TAG = "time"
VALUE_SPLINE_TAG = "value"
VARIANCE_SPLINE_TAG = "variance"


def require(doc: Any, tag: str) -> Any:
    """Return ``doc[tag]``; raise ``TypeError`` if ``doc`` is not a dict and ``KeyError`` if it lacks ``tag``."""
    if not isinstance(doc, dict):
        raise TypeError(f"expected a state document, got {type(doc).__name__}")
    if tag not in doc:
        raise KeyError(f"missing required tag {tag!r}")
    return doc[tag]


def rng_state_to_dict(state: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a numpy Philox ``bit_generator.state`` into plain ints."""
    inner = state["state"]
    return {
        "bit_generator": str(state["bit_generator"]),
        "counter": [int(v) for v in inner["counter"]],
        "key": [int(v) for v in inner["key"]],
        "buffer": [int(v) for v in state["buffer"]],
        "buffer_pos": int(state["buffer_pos"]),
        "has_uint32": int(state["has_uint32"]),
        "uinteger": int(state["uinteger"]),
    }


def _words(values: Any, tag: str) -> np.ndarray:
    words = [int(v) for v in values]
    if any(not 0 <= w < 2**64 for w in words):
        raise ValueError(f"{tag} words must lie in [0, 2**64)")
    return np.array(words, dtype=np.uint64)


def rng_state_from_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of :func:`rng_state_to_dict`.

    Raises ``ValueError`` for words outside the unsigned 64-bit range.
    """
    return {
        "bit_generator": require(d, "bit_generator"),
        "state": {
            "counter": _words(require(d, "counter"), "counter"),
            "key": _words(require(d, "key"), "key"),
        },
        "buffer": _words(require(d, "buffer"), "buffer"),
        "buffer_pos": int(require(d, "buffer_pos")),
        "has_uint32": int(require(d, "has_uint32")),
        "uinteger": int(require(d, "uinteger")),
    }


def rng_state_bytes(d: Dict[str, Any]) -> bytes:
    """Canonical bytes of a flattened generator state (checksums)."""
    words = d["counter"] + d["key"] + d["buffer"] + [d["buffer_pos"], d["has_uint32"], d["uinteger"]]
    return d["bit_generator"].encode("utf-8") + np.array(words, dtype="<u8").tobytes()


def dumps(doc: Dict[str, Any]) -> str:
    """Serialize a state document to JSON text."""
    return json.dumps(doc, sort_keys=True, allow_nan=True)


def loads(text: str) -> Dict[str, Any]:
    """Parse JSON text produced by :func:`dumps`. Raises ``ValueError`` on bad input."""
    doc = json.loads(text)
    if not isinstance(doc, dict):
        raise ValueError("state document must be a JSON object")
    return doc
