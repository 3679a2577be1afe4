from __future__ import annotations

from typing import Final

import numpy as np

SAMPLE_RATE: Final[int] = 8000


def ulaw_encode(pcm16: np.ndarray) -> bytes:
    """Encode PCM16 int16 array to G.711 mu-law bytes."""

    if pcm16.size == 0:
        return b""

    x = pcm16.astype(np.int32)
    sign = (x < 0).astype(np.int32)
    x = np.abs(x)

    # Mu-law companding constants (G.711): bias=33, clip=32635.
    x = np.minimum(x, 32635)
    x = x + 33

    exponent = np.zeros_like(x)
    for exp in range(8):
        exponent = np.where(x >= (1 << (exp + 7)), exp, exponent)

    mantissa = (x >> (exponent + 3)) & 0x0F

    ulaw = np.bitwise_not((sign << 7) | (exponent << 4) | mantissa).astype(np.uint8)
    return ulaw.tobytes()


def ulaw_silence(duration_ms: int, *, sample_rate: int = SAMPLE_RATE) -> bytes:
    """Return ``duration_ms`` of mu-law encoded silence."""

    samples = int(sample_rate * duration_ms / 1000)
    return ulaw_encode(np.zeros(samples, dtype=np.int16))
