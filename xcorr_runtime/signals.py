"""Test signals: maximal-length (M-)sequences and cyclic shift batches."""

from __future__ import annotations

import numpy as np

# x^16 + x^14 + x^13 + x^11 + 1, period 2**16 - 1
LFSR_BITS = 16
LFSR_TAPS = (0, 2, 3, 5)


def m_sequence(length: int, seed: int = 0xACE1, amplitude: int = 1) -> np.ndarray:
    """+/-amplitude int32 samples from a 16-bit Fibonacci LFSR."""
    if length < 1:
        raise ValueError(f"length must be >= 1, got {length}")
    state = seed & ((1 << LFSR_BITS) - 1)
    if state == 0:
        raise ValueError("LFSR seed must be non-zero")
    out = np.empty(length, dtype=np.int32)
    for i in range(length):
        out[i] = amplitude if state & 1 else -amplitude
        bit = 0
        for tap in LFSR_TAPS:
            bit ^= state >> tap
        state = (state >> 1) | ((bit & 1) << (LFSR_BITS - 1))
    return out


def cyclic_shift(signal: np.ndarray, shift: int) -> np.ndarray:
    """x[n] = signal[(n + shift) mod N]: the lag that row `shift` of the reference bank matches."""
    return np.roll(np.asarray(signal), -shift)


def shifted_batch(reference: np.ndarray, shifts) -> np.ndarray:
    """Stack cyclic_shift(reference, k) for every k in shifts -> (len(shifts), N) int32."""
    return np.stack([cyclic_shift(reference, k) for k in shifts]).astype(np.int32)
