#!/usr/bin/env python3
"""
Sample block containers and raw ADC buffer conversion.

Every block travelling through the chain is a 1-D float32 numpy array.
Interleaved tuner buffers carry I at even indices and Q at odd indices.
"""

from dataclasses import dataclass

import numpy as np

from errors import ContractError


@dataclass
class SamplesIQ:
    """A deinterleaved I/Q block; both channels always have equal length."""

    I: np.ndarray
    Q: np.ndarray

    def __post_init__(self):
        if len(self.I) != len(self.Q):
            raise ContractError(
                f"I/Q length mismatch: {len(self.I)} != {len(self.Q)}"
            )

    def __len__(self):
        return len(self.I)


@dataclass
class StereoAudio:
    """Output audio block with per-block indicator flags."""

    left: np.ndarray
    right: np.ndarray
    in_stereo: bool = False
    carrier: bool = False

    def __post_init__(self):
        if len(self.left) != len(self.right):
            raise ContractError(
                f"left/right length mismatch: {len(self.left)} != {len(self.right)}"
            )

    def interleaved(self):
        """Return an (N, 2) array of left/right frames."""
        return np.column_stack((self.left, self.right))


@dataclass
class StereoSignal:
    """Result of one StereoSeparator.separate() call."""

    has_pilot: bool
    diff: np.ndarray


def _as_array(buffer, dtype, length):
    if isinstance(buffer, np.ndarray):
        if buffer.dtype != np.dtype(dtype):
            raise ContractError(f"expected {np.dtype(dtype)} buffer, got {buffer.dtype}")
        arr = buffer.reshape(-1)
    else:
        raw = memoryview(buffer).cast("B")
        if len(raw) % np.dtype(dtype).itemsize:
            raise ContractError(
                f"buffer size {len(raw)} is not a multiple of {np.dtype(dtype).itemsize}"
            )
        arr = np.frombuffer(raw, dtype=dtype)
    if length is not None and int(length) != len(arr):
        raise ContractError(f"length {length} does not match buffer of {len(arr)} samples")
    return arr


def samples_from_uint8(buffer, length=None):
    """
    Convert unsigned 8-bit ADC codes to samples in [-1, 1).

    Args:
        buffer: bytes-like object or uint8 array
        length: Expected number of samples (checked when given)

    Returns:
        float32 array where each code b maps to (b - 128) / 128
    """
    arr = _as_array(buffer, np.uint8, length)
    return ((arr.astype(np.float32) - 128.0) / 128.0).astype(np.float32)


def samples_from_int16(buffer, length=None):
    """
    Convert signed 16-bit ADC values to samples in [-1, 1).

    Bytes-like buffers are read as little-endian, which is what
    RTL-SDR style tools write.
    """
    arr = _as_array(buffer, np.dtype("<i2"), length)
    return (arr.astype(np.float32) / 32768.0).astype(np.float32)
