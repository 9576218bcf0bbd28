#!/usr/bin/env python3
"""
FIR Filtering and Integer-Ratio Decimation

Streaming FIR building blocks shared by the demodulators and the decoder:
low-pass coefficient design, a stateful FIRFilter that carries history
between blocks, and the real / interleaved-I/Q downsamplers built on it.
"""

import numpy as np
from scipy import signal as sp_signal

from errors import ConfigurationError, ContractError
from samples import SamplesIQ


def _validate_odd_taps(value, name, minimum=1):
    """Return validated odd FIR tap count."""
    taps = int(value)
    if taps != value or taps < minimum or (taps % 2) == 0:
        raise ConfigurationError(f"{name} must be an odd integer >= {minimum}, got {value}")
    return taps


def _validate_rate_ratio(in_rate, out_rate):
    """Return the integer decimation factor in_rate / out_rate."""
    if in_rate <= 0 or out_rate <= 0:
        raise ConfigurationError(
            f"sample rates must be positive, got in_rate={in_rate} out_rate={out_rate}"
        )
    if int(in_rate) != in_rate or int(out_rate) != out_rate or in_rate % out_rate:
        raise ConfigurationError(
            f"in_rate/out_rate must be an integer ratio, got {in_rate}/{out_rate}"
        )
    return int(in_rate) // int(out_rate)


def get_low_pass_fir_coeffs(sample_rate, half_ampl_freq, length, window="hamming"):
    """
    Design a linear-phase windowed-sinc low-pass filter.

    firwin places its cutoff at the half-amplitude (-6 dB) point, which is
    the corner every filter in this chain is described by.

    Args:
        sample_rate: Sample rate of the signal to filter in Hz
        half_ampl_freq: Half-amplitude frequency in Hz
        length: Number of taps (odd)
        window: scipy window spec (Hamming by default)

    Returns:
        float64 array of symmetric coefficients summing to 1
    """
    length = _validate_odd_taps(length, "length")
    if sample_rate <= 0:
        raise ConfigurationError(f"sample_rate must be positive, got {sample_rate}")
    if not 0 < half_ampl_freq < sample_rate / 2:
        raise ConfigurationError(
            f"half_ampl_freq must be in (0, {sample_rate / 2}), got {half_ampl_freq}"
        )
    if length == 1:
        return np.ones(1, dtype=np.float64)
    h = sp_signal.firwin(length, half_ampl_freq, window=window, fs=sample_rate)
    # Force exact symmetry and unity DC gain.
    h = 0.5 * (h + h[::-1])
    return h / np.sum(h)


class FIRFilter:
    """
    Stateful FIR filter over a step-strided window.

    The last (taps - 1) * step input samples of each block are kept as
    history, so a stream filtered block by block matches the same stream
    filtered in one pass.
    """

    def __init__(self, coefficients, step=1):
        coefficients = np.asarray(coefficients, dtype=np.float64)
        if coefficients.ndim != 1:
            raise ConfigurationError("coefficients must be a 1-D sequence")
        _validate_odd_taps(len(coefficients), "len(coefficients)")
        if int(step) != step or step < 1:
            raise ConfigurationError(f"step must be a positive integer, got {step}")
        self.coefficients = coefficients
        self.step = int(step)
        self.offset = (len(coefficients) - 1) * self.step
        self.history = np.zeros(self.offset, dtype=np.float64)
        self._window = None
        self._block_len = 0

    def reset(self):
        """Forget history (call after a gap in the stream)."""
        self.history = np.zeros(self.offset, dtype=np.float64)
        self._window = None
        self._block_len = 0

    def load_samples(self, samples):
        """Load the next contiguous block of samples."""
        samples = np.asarray(samples, dtype=np.float64).reshape(-1)
        window = np.concatenate((self.history, samples))
        self._window = window
        self._block_len = len(samples)
        if self.offset:
            self.history = window[len(window) - self.offset:].copy()

    def get(self, index):
        """
        Return the filtered sample whose newest input is block sample `index`.

        The result is sum(coefficients[k] * window[index + k * step]), with
        the window being history followed by the current block.
        """
        if self._window is None:
            raise ContractError("get() called before load_samples()")
        index = int(index)
        if not 0 <= index < self._block_len:
            raise IndexError(f"index {index} outside loaded block of {self._block_len}")
        taps = self._window[index:index + self.offset + 1:self.step]
        return float(np.dot(self.coefficients, taps))

    def take(self, indices):
        """Vectorized get() for an array of block indices."""
        if self._window is None:
            raise ContractError("take() called before load_samples()")
        indices = np.asarray(indices, dtype=np.intp)
        out = np.empty(len(indices), dtype=np.float32)
        if len(indices) == 0:
            return out
        if indices.min() < 0 or indices.max() >= self._block_len:
            raise IndexError(f"indices outside loaded block of {self._block_len}")
        taps = len(self.coefficients)
        residues = indices % self.step
        for residue in np.unique(residues):
            mask = residues == residue
            # One lane per interleaved channel; only requested outputs are computed.
            lane = self._window[residue::self.step]
            windows = np.lib.stride_tricks.sliding_window_view(lane, taps)
            out[mask] = windows[(indices[mask] - residue) // self.step] @ self.coefficients
        return out


class Downsampler:
    """Low-pass filter and integer-ratio decimator for one real stream."""

    def __init__(self, in_rate, out_rate, coefficients):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self.ratio = _validate_rate_ratio(in_rate, out_rate)
        self.filter = FIRFilter(coefficients)

    def reset(self):
        self.filter.reset()

    def downsample(self, samples):
        """
        Filter a block and keep one sample in every `ratio`.

        Output length is floor(len(samples) / ratio). Output stays
        phase-continuous across blocks whose lengths are multiples of ratio.
        """
        self.filter.load_samples(samples)
        n_out = len(samples) // self.ratio
        return self.filter.take(np.arange(n_out, dtype=np.intp) * self.ratio)


class IQDownsampler:
    """
    Deinterleave and downsample an I/Q stream in phase lock.

    Even input indices are I, odd indices are Q. A single step=2 filter
    serves both channels so they share history and decimation phase.
    """

    def __init__(self, in_rate, out_rate, coefficients):
        self.in_rate = in_rate
        self.out_rate = out_rate
        self.ratio = _validate_rate_ratio(in_rate, out_rate)
        self.filter = FIRFilter(coefficients, step=2)

    def reset(self):
        self.filter.reset()

    def downsample(self, samples):
        """Return a SamplesIQ with floor(len(samples) / (2 * ratio)) pairs."""
        if len(samples) % 2:
            raise ContractError(f"interleaved I/Q block has odd length {len(samples)}")
        self.filter.load_samples(samples)
        n_out = len(samples) // (2 * self.ratio)
        idx = 2 * self.ratio * np.arange(n_out, dtype=np.intp)
        return SamplesIQ(I=self.filter.take(idx), Q=self.filter.take(idx + 1))
