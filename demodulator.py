#!/usr/bin/env python3
"""
AM/FM Demodulators and De-emphasis

Shared infrastructure (EMA helper, carrier tracking) plus the envelope and
quadrature discriminators used by Decoder (decoder.py), and the single-pole
de-emphasis filter applied to the final audio.
"""

import logging
from abc import ABC, abstractmethod

import numpy as np
from scipy import signal as sp_signal

from errors import ConfigurationError
from fir import IQDownsampler, get_low_pass_fir_coeffs

logger = logging.getLogger(__name__)


def _ema_alpha_from_tau(tau_s, samples, sample_rate_hz):
    """
    Convert a continuous-time EMA time constant to an update alpha.

    With samples=1 this is the per-sample decay factor; with a block length
    it is the per-block factor, which keeps smoothing behavior stable for
    any block size.
    """
    n = int(samples)
    if n <= 0:
        return 1.0
    tau = float(tau_s)
    if tau <= 0.0:
        return 1.0
    fs = float(sample_rate_hz)
    if fs <= 0.0:
        return 1.0
    alpha = 1.0 - np.exp(-n / (tau * fs))
    return float(max(0.0, min(1.0, alpha)))


class Demodulator(ABC):
    """
    Common shape of the AM and FM demodulators.

    Downsamples the interleaved I/Q block, applies the subclass
    discriminator, then records whether the block carried a signal.
    has_carrier() always describes the last completed block.
    """

    def __init__(self, in_rate, out_rate, filter_freq, kernel_len):
        self.in_rate = in_rate
        self.out_rate = out_rate
        coefs = get_low_pass_fir_coeffs(in_rate, filter_freq, kernel_len)
        self.downsampler = IQDownsampler(in_rate, out_rate, coefs)
        self.carrier_threshold = 0.05
        self.magnitude = 0.0
        self._has_carrier = False

    @abstractmethod
    def _discriminate(self, iq):
        """Turn a deinterleaved I/Q block into demodulated samples."""

    def demodulate_tuned(self, samples):
        """
        Demodulate a block of interleaved I/Q samples.

        Args:
            samples: float32 array, I at even and Q at odd indices

        Returns:
            float32 array of demodulated audio at out_rate
        """
        iq = self.downsampler.downsample(samples)
        out = self._discriminate(iq)
        if len(iq):
            self.magnitude = float(np.mean(np.hypot(iq.I, iq.Q)))
        else:
            self.magnitude = 0.0
        carrier = self.magnitude > self.carrier_threshold
        if carrier != self._has_carrier:
            logger.debug("%s carrier %s (magnitude %.4f)", type(self).__name__,
                         "found" if carrier else "lost", self.magnitude)
        self._has_carrier = carrier
        return out

    def has_carrier(self):
        """Return True if the previous block's mean magnitude exceeded the threshold."""
        return self._has_carrier

    def reset(self):
        """Reset demodulator state (call when retuning or after a gap)."""
        self.downsampler.reset()
        self.magnitude = 0.0
        self._has_carrier = False


class AMDemodulator(Demodulator):
    """Envelope detector for amplitude-modulated signals."""

    def _discriminate(self, iq):
        return np.hypot(iq.I, iq.Q).astype(np.float32)


class FMDemodulator(Demodulator):
    """
    Quadrature discriminator for frequency-modulated signals.

    The phase step between consecutive I/Q samples is recovered with
    atan2(cross, dot) and scaled so that a deviation of max_f maps to 1.0.
    The last I/Q pair of each block is carried into the next one.
    """

    def __init__(self, in_rate, out_rate, max_f, filter_freq, kernel_len):
        if max_f <= 0:
            raise ConfigurationError(f"max_f must be positive, got {max_f}")
        super().__init__(in_rate, out_rate, filter_freq, kernel_len)
        self.max_f = max_f
        self.ampl_conv = out_rate / (2 * np.pi * max_f)
        self.last_i = 0.0
        self.last_q = 0.0

    def _discriminate(self, iq):
        n = len(iq)
        if n == 0:
            return np.zeros(0, dtype=np.float32)
        I = iq.I.astype(np.float64)
        Q = iq.Q.astype(np.float64)
        prev_i = np.concatenate(([self.last_i], I[:-1]))
        prev_q = np.concatenate(([self.last_q], Q[:-1]))
        self.last_i = float(I[-1])
        self.last_q = float(Q[-1])

        cross = Q * prev_i - I * prev_q
        dot = I * prev_i + Q * prev_q
        return (np.arctan2(cross, dot) * self.ampl_conv).astype(np.float32)

    def reset(self):
        super().reset()
        self.last_i = 0.0
        self.last_q = 0.0


class Deemphasizer:
    """
    Single-pole de-emphasis low-pass filter.

    y[n] = x[n] + (y[n-1] - x[n]) * mult, with mult = exp(-1 / (fs * tau)).
    """

    def __init__(self, sample_rate, time_constant_us):
        if sample_rate <= 0 or time_constant_us <= 0:
            raise ConfigurationError(
                f"sample_rate and time_constant_us must be positive, "
                f"got {sample_rate} and {time_constant_us}"
            )
        self.sample_rate = sample_rate
        self.time_constant_us = time_constant_us
        self.mult = float(np.exp(-1.0 / (sample_rate * time_constant_us * 1e-6)))
        self.val = 0.0
        self._b = np.array([1.0 - self.mult])
        self._a = np.array([1.0, -self.mult])

    def in_place(self, samples):
        """De-emphasize a float array in place and return it."""
        if len(samples) == 0:
            return samples
        out, _ = sp_signal.lfilter(self._b, self._a, samples,
                                   zi=np.array([self.mult * self.val]))
        self.val = float(out[-1])
        samples[:] = out
        return samples

    def reset(self):
        self.val = 0.0
