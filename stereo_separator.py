#!/usr/bin/env python3
"""
Pilot-Locked FM Stereo Separator

Recovers the L-R subcarrier from a demodulated FM composite signal with a
locally generated oscillator that locks onto the 19 kHz pilot.

- Oscillator rotated per sample from precomputed sin/cos tables
  (8001 entries, pilot +/-40 Hz in 0.01 Hz steps)
- I/Q correlation against the pilot drives the frequency correction
- Lock detection with hysteresis on correction energy and pilot level
"""

import logging
from dataclasses import dataclass, field

import numpy as np
from numba import njit

from demodulator import _ema_alpha_from_tau
from errors import ConfigurationError
from samples import StereoSignal

logger = logging.getLogger(__name__)

TABLE_SIZE = 8001
# Table entries per unit of correction; correction is clipped to +/-CORR_LIMIT.
TABLE_RES = 1000.0
CORR_LIMIT = 4.0
# Frequency offset applied per unit of correction.
HZ_PER_CORR = 10.0


def _separate_kernel_python(
    samples,
    sin_table,
    cos_table,
    sin_,
    cos_,
    iavg,
    qavg,
    cavg,
    avg_decay,
    corr_decay,
):
    """Reference separator inner loop (Python)."""
    n = len(samples)
    diff = np.empty(n, dtype=np.float32)

    for i in range(n):
        s = samples[i]

        # Correlate against the oscillator at its current phase.
        iavg += (s * sin_ - iavg) * avg_decay
        qavg += (s * cos_ - qavg) * avg_decay

        # 2*sin(2θ) = 4·sin·cos: 38 kHz reference with DSB-SC gain.
        diff[i] = s * 4.0 * sin_ * cos_

        if iavg > 0.0:
            corr = qavg / iavg
            if corr > CORR_LIMIT:
                corr = CORR_LIMIT
            elif corr < -CORR_LIMIT:
                corr = -CORR_LIMIT
        elif qavg > 0.0:
            corr = CORR_LIMIT
        elif qavg < 0.0:
            corr = -CORR_LIMIT
        else:
            corr = 0.0

        # Advance the oscillator by the corrected per-sample rotation.
        idx = int(np.floor((corr + CORR_LIMIT) * TABLE_RES + 0.5))
        ts = sin_table[idx]
        tc = cos_table[idx]
        new_sin = sin_ * tc + cos_ * ts
        cos_ = cos_ * tc - sin_ * ts
        sin_ = new_sin

        # Lock metric: EMA of squared frequency correction (Hz^2).
        corr_hz = corr * HZ_PER_CORR
        cavg += (corr_hz * corr_hz - cavg) * corr_decay

    return diff, sin_, cos_, iavg, qavg, cavg


_separate_kernel_numba = njit(cache=True)(_separate_kernel_python)

_NUMBA_KERNEL_READY = None


def _numba_kernel_available():
    """Return True when the Numba kernel compiles and runs on this host."""
    global _NUMBA_KERNEL_READY
    if _NUMBA_KERNEL_READY is None:
        try:
            # Same argument types as separate(): read-only tables, fresh float64 block.
            table = np.zeros(TABLE_SIZE, dtype=np.float64)
            table.flags.writeable = False
            _separate_kernel_numba(
                np.zeros(1, dtype=np.float64),
                table,
                table,
                0.0,
                1.0,
                0.0,
                0.0,
                0.0,
                0.0,
                0.0,
            )
            _NUMBA_KERNEL_READY = True
        except Exception as exc:
            logger.warning("numba separator kernel unavailable: %s", exc)
            _NUMBA_KERNEL_READY = False
    return _NUMBA_KERNEL_READY


def prewarm_numba_kernel():
    """
    Eagerly compile/check the Numba separator kernel.

    Call this before real-time streaming to avoid first-use JIT latency inside
    the audio path.
    """
    return _numba_kernel_available()


@dataclass
class ExpAverage:
    """Exponential moving average: avg += (sample - avg) * decay."""

    decay: float
    initial: float = 0.0
    avg: float = field(init=False)

    def __post_init__(self):
        self.avg = self.initial

    def add(self, sample):
        self.avg += (sample - self.avg) * self.decay
        return self.avg

    def reset(self):
        self.avg = self.initial


class StereoSeparator:
    """
    Extracts the stereo difference signal from a demodulated FM composite.

    The oscillator phase is compared to the pilot through two correlation
    averages; their ratio tan(phase error) steers the oscillator frequency by
    up to +/-40 Hz around pilot_freq. The composite is multiplied by the
    doubled oscillator phase to demodulate L-R coherently.
    """

    # Averaging time constants (seconds); ~100 ms class lock response.
    IQ_AVG_TAU_S = 0.030
    CORR_AVG_TAU_S = 0.150
    LEVEL_TAU_S = 0.150

    # Lock when the mean-square correction is below CORR_THRESHOLD Hz^2
    # (20 Hz RMS) and the pilot correlation is a real share of the input.
    # A steady pilot offset counts towards the metric, so offsets up to
    # about 20 Hz still lock.
    CORR_THRESHOLD = 400.0
    CORR_UNLOCK_THRESHOLD = 800.0
    PILOT_LOCK_RATIO = 0.05
    PILOT_UNLOCK_RATIO = 0.03

    def __init__(self, sample_rate, pilot_freq, kernel_mode="auto"):
        if sample_rate <= 0 or pilot_freq <= 0:
            raise ConfigurationError(
                f"sample_rate and pilot_freq must be positive, got {sample_rate}, {pilot_freq}"
            )
        if 2 * (pilot_freq + CORR_LIMIT * HZ_PER_CORR) >= sample_rate / 2:
            raise ConfigurationError(
                f"sample_rate {sample_rate} too low for a {2 * pilot_freq} Hz subcarrier"
            )
        self.sample_rate = sample_rate
        self.pilot_freq = pilot_freq

        mode = str(kernel_mode).strip().lower()
        if mode not in {"auto", "python", "numba"}:
            raise ConfigurationError("kernel_mode must be one of: auto, python, numba")
        if mode == "python":
            backend = "python"
        elif mode == "numba":
            if not _numba_kernel_available():
                raise ConfigurationError("kernel_mode='numba' requested but Numba is unavailable")
            backend = "numba"
        else:
            backend = "numba" if _numba_kernel_available() else "python"
        self._backend = backend
        self._kernel = (
            _separate_kernel_numba if backend == "numba" else _separate_kernel_python
        )

        # Per-sample rotation for pilot_freq - 40 Hz ... pilot_freq + 40 Hz.
        offsets = np.arange(TABLE_SIZE, dtype=np.float64) / 100.0 - CORR_LIMIT * HZ_PER_CORR
        omega = (pilot_freq + offsets) * 2 * np.pi / sample_rate
        self.sin_table = np.sin(omega)
        self.cos_table = np.cos(omega)
        self.sin_table.flags.writeable = False
        self.cos_table.flags.writeable = False

        # Oscillator state (unit phasor)
        self.sin_ = 0.0
        self.cos_ = 1.0

        avg_decay = _ema_alpha_from_tau(self.IQ_AVG_TAU_S, 1, sample_rate)
        corr_decay = _ema_alpha_from_tau(self.CORR_AVG_TAU_S, 1, sample_rate)
        self.iavg = ExpAverage(avg_decay)
        self.qavg = ExpAverage(avg_decay)
        # Start unlocked: full-scale correction energy.
        self.cavg = ExpAverage(corr_decay, initial=(CORR_LIMIT * HZ_PER_CORR) ** 2)

        # Smoothed input RMS for the pilot share gate
        self.level = 0.0
        self.has_pilot = False

    @property
    def backend(self):
        """Return active separator loop backend ("python" or "numba")."""
        return self._backend

    @property
    def pilot_magnitude(self):
        """Magnitude of the pilot correlation (half the pilot amplitude when locked)."""
        return float(np.hypot(self.iavg.avg, self.qavg.avg))

    @property
    def frequency_offset(self):
        """Current oscillator offset from pilot_freq in Hz."""
        iavg = self.iavg.avg
        qavg = self.qavg.avg
        if iavg > 0.0:
            corr = float(np.clip(qavg / iavg, -CORR_LIMIT, CORR_LIMIT))
        else:
            corr = float(np.sign(qavg)) * CORR_LIMIT
        return corr * HZ_PER_CORR

    def separate(self, samples):
        """
        Lock on to the pilot tone and demodulate the stereo difference.

        Args:
            samples: Demodulated FM composite at sample_rate

        Returns:
            StereoSignal with the pilot lock state after this block and the
            raw (unfiltered) L-R product for every input sample
        """
        samples = np.array(samples, dtype=np.float64)
        if len(samples) == 0:
            return StereoSignal(has_pilot=self.has_pilot, diff=np.zeros(0, dtype=np.float32))

        diff, sin_, cos_, iavg, qavg, cavg = self._kernel(
            samples,
            self.sin_table,
            self.cos_table,
            self.sin_,
            self.cos_,
            self.iavg.avg,
            self.qavg.avg,
            self.cavg.avg,
            self.iavg.decay,
            self.cavg.decay,
        )

        # Store state back; renormalize to stop amplitude drift of the phasor.
        norm = np.hypot(sin_, cos_)
        self.sin_ = float(sin_ / norm)
        self.cos_ = float(cos_ / norm)
        self.iavg.avg = float(iavg)
        self.qavg.avg = float(qavg)
        self.cavg.avg = float(cavg)

        rms = float(np.sqrt(np.mean(samples ** 2)))
        if self.level == 0.0:
            self.level = rms
        alpha = _ema_alpha_from_tau(self.LEVEL_TAU_S, len(samples), self.sample_rate)
        self.level += alpha * (rms - self.level)

        ratio = self.pilot_magnitude / max(self.level, 1e-12)
        if self.has_pilot:
            if cavg > self.CORR_UNLOCK_THRESHOLD or ratio < self.PILOT_UNLOCK_RATIO:
                self.has_pilot = False
                logger.debug("pilot lost (corr %.1f Hz^2, ratio %.3f)", cavg, ratio)
        elif cavg < self.CORR_THRESHOLD and ratio > self.PILOT_LOCK_RATIO:
            self.has_pilot = True
            logger.debug("pilot locked (offset %.2f Hz, ratio %.3f)",
                         self.frequency_offset, ratio)

        return StereoSignal(has_pilot=self.has_pilot, diff=diff)

    def reset(self):
        """Reset oscillator, averages and lock state (call after a gap)."""
        self.sin_ = 0.0
        self.cos_ = 1.0
        self.iavg.reset()
        self.qavg.reset()
        self.cavg.reset()
        self.level = 0.0
        self.has_pilot = False
