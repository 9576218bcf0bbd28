#!/usr/bin/env python3
"""
Stereo separator lock detection and L-R recovery tests.

Verifies that:
1. A clean pilot locks within a bounded number of blocks and stays locked
2. Noise or mono-only composites never report a pilot
3. The recovered difference signal has the transmitted amplitude
4. The oscillator tracks a pilot that is off its nominal frequency
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

from errors import ConfigurationError
from fir import Downsampler, get_low_pass_fir_coeffs
from stereo_separator import (
    TABLE_SIZE,
    StereoSeparator,
    _separate_kernel_numba,
    prewarm_numba_kernel,
)

SAMPLE_RATE = 96_000
BLOCK_SIZE = 4_800  # 50 ms


def _generate_composite(duration_s, pilot_amplitude=0.09, pilot_freq=19_000,
                        diff_amplitude=0.3, diff_freq=1_000, mono_amplitude=0.0):
    """Build an FM multiplex: mono + pilot + DSB-SC L-R on twice the pilot."""
    n = int(duration_s * SAMPLE_RATE)
    t = np.arange(n) / SAMPLE_RATE
    pilot = pilot_amplitude * np.sin(2 * np.pi * pilot_freq * t)
    diff = diff_amplitude * np.sin(2 * np.pi * diff_freq * t)
    subcarrier = diff * np.sin(2 * np.pi * 2 * pilot_freq * t)
    mono = mono_amplitude * np.sin(2 * np.pi * 440 * t)
    return (mono + pilot + subcarrier).astype(np.float32)


def _lock_history(separator, composite):
    history = []
    for i in range(0, len(composite), BLOCK_SIZE):
        history.append(separator.separate(composite[i:i + BLOCK_SIZE]).has_pilot)
    return history


def test_starts_unlocked():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    assert separator.has_pilot is False


def test_clean_pilot_locks_and_stays_locked():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    history = _lock_history(separator, _generate_composite(3.0))

    assert True in history, "separator never locked on a clean pilot"
    first_lock = history.index(True)
    assert first_lock <= 30
    assert all(history[first_lock:]), "lock dropped after acquisition"


def test_noise_never_locks():
    rng = np.random.default_rng(11)
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    noise = rng.normal(scale=0.3, size=40 * BLOCK_SIZE).astype(np.float32)
    assert not any(_lock_history(separator, noise))


def test_mono_without_pilot_never_locks():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    composite = _generate_composite(2.0, pilot_amplitude=0.0, diff_amplitude=0.0,
                                    mono_amplitude=0.5)
    assert not any(_lock_history(separator, composite))


def test_recovers_difference_amplitude():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    lpf = Downsampler(SAMPLE_RATE, 48_000, get_low_pass_fir_coeffs(SAMPLE_RATE, 10_000, 41))
    composite = _generate_composite(3.0)

    recovered = []
    for i in range(0, len(composite), BLOCK_SIZE):
        stereo = separator.separate(composite[i:i + BLOCK_SIZE])
        assert len(stereo.diff) == BLOCK_SIZE
        recovered.append(lpf.downsample(stereo.diff))
    assert separator.has_pilot

    last_second = np.concatenate(recovered)[-48_000:].astype(np.float64)
    t = np.arange(len(last_second)) / 48_000
    amplitude = 2.0 * np.abs(np.mean(last_second * np.exp(-2j * np.pi * 1_000 * t)))
    assert amplitude == pytest.approx(0.3, rel=0.1)


def test_tracks_offset_pilot():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    history = _lock_history(separator, _generate_composite(3.0, pilot_freq=19_005))
    assert history[-1] is True
    assert separator.frequency_offset == pytest.approx(5.0, abs=1.0)


def test_pilot_magnitude_is_half_amplitude_when_locked():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    _lock_history(separator, _generate_composite(2.0))
    assert separator.pilot_magnitude == pytest.approx(0.045, rel=0.1)


def test_tables_are_read_only_and_centered():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    assert len(separator.sin_table) == TABLE_SIZE
    assert len(separator.cos_table) == TABLE_SIZE
    with pytest.raises(ValueError):
        separator.sin_table[0] = 0.0
    center = TABLE_SIZE // 2
    omega = 2 * np.pi * 19_000 / SAMPLE_RATE
    assert separator.sin_table[center] == pytest.approx(np.sin(omega))
    assert separator.cos_table[center] == pytest.approx(np.cos(omega))


def test_reset_restores_initial_state():
    separator = StereoSeparator(SAMPLE_RATE, 19_000)
    _lock_history(separator, _generate_composite(2.0))
    assert separator.has_pilot

    separator.reset()
    fresh = StereoSeparator(SAMPLE_RATE, 19_000)
    assert separator.has_pilot is False
    assert separator.level == 0.0
    assert (separator.sin_, separator.cos_) == (fresh.sin_, fresh.cos_)
    assert separator.cavg.avg == fresh.cavg.avg
    assert separator.iavg.avg == 0.0 and separator.qavg.avg == 0.0


def test_empty_block():
    stereo = StereoSeparator(SAMPLE_RATE, 19_000).separate(np.zeros(0, dtype=np.float32))
    assert stereo.has_pilot is False
    assert len(stereo.diff) == 0


@pytest.mark.parametrize("kwargs", [
    {"sample_rate": 48_000, "pilot_freq": 19_000},
    {"sample_rate": 0, "pilot_freq": 19_000},
    {"sample_rate": SAMPLE_RATE, "pilot_freq": -1},
    {"sample_rate": SAMPLE_RATE, "pilot_freq": 19_000, "kernel_mode": "gpu"},
])
def test_configuration_errors(kwargs):
    with pytest.raises(ConfigurationError):
        StereoSeparator(**kwargs)


def test_python_backend():
    separator = StereoSeparator(SAMPLE_RATE, 19_000, kernel_mode="python")
    assert separator.backend == "python"


@pytest.mark.skipif(not prewarm_numba_kernel(), reason="numba kernel unavailable")
def test_numba_matches_python_kernel():
    composite = _generate_composite(0.2)
    py = StereoSeparator(SAMPLE_RATE, 19_000, kernel_mode="python")
    nb = StereoSeparator(SAMPLE_RATE, 19_000, kernel_mode="numba")
    assert nb.backend == "numba"

    for i in range(0, len(composite), BLOCK_SIZE):
        block = composite[i:i + BLOCK_SIZE]
        a = py.separate(block)
        b = nb.separate(block)
        np.testing.assert_allclose(a.diff, b.diff, atol=1e-5)
        assert a.has_pilot == b.has_pilot
    assert nb.cavg.avg == pytest.approx(py.cavg.avg, rel=1e-6)


@pytest.mark.skipif(not prewarm_numba_kernel(), reason="numba kernel unavailable")
def test_prewarm_covers_separate_signature():
    compiled = len(_separate_kernel_numba.signatures)
    separator = StereoSeparator(SAMPLE_RATE, 19_000, kernel_mode="numba")
    separator.separate(np.zeros(100, dtype=np.float32))
    separator.separate(_generate_composite(0.01)[::2])
    assert len(_separate_kernel_numba.signatures) == compiled
