#!/usr/bin/env python3
"""
Receiver Decoder

Wires the DSP components into the complete raw-samples -> StereoAudio chain
for the three receive modes:

- WBFM: broadcast FM, pilot-locked stereo, de-emphasis
- NBFM: narrowband FM voice, mono, no de-emphasis
- AM:   envelope detection, mono
"""

import logging

import numpy as np

from demodulator import (
    AMDemodulator,
    Deemphasizer,
    FMDemodulator,
    _ema_alpha_from_tau,
)
from errors import ConfigurationError
from fir import Downsampler, _validate_rate_ratio, get_low_pass_fir_coeffs
from samples import StereoAudio
from settings import MODES
from stereo_separator import StereoSeparator

logger = logging.getLogger(__name__)


class Decoder:
    """
    Demodulates interleaved I/Q blocks into stereo audio blocks.

    Feed blocks whose length is a multiple of block_alignment to keep every
    decimation stage phase-continuous.
    """

    # Broadcast FM
    WBFM_MAX_F = 75000
    WBFM_FILTER_HZ = 60000
    WBFM_KERNEL_LEN = 51
    PILOT_FREQ = 19000
    AUDIO_LPF_HZ = 15000
    AUDIO_LPF_TAPS = 127

    # Narrowband FM (demodulated straight to out_rate)
    NBFM_MAX_F = 5000
    NBFM_FILTER_HZ = 12500
    NBFM_KERNEL_LEN = 401

    # AM (demodulated straight to out_rate)
    AM_FILTER_HZ = 8000
    AM_KERNEL_LEN = 401
    AM_LEVEL_TAU_S = 0.5

    def __init__(self, mode="WBFM", in_rate=1_008_000, inter_rate=336_000,
                 out_rate=48_000, deemphasis_us=50, kernel_mode="auto"):
        mode = str(mode).strip().upper()
        if mode not in MODES:
            raise ConfigurationError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")
        self.mode = mode
        self.in_rate = in_rate
        self.inter_rate = inter_rate
        self.out_rate = out_rate
        self.deemphasis_us = deemphasis_us
        self.block_alignment = 2 * _validate_rate_ratio(in_rate, out_rate)

        self._in_stereo = False
        self._am_level = 0.0
        self.separator = None
        self.stereo_sampler = None
        self.mono_sampler = None
        self.deemph_left = None
        self.deemph_right = None

        if mode == "WBFM":
            _validate_rate_ratio(in_rate, inter_rate)
            _validate_rate_ratio(inter_rate, out_rate)
            self.demodulator = FMDemodulator(in_rate, inter_rate, self.WBFM_MAX_F,
                                             self.WBFM_FILTER_HZ, self.WBFM_KERNEL_LEN)
            coefs = get_low_pass_fir_coeffs(inter_rate, self.AUDIO_LPF_HZ, self.AUDIO_LPF_TAPS)
            self.mono_sampler = Downsampler(inter_rate, out_rate, coefs)
            self.stereo_sampler = Downsampler(inter_rate, out_rate, coefs)
            self.separator = StereoSeparator(inter_rate, self.PILOT_FREQ,
                                             kernel_mode=kernel_mode)
            self.deemph_left = Deemphasizer(out_rate, deemphasis_us)
            self.deemph_right = Deemphasizer(out_rate, deemphasis_us)
        elif mode == "NBFM":
            self.demodulator = FMDemodulator(in_rate, out_rate, self.NBFM_MAX_F,
                                             self.NBFM_FILTER_HZ, self.NBFM_KERNEL_LEN)
        else:
            self.demodulator = AMDemodulator(in_rate, out_rate, self.AM_FILTER_HZ,
                                             self.AM_KERNEL_LEN)

    @property
    def has_carrier(self):
        """True if the last block carried a signal above the carrier threshold."""
        return self.demodulator.has_carrier()

    @property
    def in_stereo(self):
        """True if the last block was decoded in stereo."""
        return self._in_stereo

    def process(self, samples, in_stereo=True):
        """
        Decode one block of interleaved I/Q samples.

        Args:
            samples: float32 array (I at even, Q at odd indices)
            in_stereo: Allow stereo output when the pilot is locked (WBFM)

        Returns:
            StereoAudio at out_rate
        """
        if self.mode == "WBFM":
            audio = self._process_wbfm(samples, in_stereo)
        elif self.mode == "NBFM":
            mono = self.demodulator.demodulate_tuned(samples)
            audio = StereoAudio(left=mono, right=mono.copy())
        else:
            mono = self._process_am(samples)
            audio = StereoAudio(left=mono, right=mono.copy())
        audio.carrier = self.demodulator.has_carrier()
        self._in_stereo = audio.in_stereo
        return audio

    def _process_wbfm(self, samples, in_stereo):
        composite = self.demodulator.demodulate_tuned(samples)
        left = self.mono_sampler.downsample(composite)
        right = left.copy()

        # The separator and its downsampler always run so their state stays
        # continuous; in_stereo only decides whether the difference is mixed.
        stereo = self.separator.separate(composite)
        diff = self.stereo_sampler.downsample(stereo.diff)
        stereo_out = bool(in_stereo and stereo.has_pilot)
        if stereo_out:
            left += diff
            right -= diff
        if stereo_out != self._in_stereo:
            logger.debug("stereo %s", "on" if stereo_out else "off")

        self.deemph_left.in_place(left)
        self.deemph_right.in_place(right)
        return StereoAudio(left=left, right=right, in_stereo=stereo_out)

    def _process_am(self, samples):
        envelope = self.demodulator.demodulate_tuned(samples)
        if len(envelope) == 0:
            return envelope
        level = float(np.mean(envelope))
        if self._am_level == 0.0:
            self._am_level = level
        alpha = _ema_alpha_from_tau(self.AM_LEVEL_TAU_S, len(envelope), self.out_rate)
        self._am_level += alpha * (level - self._am_level)
        if self._am_level <= 0.0:
            return np.zeros_like(envelope)
        return (envelope / self._am_level - 1.0).astype(np.float32)

    def reset(self):
        """Reset all stage state (call when retuning or after dropped samples)."""
        self.demodulator.reset()
        for stage in (self.mono_sampler, self.stereo_sampler, self.separator,
                      self.deemph_left, self.deemph_right):
            if stage is not None:
                stage.reset()
        self._in_stereo = False
        self._am_level = 0.0
