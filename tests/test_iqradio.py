#!/usr/bin/env python3
"""Command-line front end tests: decode a small capture file to WAV."""

import os
import sys

import numpy as np
from scipy.io import wavfile

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

import iqradio
from decoder import Decoder
from settings import load_settings

IN_RATE = 240_000


def _write_nbfm_capture(path, duration_s=0.5, sample_format="u8"):
    n = int(duration_s * IN_RATE)
    t = np.arange(n) / IN_RATE
    phase = 2 * np.pi * 2_500 * np.cumsum(np.sin(2 * np.pi * 1_000 * t)) / IN_RATE
    iq = 0.5 * np.exp(1j * phase)
    interleaved = np.empty(2 * n)
    interleaved[0::2] = iq.real
    interleaved[1::2] = iq.imag
    if sample_format == "u8":
        raw = np.clip(np.round(interleaved * 128 + 128), 0, 255).astype(np.uint8)
    else:
        raw = np.round(interleaved * 32767).astype("<i2")
    path.write_bytes(raw.tobytes())


def test_aligned_block_size():
    assert iqradio.aligned_block_size(1_000, 42) == 966
    assert iqradio.aligned_block_size(10, 42) == 42


def test_decode_file_drops_partial_pair(tmp_path):
    capture = tmp_path / "capture.u8"
    _write_nbfm_capture(capture, duration_s=0.1)
    with open(capture, "ab") as f:
        f.write(b"\x80")

    decoder = Decoder("NBFM", in_rate=IN_RATE)
    audio, stats = iqradio.decode_file(str(capture), decoder, block_size=4_800)
    assert audio.shape == (4_800, 2)
    assert audio.dtype == np.float32
    assert stats["blocks"] == 10
    assert stats["carrier_blocks"] == 10
    assert stats["stereo_blocks"] == 0


def test_main_writes_wav(tmp_path):
    capture = tmp_path / "capture.u8"
    output = tmp_path / "out.wav"
    config = tmp_path / "iqradio.cfg"
    _write_nbfm_capture(capture)

    rc = iqradio.main([str(capture), "-o", str(output), "--mode", "nbfm",
                       "--rate", str(IN_RATE), "--region", "NA",
                       "--config", str(config), "--save-config"])
    assert rc == 0

    rate, pcm = wavfile.read(str(output))
    assert rate == 48_000
    assert pcm.dtype == np.int16
    assert pcm.shape == (24_000, 2)
    # 2.5 kHz deviation on a 5 kHz scale: half of full scale.
    assert 0.4 * 32767 < np.max(pcm[1_000:, 0]) < 0.6 * 32767

    saved = load_settings(str(config))
    assert (saved.region, saved.mode) == ("NA", "NBFM")


def test_main_s16_format(tmp_path):
    capture = tmp_path / "capture.s16"
    output = tmp_path / "out.wav"
    _write_nbfm_capture(capture, duration_s=0.2, sample_format="s16")

    rc = iqradio.main([str(capture), "-o", str(output), "--format", "s16",
                       "--mode", "NBFM", "--rate", str(IN_RATE),
                       "--config", str(tmp_path / "none.cfg")])
    assert rc == 0
    _, pcm = wavfile.read(str(output))
    assert pcm.shape == (9_600, 2)


def test_main_missing_input(tmp_path):
    rc = iqradio.main([str(tmp_path / "missing.u8"), "-o", str(tmp_path / "out.wav"),
                       "--config", str(tmp_path / "none.cfg")])
    assert rc == 1
    assert not (tmp_path / "out.wav").exists()


def test_main_rejects_unsupported_rate(tmp_path):
    capture = tmp_path / "capture.u8"
    _write_nbfm_capture(capture, duration_s=0.05)
    rc = iqradio.main([str(capture), "-o", str(tmp_path / "out.wav"),
                       "--mode", "WBFM", "--rate", str(IN_RATE),
                       "--config", str(tmp_path / "none.cfg")])
    assert rc == 1
