#!/usr/bin/env python3
"""
iqradio - Offline AM/FM demodulator for raw I/Q captures

Decodes a recorded tuner capture (interleaved unsigned 8-bit or signed
16-bit I/Q, e.g. from rtl_sdr) into a 16-bit stereo WAV file.

Usage:
    ./iqradio.py capture.u8 -o out.wav [--mode WBFM|NBFM|AM] [--rate HZ]

The broadcast region (de-emphasis) and mode are read from ~/.iqradio.cfg;
command-line arguments override the config.
"""

import argparse
import logging
import os
import sys

import numpy as np
from rich.console import Console
from rich.table import Table
from scipy.io import wavfile

from decoder import Decoder
from samples import samples_from_int16, samples_from_uint8
from settings import (
    DEFAULT_CONFIG_FILE,
    MODES,
    REGION_DEEMPHASIS_US,
    ReceiverSettings,
    load_settings,
    save_settings,
)

logger = logging.getLogger("iqradio")

SAMPLE_FORMATS = {
    'u8': (1, samples_from_uint8),
    's16': (2, samples_from_int16),
}

DEFAULT_BLOCK_SIZE = 65536


def aligned_block_size(requested, alignment):
    """Round a block size (in samples) down to a multiple of the decimation alignment."""
    size = (int(requested) // alignment) * alignment
    return max(size, alignment)


def decode_file(path, decoder, sample_format='u8', block_size=DEFAULT_BLOCK_SIZE,
                in_stereo=True):
    """
    Decode a raw interleaved I/Q file block by block.

    Returns:
        (audio, stats) where audio is an (N, 2) float32 array and stats holds
        block, carrier and stereo counts
    """
    itemsize, convert = SAMPLE_FORMATS[sample_format]
    block = aligned_block_size(block_size, decoder.block_alignment)
    chunks = []
    stats = {'blocks': 0, 'carrier_blocks': 0, 'stereo_blocks': 0}

    with open(path, 'rb') as f:
        while True:
            raw = f.read(block * itemsize)
            if not raw:
                break
            # Drop a trailing partial I/Q pair or sample.
            usable = (len(raw) // (2 * itemsize)) * 2 * itemsize
            if usable == 0:
                break
            audio = decoder.process(convert(raw[:usable]), in_stereo=in_stereo)
            chunks.append(audio.interleaved())
            stats['blocks'] += 1
            stats['carrier_blocks'] += int(audio.carrier)
            stats['stereo_blocks'] += int(audio.in_stereo)

    if chunks:
        result = np.concatenate(chunks, axis=0).astype(np.float32)
    else:
        result = np.zeros((0, 2), dtype=np.float32)
    return result, stats


def write_wav(path, audio, sample_rate):
    """Write (N, 2) float audio as 16-bit PCM."""
    pcm = (np.clip(audio, -1.0, 1.0) * 32767).astype(np.int16)
    wavfile.write(path, sample_rate, pcm)


def build_summary(path, decoder, audio, stats):
    """Build a rich table summarizing a decode run."""
    blocks = max(stats['blocks'], 1)
    table = Table(title=os.path.basename(path), show_header=False, box=None, padding=(0, 1))
    table.add_row("Mode", decoder.mode)
    table.add_row("Audio", f"{len(audio) / decoder.out_rate:.2f} s @ {decoder.out_rate} Hz")
    table.add_row("Blocks", str(stats['blocks']))
    table.add_row("Carrier", f"{100.0 * stats['carrier_blocks'] / blocks:.0f}%")
    if decoder.mode == "WBFM":
        table.add_row("Stereo", f"{100.0 * stats['stereo_blocks'] / blocks:.0f}%")
        table.add_row("De-emphasis", f"{decoder.deemphasis_us} µs")
    return table


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="iqradio - demodulate a raw I/Q capture to a WAV file"
    )
    parser.add_argument("input", help="Raw interleaved I/Q capture file")
    parser.add_argument("-o", "--output", required=True, help="Output WAV file")
    parser.add_argument(
        "--format",
        choices=sorted(SAMPLE_FORMATS),
        default='u8',
        help="Sample format of the capture (default: u8, as written by rtl_sdr)"
    )
    parser.add_argument(
        "--mode",
        type=str.upper,
        choices=MODES,
        default=None,
        help="Demodulation mode (default: config or WBFM)"
    )
    parser.add_argument(
        "--rate",
        type=int,
        default=1_008_000,
        help="Capture sample rate in Hz (default: 1008000)"
    )
    parser.add_argument(
        "--region",
        type=str.upper,
        choices=sorted(REGION_DEEMPHASIS_US),
        default=None,
        help="Broadcast region, selects FM de-emphasis (default: config or WW)"
    )
    parser.add_argument("--mono", action="store_true", help="Disable stereo decoding")
    parser.add_argument(
        "--block-size",
        type=int,
        default=DEFAULT_BLOCK_SIZE,
        help="Samples per processing block (rounded to the decimation ratio)"
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="Settings file")
    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Store the effective region and mode in the settings file"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    settings = load_settings(args.config)
    # Command-line arguments override config
    settings = ReceiverSettings(region=args.region or settings.region,
                                mode=args.mode or settings.mode)

    if not os.path.exists(args.input):
        print(f"Error: input file not found: {args.input}")
        return 1
    if args.block_size <= 0:
        print("Error: --block-size must be a positive integer")
        return 1

    try:
        decoder = Decoder(mode=settings.mode, in_rate=args.rate,
                          deemphasis_us=settings.deemphasis_us)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    audio, stats = decode_file(args.input, decoder, sample_format=args.format,
                               block_size=args.block_size, in_stereo=not args.mono)
    write_wav(args.output, audio, decoder.out_rate)

    if args.save_config:
        save_settings(settings, args.config)

    Console().print(build_summary(args.input, decoder, audio, stats))
    return 0


if __name__ == "__main__":
    sys.exit(main())
