#!/usr/bin/env python3
"""
Exception types raised at the DSP boundary.

Both derive from ValueError so callers that already guard decoder
construction with ``except ValueError`` keep working.
"""


class ConfigurationError(ValueError):
    """Invalid construction parameters (kernel length, rates, frequencies)."""


class ContractError(ValueError):
    """Caller misuse: mismatched lengths, calls made out of order."""
