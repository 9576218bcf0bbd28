#!/usr/bin/env python3
"""
Receiver settings: broadcast region persistence and the settings message.

The only persisted choice is the broadcast region, which selects the FM
de-emphasis time constant. The settings dialog reports changes with a
message of the form {"type": "setsettings", "data": {"region": "WW"}}.
"""

import configparser
import logging
import os
from dataclasses import dataclass

from errors import ContractError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = os.path.expanduser("~/.iqradio.cfg")
DEFAULT_REGION = "WW"
MODES = ("WBFM", "NBFM", "AM")

# De-emphasis time constant (microseconds) per broadcast region.
REGION_DEEMPHASIS_US = {
    "WW": 50,   # Worldwide / Europe
    "NA": 75,   # Americas, South Korea
    "JP": 50,   # Japan
}


def _normalize_region(value):
    region = str(value or DEFAULT_REGION).strip().upper()
    if region not in REGION_DEEMPHASIS_US:
        logger.warning("unknown region %r, using %s", value, DEFAULT_REGION)
        return DEFAULT_REGION
    return region


def _normalize_mode(value):
    mode = str(value).strip().upper()
    if mode not in MODES:
        logger.warning("unknown mode %r, using WBFM", value)
        return "WBFM"
    return mode


@dataclass
class ReceiverSettings:
    region: str = DEFAULT_REGION
    mode: str = "WBFM"

    def __post_init__(self):
        self.region = _normalize_region(self.region)
        self.mode = _normalize_mode(self.mode)

    @property
    def deemphasis_us(self):
        """De-emphasis time constant for the configured region."""
        return REGION_DEEMPHASIS_US[self.region]


def load_settings(path=DEFAULT_CONFIG_FILE):
    """Load settings from an INI file; missing or invalid files give defaults."""
    settings = ReceiverSettings()
    if not os.path.exists(path):
        return settings
    config = configparser.ConfigParser()
    try:
        config.read(path)
        if config.has_option('receiver', 'region'):
            settings.region = _normalize_region(config.get('receiver', 'region'))
        if config.has_option('receiver', 'mode'):
            settings.mode = _normalize_mode(config.get('receiver', 'mode'))
    except (ValueError, configparser.Error) as e:
        logger.warning("ignoring invalid config %s: %s", path, e)
        return ReceiverSettings()
    return settings


def save_settings(settings, path=DEFAULT_CONFIG_FILE):
    """Write settings to an INI file."""
    config = configparser.ConfigParser()
    config['receiver'] = {
        'region': settings.region,
        'mode': settings.mode,
    }
    with open(path, 'w') as f:
        config.write(f)


def settings_message(settings):
    """Build the message the settings dialog posts to its owner."""
    return {
        'type': 'setsettings',
        'data': {'region': settings.region or DEFAULT_REGION},
    }


def apply_settings_message(settings, message):
    """
    Apply a settings dialog message and return the updated settings.

    Raises:
        ContractError: message is not a setsettings message
    """
    if not isinstance(message, dict) or message.get('type') != 'setsettings':
        raise ContractError(f"not a setsettings message: {message!r}")
    data = message.get('data') or {}
    if not isinstance(data, dict):
        raise ContractError(f"setsettings data must be a mapping, got {data!r}")
    return ReceiverSettings(region=data.get('region') or DEFAULT_REGION,
                            mode=settings.mode)
