from .esp32 import ESP32Profile
from .esp32c3 import ESP32C3Profile
from .esp32s2 import ESP32S2Profile
from .esp32s3 import ESP32S3Profile
from .esp8266 import ESP8266Profile
from ..util import UnsupportedChip, strip_chip_name


CHIP_DEFS = {
    "esp8266": ESP8266Profile,
    "esp32": ESP32Profile,
    "esp32s2": ESP32S2Profile,
    "esp32s3": ESP32S3Profile,
    "esp32c3": ESP32C3Profile,
}

CHIP_LIST = list(CHIP_DEFS.keys())


def resolve_chip(chip_name):
    """Return the ChipProfile class for a chip name, e.g. 'esp32c3' or 'ESP32-C3'"""
    try:
        return CHIP_DEFS[strip_chip_name(chip_name)]
    except (KeyError, AttributeError):
        raise UnsupportedChip(chip_name, CHIP_LIST)
