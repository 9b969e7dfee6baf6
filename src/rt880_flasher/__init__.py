"""
RT-880 Flasher - firmware programming and SPI flash backup/restore for
RT-880 class radios over the bootloader's serial protocol.
"""

__version__ = "0.1.0"

from rt880_flasher.protocol import ProgrammingSession, SerialTransport, SpiFlashClient
from rt880_flasher.firmware_image import load_firmware, convert_hex_to_bin

__all__ = [
    "ProgrammingSession",
    "SerialTransport",
    "SpiFlashClient",
    "load_firmware",
    "convert_hex_to_bin",
    "__version__",
]
