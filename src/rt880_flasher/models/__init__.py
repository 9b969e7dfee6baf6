"""
Device-family registry for RT-880 class radios.

Provides protocol variants, program flash layout and SPI flash profiles.
"""

from .registry import (
    ACK,
    NAK,
    PRESENCE,
    BLOCK_SIZE,
    ProtocolVariant,
    FirmwareLayout,
    SpiFlashProfile,
    RADTEL,
    IRADIO,
    RT880_LAYOUT,
    SPI_4MB,
    SPI_32MB,
    DEFAULT_VARIANT,
    DEFAULT_SPI_PROFILE,
    list_variants,
    get_variant,
    list_spi_profiles,
    get_spi_profile,
)

__all__ = [
    "ACK",
    "NAK",
    "PRESENCE",
    "BLOCK_SIZE",
    "ProtocolVariant",
    "FirmwareLayout",
    "SpiFlashProfile",
    "RADTEL",
    "IRADIO",
    "RT880_LAYOUT",
    "SPI_4MB",
    "SPI_32MB",
    "DEFAULT_VARIANT",
    "DEFAULT_SPI_PROFILE",
    "list_variants",
    "get_variant",
    "list_spi_profiles",
    "get_spi_profile",
]
