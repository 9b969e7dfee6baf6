"""
Device-family registry for RT-880 class radios.

Provides a single source of truth for:
- Bootloader protocol variants (magic sequences, checksum offset)
- Program flash geometry (load address, image size, block size)
- External SPI flash profiles (capacity, command checksum)

Usage:
    from rt880_flasher.models import get_variant, get_spi_profile, RT880_LAYOUT

    variant = get_variant("iradio")
    profile = get_spi_profile("32mb")
"""

from dataclasses import dataclass
from typing import Dict, List

BLOCK_SIZE = 1024

ACK = 0x06
NAK = 0xFF
PRESENCE = 0x00


@dataclass(frozen=True)
class ProtocolVariant:
    """
    Magic command sequences and checksum constant of one device family.

    Selected once when a programming session is constructed and never
    branched on afterwards.
    """
    name: str
    description: str
    connect_seq: bytes
    update_seq: bytes
    end_seq: bytes
    checksum_offset: int

    def to_dict(self) -> Dict[str, object]:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "description": self.description,
            "connect": self.connect_seq.hex(" ").upper(),
            "update": self.update_seq.hex(" ").upper(),
            "end": self.end_seq.hex(" ").upper(),
            "checksum_offset": self.checksum_offset,
        }


@dataclass(frozen=True)
class FirmwareLayout:
    """Program flash window the bootloader accepts."""
    name: str
    base_address: int
    image_size: int
    block_size: int = BLOCK_SIZE

    @property
    def block_count(self) -> int:
        return self.image_size // self.block_size

    @property
    def end_address(self) -> int:
        """Return end address (exclusive)."""
        return self.base_address + self.image_size


@dataclass(frozen=True)
class SpiFlashProfile:
    """
    External SPI flash geometry and command framing.

    Only the command checksum carries an offset; read responses are always
    verified with the plain additive sum.
    """
    name: str
    description: str
    block_count: int
    block_size: int = BLOCK_SIZE
    command_checksum_offset: int = 0

    @property
    def capacity(self) -> int:
        """Total flash size in bytes."""
        return self.block_count * self.block_size


RADTEL = ProtocolVariant(
    name="radtel",
    description="Retevis / Radtel bootloader",
    connect_seq=bytes([0x39, 0x33, 0x05, 0x10, 0xD3]),
    update_seq=bytes([0x39, 0x33, 0x05, 0x55, 0x18]),
    end_seq=bytes([0x39, 0x33, 0x05, 0xEE, 0xB1]),
    checksum_offset=82,
)

IRADIO = ProtocolVariant(
    name="iradio",
    description="iRadio bootloader",
    connect_seq=bytes([0x39, 0x33, 0x05, 0x10, 0x81]),
    update_seq=bytes([0x39, 0x33, 0x05, 0x55, 0xC6]),
    end_seq=bytes([0x39, 0x33, 0x05, 0xEE, 0x5F]),
    checksum_offset=0,
)

DEFAULT_VARIANT = RADTEL.name

# 246 blocks of 1 KB starting right after the 10 KB bootloader
RT880_LAYOUT = FirmwareLayout(
    name="RT-880",
    base_address=0x08002800,
    image_size=251904,
)

SPI_4MB = SpiFlashProfile(
    name="4mb",
    description="4 MB SPI flash (dump tool framing)",
    block_count=4096,
    command_checksum_offset=82,
)

SPI_32MB = SpiFlashProfile(
    name="32mb",
    description="32 MB SPI flash",
    block_count=32768,
    command_checksum_offset=0,
)

DEFAULT_SPI_PROFILE = SPI_32MB.name

_VARIANTS: Dict[str, ProtocolVariant] = {v.name: v for v in (RADTEL, IRADIO)}
_SPI_PROFILES: Dict[str, SpiFlashProfile] = {p.name: p for p in (SPI_4MB, SPI_32MB)}


def list_variants() -> List[ProtocolVariant]:
    """Return all known protocol variants."""
    return list(_VARIANTS.values())


def get_variant(name: str) -> ProtocolVariant:
    """
    Look up a protocol variant by name (case-insensitive).

    Raises:
        ValueError: If the name is unknown
    """
    key = (name or "").strip().lower()
    if key not in _VARIANTS:
        raise ValueError(
            f"Unknown protocol variant '{name}'. Choose from: {', '.join(sorted(_VARIANTS))}"
        )
    return _VARIANTS[key]


def list_spi_profiles() -> List[SpiFlashProfile]:
    """Return all known SPI flash profiles."""
    return list(_SPI_PROFILES.values())


def get_spi_profile(name: str) -> SpiFlashProfile:
    """
    Look up an SPI flash profile by name (case-insensitive).

    Raises:
        ValueError: If the name is unknown
    """
    key = (name or "").strip().lower()
    if key not in _SPI_PROFILES:
        raise ValueError(
            f"Unknown SPI flash profile '{name}'. Choose from: {', '.join(sorted(_SPI_PROFILES))}"
        )
    return _SPI_PROFILES[key]
