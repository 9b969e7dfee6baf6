"""
Centralized parsing helpers for user-supplied option values.

Front ends import these rather than re-implement them.
"""

from typing import Optional

from rt880_flasher.models import DEFAULT_VARIANT, get_spi_profile, get_variant


def resolve_variant_name(variant: Optional[str], iradio: bool = False) -> str:
    """
    Combine ``--variant`` and the legacy ``--iradio`` switch into one name.

    Raises:
        ValueError: Unknown variant, or both options disagree
    """
    if iradio:
        if variant and variant.strip().lower() != "iradio":
            raise ValueError(f"--iradio conflicts with --variant {variant}")
        return "iradio"
    return get_variant(variant or DEFAULT_VARIANT).name


def parse_capacity(value: str) -> str:
    """
    Normalize an SPI capacity to a profile name.

    Accepts "4mb", "4MB", "4m", "4" and the same forms for 32.

    Raises:
        ValueError: If no profile matches
    """
    text = value.strip().lower().replace(" ", "")
    if text.endswith("mb"):
        text = text[:-2]
    elif text.endswith("m"):
        text = text[:-1]
    return get_spi_profile(f"{text}mb").name


def parse_baud(value: str) -> int:
    """
    Parse a baud rate given as decimal text.

    Raises:
        ValueError: If value is not a positive integer
    """
    try:
        baud = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid baud rate '{value}'. Use a number such as 115200.")
    if baud <= 0:
        raise ValueError(f"Invalid baud rate '{value}'. Must be positive.")
    return baud
