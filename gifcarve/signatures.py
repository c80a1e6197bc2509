"""
File Signature Table - GIF headers.

Order matters: the scanner honours only the first matching entry for a
block, so GIF87a is tested before GIF89a.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SignatureInfo:
    """Describes one recoverable header."""
    header: bytes
    extension: str              # file extension without dot
    description: str


SIG_GIF87A = SignatureInfo(
    header=b"GIF87a", extension="gif", description="GIF Image (87a)",
)

SIG_GIF89A = SignatureInfo(
    header=b"GIF89a", extension="gif", description="GIF Image (89a)",
)

GIF_SIGNATURES: tuple[SignatureInfo, ...] = (SIG_GIF87A, SIG_GIF89A)

SIGNATURE_LENGTH = 6


def match_signature(
    data: bytes,
    signatures: tuple[SignatureInfo, ...] = GIF_SIGNATURES,
) -> Optional[SignatureInfo]:
    """Return the first signature whose header starts `data`, else None."""
    for sig in signatures:
        if data[:len(sig.header)] == sig.header:
            return sig
    return None
