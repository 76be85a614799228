"""
Frame Data Model
=================

Internal frame representation shared by the reader, hub and sessions.

Design Rules:
    - A Frame always holds an independently owned copy of the JPEG bytes
    - Frames are never modified after extraction
"""

from dataclasses import dataclass


# JPEG start-of-image and end-of-image markers
BEGIN_OF_JPEG = b"\xff\xd8"
END_OF_JPEG = b"\xff\xd9"


def is_valid_jpeg(data: bytes) -> bool:
    """Check that data is delimited by the JPEG SOI and EOI markers."""
    return data.startswith(BEGIN_OF_JPEG) and data.endswith(END_OF_JPEG)


@dataclass(frozen=True, slots=True)
class Frame:
    """
    One complete JPEG image extracted from the encoder stream.
    
    Attributes:
        data: Raw JPEG bytes, SOI through EOI inclusive
        sequence: Position of the frame in the extraction order
        timestamp: Monotonic clock reading at extraction time
    """
    
    data: bytes
    sequence: int = 0
    timestamp: float = 0.0
    
    @property
    def size(self) -> int:
        """Frame size in bytes."""
        return len(self.data)
    
    def __repr__(self) -> str:
        """Compact repr that doesn't dump the image."""
        return f"Frame(sequence={self.sequence}, size={self.size})"
