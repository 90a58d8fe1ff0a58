"""
Upload strategies, one per bootloader family.
"""

from .avr import AVRStrategy
from .base import FlashReport, UploadOutcome, UploadStrategy
from .bossa import BOSSAStrategy
from .esptool import ESPToolStrategy
from .rp2040 import RP2040Strategy
from .teensy import TeensyStrategy

__all__ = [
    'UploadStrategy',
    'UploadOutcome',
    'FlashReport',
    'AVRStrategy',
    'BOSSAStrategy',
    'ESPToolStrategy',
    'RP2040Strategy',
    'TeensyStrategy',
]
