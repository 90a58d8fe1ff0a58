"""
Firmware image module for arduflash.
Decodes Intel HEX text into a flat binary memory image.

Only data records (type 00) contribute bytes. Checksums are not validated
and extended address records are ignored, so images that rely on addresses
above the first 64KB window are not supported.
"""

import logging
import os
from dataclasses import dataclass
from typing import Iterator, Tuple, Union

from .config import MAX_FLASH_SIZE
from .exceptions import FirmwareDecodeException, FileNotFoundException

logger = logging.getLogger(__name__)

RECORD_MARK = ':'
RECORD_DATA = 0x00
RECORD_EXTENDED_SEGMENT = 0x02
RECORD_EXTENDED_LINEAR = 0x04

# Largest address a data record can reach without extended addressing
_MAX_RECORD_END = 0xFFFF + 0xFF


@dataclass(frozen=True)
class FirmwareImage:
    """Flat firmware image laid out from address zero."""
    data: bytes

    @property
    def length(self) -> int:
        return len(self.data)

    def pages(self, page_size: int) -> Iterator[Tuple[int, bytes]]:
        """
        Iterate the image in page sized strides.

        Args:
            page_size: Stride in bytes

        Yields:
            (offset, chunk) pairs; the last chunk may be shorter
        """
        if page_size <= 0:
            raise ValueError('Page size must be positive')
        for offset in range(0, len(self.data), page_size):
            yield offset, self.data[offset:offset + page_size]


def decode(hex_text: Union[str, bytes]) -> FirmwareImage:
    """
    Decode Intel HEX text into a firmware image.

    Args:
        hex_text: Intel HEX content, one record per line

    Returns:
        Image truncated to the highest address written by a data record

    Raises:
        FirmwareDecodeException: If no data record produced any byte
    """
    if isinstance(hex_text, (bytes, bytearray)):
        hex_text = bytes(hex_text).decode('ascii', errors='replace')

    memory = bytearray(max(MAX_FLASH_SIZE, _MAX_RECORD_END))
    max_addr = 0

    for line in hex_text.split('\n'):
        if not line.startswith(RECORD_MARK):
            continue
        try:
            count = int(line[1:3], 16)
            address = int(line[3:7], 16)
            record_type = int(line[7:9], 16)
        except ValueError:
            continue

        if record_type == RECORD_DATA:
            for i in range(count):
                field = line[9 + i * 2:11 + i * 2]
                try:
                    memory[address + i] = int(field, 16)
                except ValueError:
                    # Short or garbled data field, nothing left to place
                    break
            max_addr = max(max_addr, address + count)
        elif record_type in (RECORD_EXTENDED_SEGMENT, RECORD_EXTENDED_LINEAR):
            logger.debug(f'Ignoring extended address record: {line.strip()}')

    if max_addr == 0:
        raise FirmwareDecodeException('Firmware image contains no data records')

    logger.debug(f'Decoded {max_addr} bytes of firmware')
    return FirmwareImage(bytes(memory[:max_addr]))


def is_hex_text(firmware: Union[str, bytes]) -> bool:
    """Check whether a payload looks like Intel HEX text."""
    if isinstance(firmware, str):
        return firmware.lstrip().startswith(RECORD_MARK)
    return bytes(firmware).lstrip().startswith(RECORD_MARK.encode())


def load_image(firmware: Union[FirmwareImage, str, bytes, bytearray]) -> FirmwareImage:
    """
    Normalise an upload payload into a firmware image.

    Intel HEX text is decoded; any other byte string is used as a raw binary.

    Args:
        firmware: Image, HEX text, or raw binary

    Returns:
        Firmware image

    Raises:
        FirmwareDecodeException: If the payload is empty or decodes to nothing
    """
    if isinstance(firmware, FirmwareImage):
        image = firmware
    elif not firmware:
        raise FirmwareDecodeException('Firmware payload is empty')
    elif is_hex_text(firmware):
        image = decode(firmware)
    elif isinstance(firmware, str):
        raise FirmwareDecodeException('Firmware text is not in Intel HEX format')
    else:
        image = FirmwareImage(bytes(firmware))

    if not image.length:
        raise FirmwareDecodeException('Firmware payload is empty')
    return image


def load_file(path: str) -> bytes:
    """
    Read a firmware file from disk.

    Args:
        path: Path to a .hex, .bin or .uf2 file

    Returns:
        File content

    Raises:
        FileNotFoundException: If the file does not exist
    """
    if not os.path.exists(path):
        raise FileNotFoundException(path)
    with open(path, 'rb') as f:
        return f.read()
