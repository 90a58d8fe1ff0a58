"""
Upload strategy contract shared by every board family.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

from ..config import ProtocolConfig, ProtocolKind, lookup
from ..exceptions import FirmwareTooLargeException, TransportException
from ..hexfile import FirmwareImage, load_image
from ..transport import Transport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]
Firmware = Union[FirmwareImage, str, bytes, bytearray]


class UploadOutcome(Enum):
    """How a flash phase actually ended."""
    FLASHED = 'flashed'
    # Firmware packaged for the user to copy onto the device
    MANUAL_HANDOFF = 'manual-handoff'
    # Progress reported, nothing written to the device
    SIMULATED = 'simulated'


@dataclass(frozen=True)
class FlashReport:
    outcome: UploadOutcome
    bytes_written: int = 0
    detail: str = ''
    artifact: Optional[str] = None


class UploadStrategy(ABC):
    """
    Two phase upload for one board family.

    prepare() forces the target into its bootloader and must tolerate a
    device that is already there; flash() transfers the image and reports
    progress ending at 100.
    """

    name = 'unknown strategy'
    kind: Optional[ProtocolKind] = None

    def __init__(self, config_lookup: Callable[[Optional[str]], ProtocolConfig] = lookup):
        self._lookup = config_lookup

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        return self._lookup(board)

    @abstractmethod
    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        """Put the target into bootloader mode."""

    @abstractmethod
    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        """Transfer the firmware image."""

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.name}>'

    @staticmethod
    def _delay(ms: int) -> None:
        time.sleep(ms / 1000.0)

    @staticmethod
    def _report(progress_callback: Optional[ProgressCallback], percent: int, status: str) -> None:
        if progress_callback:
            progress_callback(percent, status)

    def _load_image(self, firmware: Firmware, config: ProtocolConfig,
                    board: Optional[str]) -> FirmwareImage:
        """
        Decode the payload and make sure it fits the target.

        Raises:
            FirmwareDecodeException: If the payload yields no bytes
            FirmwareTooLargeException: If it exceeds the writable flash
        """
        image = load_image(firmware)
        limit = self._size_limit(config)
        size = self._payload_size(image)
        if size > limit:
            raise FirmwareTooLargeException(size, limit, board)
        logger.info(f'Firmware size: {size} bytes ({size * 100 // limit}% of {limit})')
        return image

    def _size_limit(self, config: ProtocolConfig) -> int:
        """Largest image, in bytes, this strategy can put on the target."""
        return config.writable_size

    def _payload_size(self, image: FirmwareImage) -> int:
        """Bytes the image occupies once on the device."""
        return image.length

    def _tolerate(self, action: str, func: Callable[[], None]) -> bool:
        """
        Run a bootloader entry step whose failure is not fatal.

        The device may already be in the requested state, so transport
        failures are logged as warnings.

        Returns:
            True if the step completed
        """
        try:
            func()
            return True
        except (TransportException, OSError) as e:
            logger.warning(f'{self.name}: {action} failed: {e} (device may already be in bootloader)')
            return False
