"""
RP2040 upload strategy.

The 1200 baud touch reboots the board into BOOTSEL mode, where it shows up
as the RPI-RP2 mass storage drive. Nothing is written over the serial line:
the image is saved as firmware.uf2 for the user to copy onto that drive.
"""

import logging
import os
import struct
from typing import Callable, Optional

from ..config import RP2040_CONFIG, ProtocolConfig, ProtocolKind, lookup
from ..hexfile import FirmwareImage
from ..transport import Transport
from .base import Firmware, FlashReport, ProgressCallback, UploadOutcome, UploadStrategy

logger = logging.getLogger(__name__)

UF2_MAGIC = b'UF2\n'
UF2_BLOCK_SIZE = 512
# Offset of the payloadSize field in a UF2 block header
UF2_PAYLOAD_SIZE_OFFSET = 16
ARTIFACT_NAME = 'firmware.uf2'
VOLUME_LABEL = 'RPI-RP2'


class RP2040Strategy(UploadStrategy):
    name = 'RP2040 (UF2/Serial)'
    kind = ProtocolKind.MASS_STORAGE

    def __init__(self, config_lookup: Callable[[Optional[str]], ProtocolConfig] = lookup,
                 output_dir: Optional[str] = None):
        """
        Args:
            config_lookup: Board to protocol resolver
            output_dir: Where firmware.uf2 is written, the working directory by default
        """
        super().__init__(config_lookup)
        self.output_dir = output_dir

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        config = super().config_for(board)
        if config.kind is not ProtocolKind.MASS_STORAGE:
            return RP2040_CONFIG
        return config

    def _payload_size(self, image: FirmwareImage) -> int:
        if not image.data.startswith(UF2_MAGIC):
            return image.length
        size = 0
        for offset in range(0, image.length - UF2_BLOCK_SIZE + 1, UF2_BLOCK_SIZE):
            if image.data[offset:offset + len(UF2_MAGIC)] == UF2_MAGIC:
                size += struct.unpack_from('<I', image.data, offset + UF2_PAYLOAD_SIZE_OFFSET)[0]
        return size

    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        config = self.config_for(board)
        logger.info('PREPARE: Entering RP2040 bootloader mode')
        touch_baud = config.serial.touch_baud or 1200

        if self._tolerate(f'opening port at {touch_baud} baud', lambda: transport.open_at_baud(touch_baud)):
            logger.info(f'Port opened at {touch_baud} baud')
        self._delay(config.timing.reset_delay_ms)
        if self._tolerate('closing port', transport.close):
            logger.info(f'Port closed - device should re-enumerate as {VOLUME_LABEL} mass storage')

    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        config = self.config_for(board)
        logger.info('FLASH: RP2040 UF2 firmware hand-off')
        image = self._load_image(firmware, config, board)
        if not image.data.startswith(UF2_MAGIC):
            logger.warning('Firmware does not start with the UF2 magic, the bootloader will likely ignore it')

        output_dir = self.output_dir or os.getcwd()
        os.makedirs(output_dir, exist_ok=True)
        artifact = os.path.join(output_dir, ARTIFACT_NAME)
        with open(artifact, 'wb') as f:
            f.write(image.data)

        logger.info(f'Firmware saved to {artifact}')
        logger.warning(f'Manual step required: copy {ARTIFACT_NAME} onto the {VOLUME_LABEL} drive')
        self._report(progress_callback, 100, 'Done (Manual Drag & Drop)')
        return FlashReport(UploadOutcome.MANUAL_HANDOFF, 0,
                           detail=f'copy {ARTIFACT_NAME} onto the {VOLUME_LABEL} drive',
                           artifact=artifact)
