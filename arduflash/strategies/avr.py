"""
AVR upload strategy.

Uno R3, Nano, Mega and other ATmega boards: a DTR pulse resets the chip into
its bootloader, then the image is written over STK500v1.
"""

import logging
from typing import Optional

from ..config import STK500_CONFIG, ProtocolConfig, ProtocolKind, Stk500
from ..stk500 import STK500Protocol
from ..transport import Transport
from .base import Firmware, FlashReport, ProgressCallback, UploadOutcome, UploadStrategy

logger = logging.getLogger(__name__)

# Time for the reset circuit to respond
RESET_PULSE_MS = 100
# Time for the bootloader to initialize after reset
BOOTLOADER_INIT_MS = 100


class AVRStrategy(UploadStrategy):
    name = 'AVR (STK500)'
    kind = ProtocolKind.STK500

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        config = super().config_for(board)
        if config.kind is not ProtocolKind.STK500:
            return STK500_CONFIG
        return config

    def _size_limit(self, config: ProtocolConfig) -> int:
        return min(config.writable_size, Stk500.ADDRESSABLE_BYTES)

    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        config = self.config_for(board)
        logger.info('PREPARE: Entering bootloader mode via DTR reset')

        if not transport.is_open:
            self._tolerate(f'opening port at {config.serial.upload_baud} baud',
                           lambda: transport.open_at_baud(config.serial.upload_baud))

        def pulse():
            transport.set_control_signal('DTR', False)
            self._delay(RESET_PULSE_MS)
            transport.set_control_signal('DTR', True)
            self._delay(BOOTLOADER_INIT_MS)

        if self._tolerate('DTR reset pulse', pulse):
            logger.info('Reset sequence complete - bootloader should be active')

    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        config = self.config_for(board)
        logger.info('FLASH: Uploading firmware via STK500 protocol')
        image = self._load_image(firmware, config, board)

        programmer = STK500Protocol(transport, config)
        programmer.flash(image.data, progress_callback)

        logger.info('Firmware upload complete!')
        return FlashReport(UploadOutcome.FLASHED, image.length)
