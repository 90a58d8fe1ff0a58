"""
Teensy upload strategy.

Teensy boards program through the HalfKay HID bootloader. The device is
located with pyusb, but the transfer itself is simulated: progress is
reported and nothing is written, which the returned report makes explicit.
"""

import logging
from typing import Callable, Optional

import usb.core

from ..config import TEENSY_CONFIG, HalfKay, ProtocolConfig, ProtocolKind, lookup
from ..exceptions import DeviceNotFoundException
from ..transport import Transport
from .base import Firmware, FlashReport, ProgressCallback, UploadOutcome, UploadStrategy

logger = logging.getLogger(__name__)

SIMULATED_STEP_MS = 500


def find_halfkay(vid: int = HalfKay.VID, pid: int = HalfKay.PID):
    """
    Look up a Teensy sitting in its bootloader.

    Returns:
        The pyusb device, or None if absent or no USB backend is available
    """
    try:
        return usb.core.find(idVendor=vid, idProduct=pid)
    except usb.core.NoBackendError as e:
        logger.warning(f'No USB backend available: {e}')
        return None


class TeensyStrategy(UploadStrategy):
    name = 'Teensy (HalfKay/HID)'
    kind = ProtocolKind.HID

    def __init__(self, config_lookup: Callable[[Optional[str]], ProtocolConfig] = lookup,
                 finder: Callable = find_halfkay):
        """
        Args:
            config_lookup: Board to protocol resolver
            finder: Returns the bootloader device for a (vid, pid) pair, or None
        """
        super().__init__(config_lookup)
        self._finder = finder

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        config = super().config_for(board)
        if config.kind is not ProtocolKind.HID:
            return TEENSY_CONFIG
        return config

    def _find(self, config: ProtocolConfig):
        return self._finder(*self._usb_ids(config))

    @staticmethod
    def _usb_ids(config: ProtocolConfig):
        pid = config.bootloader_pids[0] if config.bootloader_pids else HalfKay.PID
        return config.usb_vid or HalfKay.VID, pid

    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        config = self.config_for(board)
        vid, pid = self._usb_ids(config)
        logger.info(f'PREPARE: Looking for HalfKay bootloader {vid:04x}:{pid:04x}')
        if self._find(config) is None:
            logger.warning('Teensy not detected, press the PROGRAM button on the board')
        else:
            logger.info('Teensy bootloader found')

    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        config = self.config_for(board)
        image = self._load_image(firmware, config, board)

        device = self._find(config)
        if device is None:
            logger.error('Teensy not found in bootloader mode')
            raise DeviceNotFoundException(*self._usb_ids(config),
                                          "press the PROGRAM button on the Teensy")

        logger.warning('HalfKay programming is not implemented, simulating the transfer')
        self._report(progress_callback, 10, 'Erasing...')
        self._delay(SIMULATED_STEP_MS)
        self._report(progress_callback, 50, 'Writing...')
        self._delay(SIMULATED_STEP_MS)
        self._report(progress_callback, 100, 'Done (Simulation)')
        logger.warning(f'Simulation complete, 0 of {image.length} bytes written; use Teensy Loader to program')
        return FlashReport(UploadOutcome.SIMULATED, 0,
                           detail='simulated transfer, device not programmed')
