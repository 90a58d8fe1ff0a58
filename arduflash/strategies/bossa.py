"""
BOSSA/SAM-BA upload strategy.

Uno R4 (Renesas RA4M1), SAMD and mbed boards. The 1200 baud touch drops the
board into its bootloader, then the image is staged through the bootloader
data buffer and copied into flash chunk by chunk.
"""

import logging
from typing import Callable, Optional, Tuple

from ..bossa import BossaProtocol, is_ascii_response
from ..config import BOSSA_RENESAS_CONFIG, Bossa, ProtocolConfig, ProtocolKind, lookup
from ..exceptions import (
    ProtocolViolationException,
    TransportException,
    UploadTimeoutException,
)
from ..transport import Transport
from .base import Firmware, FlashReport, ProgressCallback, UploadOutcome, UploadStrategy

logger = logging.getLogger(__name__)

# 52 byte ARM Thumb copy routine the Renesas bootloader expects at data_buffer[0]
FLASH_APPLET = bytes([
    0x09, 0x48, 0x0A, 0x49, 0x0A, 0x4A, 0x02, 0xE0,
    0x08, 0xC9, 0x08, 0xC0, 0x01, 0x3A, 0x00, 0x2A,
    0xFA, 0xD1, 0x04, 0x48, 0x00, 0x28, 0x01, 0xD1,
    0x01, 0x48, 0x85, 0x46, 0x70, 0x47, 0xC0, 0x46,
]) + bytes(20)

# Flash controller register writes that follow the applet
APPLET_REGISTERS = ((0x30, 0x400), (0x20, 0x00))

TOUCH_REOPEN_MS = 10
SETTLE_MS = 100
PROBE_TIMEOUT_MS = 1000
FINAL_CHUNK_WAIT_MS = 1000


class BOSSAStrategy(UploadStrategy):
    name = 'BOSSA/SAM-BA'
    kind = ProtocolKind.BOSSA

    def __init__(self, config_lookup: Callable[[Optional[str]], ProtocolConfig] = lookup,
                 verify: bool = False):
        """
        Args:
            config_lookup: Board to protocol resolver
            verify: Compare the device CRC with the image after writing
        """
        super().__init__(config_lookup)
        self.verify = verify

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        config = super().config_for(board)
        if config.kind is not ProtocolKind.BOSSA:
            return BOSSA_RENESAS_CONFIG
        return config

    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        config = self.config_for(board)
        logger.info('PREPARE: Bootloader entry for BOSSA/SAM-BA')

        vid, pid = None, None
        try:
            vid, pid = transport.usb_ids()
        except (TransportException, OSError) as e:
            logger.debug(f'USB id lookup failed: {e}')

        if pid is not None and pid in config.bootloader_pids:
            logger.info(f'Device already in bootloader mode (PID {pid:#06x})')
            return

        logger.info(f'Device not in bootloader mode (VID {vid}, PID {pid}), performing 1200 baud touch')
        if self._tolerate('1200 baud touch', lambda: self._touch(transport, config)):
            logger.info('1200 baud touch complete')
        self._delay(config.timing.reset_delay_ms)

    def _touch(self, transport: Transport, config: ProtocolConfig) -> None:
        touch_baud = config.serial.touch_baud or 1200
        transport.open_at_baud(touch_baud)
        transport.set_control_signal('DTR', True)
        transport.set_control_signal('RTS', True)
        # The bootloader only reacts to a second line coding request
        transport.close()
        self._delay(TOUCH_REOPEN_MS)
        transport.open_at_baud(touch_baud)
        transport.set_control_signal('DTR', False)
        transport.set_control_signal('RTS', True)
        transport.close()

    def _try_baud(self, transport: Transport, config: ProtocolConfig, baud: int) -> Optional[BossaProtocol]:
        try:
            transport.open_at_baud(baud)
            transport.set_control_signal('DTR', True)
            transport.set_control_signal('RTS', True)
            self._delay(SETTLE_MS)
            bossa = BossaProtocol(transport, config)
            reply = bossa.probe(PROBE_TIMEOUT_MS)
        except (TransportException, UploadTimeoutException, OSError) as e:
            logger.warning(f'Error at {baud} baud: {e}')
            return None

        if is_ascii_response(reply):
            logger.info(f"Connected at {baud} baud, response: {reply.decode('ascii', errors='replace').strip()}")
            return bossa
        logger.warning(f'No valid response at {baud} baud')
        return None

    def _connect(self, transport: Transport, config: ProtocolConfig,
                 progress_callback: Optional[ProgressCallback]) -> Tuple[BossaProtocol, int]:
        """
        Find the baud rate the bootloader answers at.

        Raises:
            UploadTimeoutException: If no baud rate produced a readable reply
        """
        primary = config.serial.upload_baud
        self._report(progress_callback, 5, f'Connecting at {primary} baud...')
        bossa = self._try_baud(transport, config, primary)
        if bossa:
            return bossa, primary

        logger.info('Primary baud failed - scanning all baud rates...')
        for baud in Bossa.FALLBACK_BAUD_RATES:
            if baud == primary:
                continue
            self._report(progress_callback, 5, f'Trying {baud} baud...')
            bossa = self._try_baud(transport, config, baud)
            if bossa:
                return bossa, baud

        raise UploadTimeoutException(
            'Failed to connect to bootloader at any baud rate; double-tap RESET and retry',
            phase='sync',
        )

    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        config = self.config_for(board)
        logger.info(f'FLASH: Uploading firmware via SAM-BA ({config.variant or "default"})')
        image = self._load_image(firmware, config, board)

        memory = config.memory
        chunk_size = config.transfer_size
        padded_size = -(-image.length // chunk_size) * chunk_size
        data = image.data + b'\xff' * (padded_size - image.length)
        logger.info(f'Firmware: {image.length} bytes, padded to {padded_size} bytes ({chunk_size}-byte boundary)')

        if memory.bootloader_adds_offset:
            # Copy addresses are relative to the sketch area
            start_addr = 0
        else:
            start_addr = memory.flash_base + memory.sketch_offset
        sram_buffer = memory.sram_buffer or 0

        transport.acquire()
        try:
            bossa, baud = self._connect(transport, config, progress_callback)
            self._report(progress_callback, 10, f'Connected at {baud}')

            if memory.bootloader_adds_offset:
                self._report(progress_callback, 10, 'Uploading flash applet...')
                logger.info(f'Uploading {len(FLASH_APPLET)}-byte flash applet to data_buffer[0]')
                bossa.write_binary(0, FLASH_APPLET)
                for address, value in APPLET_REGISTERS:
                    bossa.write_word(address, value)

            self._report(progress_callback, 12, 'Erasing flash...')
            bossa.chip_erase(start_addr)
            logger.info('Flash erased successfully')

            self._report(progress_callback, 15, 'Writing flash...')
            num_chunks = padded_size // chunk_size
            flash_addr = start_addr
            for index, offset in enumerate(range(0, padded_size, chunk_size), 1):
                chunk = data[offset:offset + chunk_size]
                logger.debug(f'Chunk {index}/{num_chunks}: {len(chunk)} bytes @ {flash_addr:#010x}')
                bossa.write_binary(sram_buffer, chunk)
                bossa.write_buffer(sram_buffer, flash_addr, len(chunk))
                flash_addr += len(chunk)

                percent = 15 + round((offset + len(chunk)) / padded_size * 80)
                self._report(progress_callback, percent, f'Chunk {index}/{num_chunks}')
                if index < num_chunks:
                    self._delay(config.timing.chunk_delay_ms)
                else:
                    self._delay(FINAL_CHUNK_WAIT_MS if config.timing.chunk_delay_ms else 0)

            # Y# acks arrive before the flash controller has committed the pages
            if config.timing.commit_wait_ms:
                logger.info(f'Waiting {config.timing.commit_wait_ms}ms for flash commit')
                self._delay(config.timing.commit_wait_ms)

            try:
                bossa.hello(attempts=1)
                logger.info('Bootloader still responsive after flash write')
            except (UploadTimeoutException, ProtocolViolationException):
                logger.warning('Bootloader unresponsive after write - proceeding with reset')

            if self.verify:
                if not bossa.verify_crc(start_addr, padded_size, data):
                    raise ProtocolViolationException('CRC verification failed', phase='verify',
                                                     received=bossa.last_reply)
                logger.info('CRC verification passed')

            self._report(progress_callback, 96, 'Finalizing...')
            self._report(progress_callback, 98, 'Resetting...')
            bossa.reset()
            self._report(progress_callback, 100, 'Complete!')
            logger.info('Firmware upload complete!')
        finally:
            transport.release()
            self._tolerate('closing port', transport.close)

        return FlashReport(UploadOutcome.FLASHED, image.length,
                           detail=f'{baud} baud, bootloader {bossa.version or "unknown"}')
