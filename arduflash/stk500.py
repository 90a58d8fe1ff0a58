"""
STK500v1 protocol module for arduflash.
Talks to AVR bootloaders (optiboot and compatibles) over a borrowed transport.
"""

import logging
import struct
import time
from typing import Callable, Optional

from .config import STK500_CONFIG, ProtocolConfig, Stk500
from .exceptions import (
    ArduflashException,
    FirmwareDecodeException,
    FirmwareTooLargeException,
    ProtocolViolationException,
    SyncFailedException,
)
from .transport import Transport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

_ACK = bytes([Stk500.STK_INSYNC, Stk500.STK_OK])


class STK500Protocol:
    """STK500v1 programmer for page based flash writes."""

    def __init__(self, transport: Transport, config: ProtocolConfig = STK500_CONFIG,
                 timeout_ms: int = Stk500.DEFAULT_TIMEOUT_MS):
        """
        Initialize the protocol handler.

        Args:
            transport: Open transport to the bootloader
            config: Protocol parameters of the target family
            timeout_ms: Receive timeout for command acknowledgements
        """
        self.transport = transport
        self.config = config
        self.timeout_ms = timeout_ms

    def _send(self, data: bytes) -> None:
        self.transport.write(bytes(data))

    def _expect_ack(self, command: str) -> None:
        """
        Receive the two byte acknowledgement of a command.

        Raises:
            ProtocolViolationException: If anything but INSYNC OK arrived
            UploadTimeoutException: If the reply did not arrive in time
        """
        try:
            response = self.transport.read_exact(2, self.timeout_ms)
        except ArduflashException as e:
            e.phase = e.phase or 'programming'
            raise
        if response != _ACK:
            logger.error(f'{command} rejected by bootloader')
            raise ProtocolViolationException(f'Failed to {command}', phase='programming',
                                             received=response)

    def sync(self, max_attempts: Optional[int] = None) -> bool:
        """
        Synchronize with the bootloader.

        Every attempt sends GET_SYNC and scans the inbound stream for INSYNC
        followed by OK, skipping any noise in front of it.

        Args:
            max_attempts: Number of sync attempts, defaults to the family retry count

        Returns:
            True once synchronized

        Raises:
            SyncFailedException: If no attempt saw the acknowledgement
        """
        attempts = self.config.timing.retry_count if max_attempts is None else max_attempts
        noise = bytearray()

        for attempt in range(1, attempts + 1):
            logger.debug(f'Sync attempt {attempt}...')
            self._send(bytes([Stk500.STK_GET_SYNC, Stk500.CRC_EOP]))

            in_sync = False
            deadline = time.monotonic() + Stk500.SYNC_WINDOW_MS / 1000.0
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    data = self.transport.read(1, max(1, int(remaining * 1000)))
                except ArduflashException as e:
                    e.phase = e.phase or 'sync'
                    raise
                for byte in data:
                    if not in_sync:
                        in_sync = byte == Stk500.STK_INSYNC
                        if not in_sync:
                            noise.append(byte)
                    elif byte == Stk500.STK_OK:
                        logger.debug('Synced!')
                        return True
                    else:
                        # A repeated INSYNC may start the real acknowledgement
                        in_sync = byte == Stk500.STK_INSYNC
                        noise.append(byte)

            logger.debug('Sync window timed out')
            time.sleep(Stk500.SYNC_RETRY_DELAY_MS / 1000.0)

        logger.error(f'Failed to sync after {attempts} attempts')
        raise SyncFailedException(attempts, received=bytes(noise[-32:]))

    def enter_programming_mode(self) -> None:
        """Enter programming mode."""
        logger.debug('Entering programming mode...')
        self._send(bytes([Stk500.STK_ENTER_PROGMODE, Stk500.CRC_EOP]))
        self._expect_ack('enter programming mode')

    def leave_programming_mode(self) -> None:
        """Leave programming mode."""
        logger.debug('Leaving programming mode...')
        self._send(bytes([Stk500.STK_LEAVE_PROGMODE, Stk500.CRC_EOP]))
        self._expect_ack('leave programming mode')

    def load_address(self, word_address: int) -> None:
        """
        Load the word address for the next page write.

        Args:
            word_address: Flash address in 16-bit words

        Raises:
            ProtocolViolationException: If the address does not fit 16 bits
        """
        if not 0 <= word_address <= Stk500.MAX_WORD_ADDRESS:
            raise ProtocolViolationException(f'Word address {word_address:#x} out of range',
                                             phase='programming')
        self._send(bytes([Stk500.STK_LOAD_ADDRESS]) + struct.pack('<H', word_address)
                   + bytes([Stk500.CRC_EOP]))
        self._expect_ack(f'load address {word_address:#06x}')

    def program_page(self, page: bytes) -> None:
        """
        Program one page of flash at the loaded address.

        Args:
            page: Page data, at most the family page size
        """
        size = len(page)
        if size == 0 or size > self.config.memory.page_size:
            raise ValueError(f'Page of {size} bytes is invalid for a '
                             f'{self.config.memory.page_size} byte page size')
        packet = (bytes([Stk500.STK_PROG_PAGE]) + struct.pack('>H', size)
                  + bytes([Stk500.FLASH_MEMORY_TYPE]) + bytes(page) + bytes([Stk500.CRC_EOP]))
        self._send(packet)
        self._expect_ack('program page')

    def flash(self, firmware: bytes, progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Flash a binary image starting at address zero.

        Args:
            firmware: Flat binary image
            progress_callback: Called with (percent, status) as pages complete

        Raises:
            FirmwareDecodeException: If the image is empty
            FirmwareTooLargeException: If the image runs past the 16-bit word address space
        """
        def report(percent: int, status: str) -> None:
            if progress_callback:
                progress_callback(percent, status)

        page_size = self.config.memory.page_size
        total_bytes = len(firmware)
        if not total_bytes:
            raise FirmwareDecodeException('Nothing to flash')
        if total_bytes > Stk500.ADDRESSABLE_BYTES:
            raise FirmwareTooLargeException(total_bytes, Stk500.ADDRESSABLE_BYTES)

        logger.info(f'Flashing {total_bytes} bytes in {page_size} byte pages...')
        self.transport.acquire()
        try:
            report(0, 'Syncing...')
            self.sync(Stk500.FLASH_SYNC_ATTEMPTS)

            report(0, 'Entering programming mode...')
            self.enter_programming_mode()

            for addr in range(0, total_bytes, page_size):
                chunk = firmware[addr:addr + page_size]
                self.load_address(addr >> 1)
                self.program_page(chunk)
                report(round((addr + len(chunk)) / total_bytes * 100), 'Flashing')

            report(100, 'Finalizing...')
            self.leave_programming_mode()
            logger.info('Flash complete!')
        finally:
            self.transport.release()
