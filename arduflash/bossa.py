"""
SAM-BA (BOSSA) protocol module for arduflash.
ASCII command protocol spoken by the Renesas RA4M1 and SAMD bootloaders.
"""

import logging
import re
import time
from typing import Optional, Union

from .config import BOSSA_RENESAS_CONFIG, Bossa, ProtocolConfig
from .exceptions import (
    ProtocolViolationException,
    UploadTimeoutException,
)
from .transport import Transport

logger = logging.getLogger(__name__)

_CRC_REPLY_RE = re.compile(r'Z([0-9A-Fa-f]{8})#')


def _crc16_entry(index: int) -> int:
    crc = index << 8
    for _ in range(8):
        crc = ((crc << 1) ^ 0x1021) if crc & 0x8000 else (crc << 1)
    return crc & 0xFFFF


# CRC-16-CCITT lookup table, polynomial 0x1021
CRC16_TABLE = [_crc16_entry(i) for i in range(256)]


def calc_crc16(data: Union[bytes, bytearray], crc: int = 0) -> int:
    """
    Calculate CRC-16-CCITT (XMODEM) for the given data.

    Args:
        data: Data bytes to calculate CRC for
        crc: Initial CRC value (default: 0)

    Returns:
        Calculated CRC-16 value
    """
    for byte in bytearray(data):
        crc = ((crc << 8) & 0xFF00) ^ CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc & 0xFFFF


def printable(data: bytes) -> str:
    """Keep the printable ASCII of a bootloader reply."""
    text = ''.join(chr(b) for b in data if 0x20 <= b <= 0x7E)
    return text.rstrip('>').strip()


def is_ascii_response(data: bytes, ratio: float = Bossa.ASCII_RATIO) -> bool:
    """
    Check whether a reply is mostly printable text.

    A reply at the wrong baud rate decodes as binary noise.
    """
    if not data:
        return False
    text = sum(1 for b in data if 0x20 <= b <= 0x7E or b in (0x0A, 0x0D))
    return text / len(data) >= ratio


class BossaProtocol:
    """SAM-BA command set over a borrowed transport."""

    def __init__(self, transport: Transport, config: ProtocolConfig = BOSSA_RENESAS_CONFIG):
        self.transport = transport
        self.config = config
        self.is_samd = False
        self.version = ''
        self.last_reply = b''

    def write_command(self, command: str) -> None:
        logger.debug(f'CMD: {command}')
        self.transport.write(command.encode('ascii'))

    def _collect(self, timeout_ms: int, max_bytes: int, stop_at_terminator: bool = True) -> bytes:
        collected = bytearray()
        deadline = time.monotonic() + timeout_ms / 1000.0
        while len(collected) < max_bytes:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            chunk = self.transport.read(max_bytes - len(collected), max(1, min(50, int(remaining * 1000))))
            collected.extend(chunk)
            if stop_at_terminator and Bossa.TERMINATOR in chunk:
                break
        return bytes(collected)

    def read_ack(self, letter: str, timeout_ms: int = 1000) -> bool:
        """
        Wait for the echo of a command letter.

        Args:
            letter: Command letter the bootloader echoes back
            timeout_ms: Time budget

        Returns:
            True if the expected letter arrived
        """
        collected = self._collect(timeout_ms, 3)
        self.last_reply = collected
        if ord(letter) in collected:
            return True
        logger.error(f"{letter}# ACK mismatch: received [{collected.hex(' ') or '<empty>'}]")
        return False

    def _require_ack(self, letter: str, timeout_ms: int, what: str) -> None:
        started = time.monotonic()
        if not self.read_ack(letter, timeout_ms):
            raise ProtocolViolationException(f'{what} was not acknowledged', phase='programming',
                                             received=self.last_reply)
        logger.debug(f'{letter}# ACK in {int((time.monotonic() - started) * 1000)}ms')

    def read_until_terminator(self, timeout_ms: int = 1000, max_bytes: int = 256) -> bytes:
        """
        Read a reply up to its carriage return.

        Raises:
            UploadTimeoutException: If nothing arrived
        """
        collected = self._collect(timeout_ms, max_bytes)
        if not collected:
            raise UploadTimeoutException(f'No reply within {timeout_ms}ms', phase='programming')
        return collected

    def probe(self, timeout_ms: int = 1000) -> bytes:
        """Send N# and return whatever came back, possibly nothing."""
        self.write_command('N#')
        self.last_reply = self._collect(timeout_ms, 64)
        return self.last_reply

    def hello(self, attempts: int = 3) -> str:
        """
        Handshake with the bootloader and read its version string.

        Args:
            attempts: Number of handshake attempts

        Returns:
            Bootloader version string
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                self.write_command('N#')
                try:
                    self.read_until_terminator(timeout_ms=1000, max_bytes=16)
                except UploadTimeoutException:
                    logger.warning('No ACK received after N# handshake command')
                time.sleep(0.2)

                self.write_command('V#')
                version = printable(self.read_until_terminator(timeout_ms=2000, max_bytes=256))
                if not version:
                    raise ProtocolViolationException('Empty version string', phase='sync')

                try:
                    time.sleep(0.025)
                    self.write_command('I#')
                    info = printable(self.read_until_terminator(timeout_ms=500, max_bytes=64))
                    if info:
                        logger.info(f'Bootloader info: {info}')
                except UploadTimeoutException:
                    pass

                self.is_samd = 'Arduino' in version
                self.version = version
                logger.info(f'Bootloader version: {version}')
                return version
            except (UploadTimeoutException, ProtocolViolationException) as e:
                last_error = e
                logger.warning(f'Handshake attempt {attempt} failed: {e}')
                if attempt < attempts:
                    self.transport.drain(100)
                    time.sleep(0.2)

        logger.error('Handshake failed after all attempts')
        if last_error is not None:
            last_error.phase = 'sync'
            raise last_error
        raise ProtocolViolationException('Handshake failed', phase='sync')

    def chip_erase(self, start_addr: int) -> None:
        """Erase flash from start_addr to the end of the application area."""
        self.write_command(f'X{start_addr:08x}#')
        self._require_ack('X', self.config.timing.erase_timeout_ms, 'Chip erase')

    def write_binary(self, address: int, data: bytes) -> None:
        """
        Send raw bytes into the bootloader data buffer.

        Args:
            address: Offset in the bootloader buffer
            data: Payload
        """
        self.write_command(f'S{address:08x},{len(data):08x}#')
        time.sleep(0.005)
        for offset in range(0, len(data), Bossa.SUB_CHUNK_SIZE):
            self.transport.write(bytes(data[offset:offset + Bossa.SUB_CHUNK_SIZE]))
        # The bootloader has no ack for S#, wait out the line time
        transmit_ms = -(-len(data) * 10 * 1000 // self.config.serial.upload_baud)
        time.sleep((transmit_ms + 20) / 1000.0)

    def write_buffer(self, src_addr: int, dst_addr: int, size: int) -> None:
        """
        Copy size bytes from the data buffer into flash.

        Args:
            src_addr: Offset in the bootloader buffer
            dst_addr: Flash address
            size: Number of bytes
        """
        self.write_command(f'Y{src_addr:08x},0#')
        self._require_ack('Y', 1000, f'Copy source {src_addr:#010x}')
        time.sleep(0.002)
        self.write_command(f'Y{dst_addr:08x},{size:08x}#')
        self._require_ack('Y', self.config.timing.write_timeout_ms, f'Copy to flash {dst_addr:#010x}')

    def write_word(self, address: int, value: int) -> None:
        self.write_command(f'W{address:08x},{value:08x}#')
        time.sleep(0.002)

    def go(self, address: int) -> None:
        """Start the application at address."""
        self.write_command(f'G{address:08x}#')

    def reset(self) -> None:
        """Reset into the application; the board may not live long enough to ack."""
        self.transport.drain(100)
        self.write_command('K#')
        if not self.read_ack('K', 1000):
            logger.warning('No ACK to K# (board likely reset immediately)')

    def verify_crc(self, address: int, size: int, expected: bytes) -> bool:
        """
        Compare the device CRC of a flash range with the expected image.

        Args:
            address: Flash address
            size: Number of bytes to check
            expected: Image the range should contain

        Returns:
            True if the device CRC matches
        """
        time.sleep(0.1)
        self.transport.drain(50)
        self.write_command(f'Z{address:08x},{size:08x}#')
        response = self.read_until_terminator(timeout_ms=5000, max_bytes=16)
        text = response.decode('ascii', errors='replace')
        match = _CRC_REPLY_RE.search(text)
        if not match:
            logger.error(f'CRC verification failed, no CRC in reply {text!r}')
            return False
        flash_crc = int(match.group(1), 16)

        expected_crc = calc_crc16(expected[:size])
        logger.info(f'Flash CRC: {flash_crc:#06x}, Expected: {expected_crc:#06x}')
        if flash_crc != expected_crc:
            logger.error('Device CRC mismatch')
            return False
        return True

