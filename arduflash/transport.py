"""
Transport module for arduflash.
Wraps an opened serial connection with the byte level primitives the
protocol engines need.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Protocol, Tuple

import serial
import serial.tools.list_ports

from .exceptions import (
    TransportBusyException,
    TransportClosedException,
    TransportException,
    UploadTimeoutException,
)

logger = logging.getLogger(__name__)

CONTROL_SIGNALS = ('DTR', 'RTS')


class Transport(Protocol):
    """Byte level connection consumed by the upload strategies."""

    port_name: str

    @property
    def is_open(self) -> bool:
        ...

    def usb_ids(self) -> Tuple[Optional[int], Optional[int]]:
        ...

    def open_at_baud(self, baud: int) -> None:
        ...

    def close(self) -> None:
        ...

    def write(self, data: bytes) -> None:
        ...

    def read(self, size: int, timeout_ms: int) -> bytes:
        ...

    def read_exact(self, length: int, timeout_ms: int) -> bytes:
        ...

    def set_control_signal(self, name: str, level: bool) -> None:
        ...

    def reset_input_buffer(self) -> None:
        ...

    def acquire(self) -> None:
        ...

    def release(self) -> None:
        ...


class BaseTransport(ABC):
    """Shared read and ownership logic for transport implementations."""

    def __init__(self, port_name: str = ''):
        self.port_name = port_name
        self._owned = False

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def open_at_baud(self, baud: int) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    def read(self, size: int, timeout_ms: int) -> bytes:
        """
        Read up to size bytes.

        Returns whatever arrived before the timeout, possibly nothing.

        Raises:
            TransportClosedException: If the connection has been closed
        """

    @abstractmethod
    def set_control_signal(self, name: str, level: bool) -> None:
        ...

    def usb_ids(self) -> Tuple[Optional[int], Optional[int]]:
        return None, None

    def reset_input_buffer(self) -> None:
        self.drain(0)

    def read_exact(self, length: int, timeout_ms: int) -> bytes:
        """
        Read exactly length bytes.

        Args:
            length: Number of bytes to receive
            timeout_ms: Time budget for the whole read

        Returns:
            Received bytes

        Raises:
            UploadTimeoutException: If the bytes did not arrive in time
            TransportClosedException: If the connection closed meanwhile
        """
        buffer = bytearray()
        deadline = time.monotonic() + timeout_ms / 1000.0
        while len(buffer) < length:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug(f'Timeout waiting for {length} bytes, got {len(buffer)}')
                raise UploadTimeoutException(
                    f'Timeout receiving data: expected {length} bytes within {timeout_ms}ms',
                    received=bytes(buffer),
                )
            chunk = self.read(length - len(buffer), max(1, int(remaining * 1000)))
            if chunk:
                logger.debug(f"RX: {chunk.hex(' ').upper()}")
                buffer.extend(chunk)
        return bytes(buffer)

    def drain(self, duration_ms: int = 200) -> int:
        """
        Discard stray input for a while.

        Stops once the line goes quiet after duration_ms, and in any case
        after twice that long.

        Args:
            duration_ms: How long to keep discarding

        Returns:
            Number of bytes discarded
        """
        flushed = 0
        deadline = time.monotonic() + duration_ms / 1000.0
        hard_stop = deadline + duration_ms / 1000.0
        while True:
            chunk = self.read(256, 20)
            flushed += len(chunk)
            now = time.monotonic()
            if not chunk and now >= deadline:
                break
            if now >= hard_stop:
                logger.warning(f'Input still arriving after {2 * duration_ms}ms, giving up on drain')
                break
        if flushed:
            logger.info(f"Flushed {flushed} stray byte{'' if flushed == 1 else 's'} from serial buffer")
        return flushed

    def acquire(self) -> None:
        """Take exclusive ownership for the duration of one upload."""
        if self._owned:
            raise TransportBusyException(f'{self.port_name or "transport"} is already in use')
        self._owned = True

    def release(self) -> None:
        """Give ownership back; releasing twice is harmless."""
        self._owned = False

    @property
    def owned(self) -> bool:
        return self._owned


class SerialTransport(BaseTransport):
    """Transport over a local serial port using pyserial."""

    def __init__(self, port_name: str, baudrate: int = 115200, write_timeout: float = 1.0):
        """
        Initialize the transport for the specified serial port.

        Args:
            port_name: Serial port name
            baudrate: Initial baud rate
            write_timeout: Serial write timeout in seconds
        """
        super().__init__(port_name)
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.serial_port: Optional[serial.Serial] = None

    def __enter__(self):
        if not self.is_open:
            self.open_at_baud(self.baudrate)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def is_open(self) -> bool:
        return self.serial_port is not None and self.serial_port.is_open

    def open_at_baud(self, baud: int) -> None:
        """
        Open (or reopen) the serial port at the given baud rate.

        Raises:
            TransportException: If the port cannot be opened
        """
        self.close()
        try:
            self.serial_port = serial.Serial(
                port=self.port_name,
                baudrate=baud,
                timeout=0.1,
                write_timeout=self.write_timeout,
            )
        except (serial.SerialException, OSError) as e:
            self.serial_port = None
            raise TransportException(f'cannot open {self.port_name} at {baud} baud: {e}') from e
        self.baudrate = baud
        logger.debug(f'Opened serial port {self.port_name} at {baud} baud')

    def close(self) -> None:
        """Close the serial port connection."""
        if self.serial_port is None:
            return
        try:
            if self.serial_port.is_open:
                self.serial_port.close()
                logger.debug('Serial port closed')
        except (serial.SerialException, OSError) as e:
            raise TransportException(f'error closing {self.port_name}: {e}') from e
        finally:
            self.serial_port = None

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise TransportClosedException(f'{self.port_name} is not open')
        return self.serial_port

    def write(self, data: bytes) -> None:
        port = self._require_open()
        logger.debug(f"TX: {bytes(data).hex(' ').upper()}")
        try:
            port.write(data)
            port.flush()
        except serial.SerialTimeoutException as e:
            raise UploadTimeoutException(f'write to {self.port_name} timed out') from e
        except (serial.SerialException, OSError) as e:
            raise TransportClosedException(f'write to {self.port_name} failed: {e}') from e

    def read(self, size: int, timeout_ms: int) -> bytes:
        port = self._require_open()
        try:
            timeout = timeout_ms / 1000.0
            if port.timeout != timeout:
                port.timeout = timeout
            return port.read(size)
        except (serial.SerialException, OSError) as e:
            raise TransportClosedException(f'read from {self.port_name} failed: {e}') from e

    def set_control_signal(self, name: str, level: bool) -> None:
        """
        Drive a modem control line.

        Args:
            name: 'DTR' or 'RTS'
            level: True to assert the line
        """
        if name not in CONTROL_SIGNALS:
            raise ValueError(f'Unknown control signal {name}')
        port = self._require_open()
        logger.debug(f'{name} -> {int(level)}')
        try:
            if name == 'DTR':
                port.dtr = level
            else:
                port.rts = level
        except (serial.SerialException, OSError) as e:
            raise TransportException(f'cannot set {name} on {self.port_name}: {e}') from e

    def reset_input_buffer(self) -> None:
        port = self._require_open()
        try:
            port.reset_input_buffer()
        except (serial.SerialException, OSError) as e:
            raise TransportClosedException(f'cannot flush {self.port_name}: {e}') from e

    def usb_ids(self) -> Tuple[Optional[int], Optional[int]]:
        """Look up the USB vendor/product id of this port, if it has one."""
        for info in serial.tools.list_ports.comports():
            if info.device == self.port_name:
                return info.vid, info.pid
        return None, None
