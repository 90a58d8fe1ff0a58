"""
Exception classes for arduflash.
"""

from typing import Optional


def format_bytes(data: Optional[bytes]) -> str:
    """Render raw bytes as space separated upper-case hex."""
    if not data:
        return '<empty>'
    return ' '.join(f'{b:02X}' for b in data)


class ArduflashException(Exception):
    """Base exception class for arduflash."""
    def __init__(self, message: str, phase: Optional[str] = None,
                 received: Optional[bytes] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.received = bytes(received) if received is not None else None

    def __str__(self) -> str:
        text = self.message
        if self.phase:
            text = f'[{self.phase}] {text}'
        if self.received is not None:
            text = f'{text} (received: {format_bytes(self.received)})'
        return text


class UploadTimeoutException(ArduflashException):
    """Exception raised when an expected response does not arrive in time."""


class SyncFailedException(UploadTimeoutException):
    """Exception raised when the bootloader never answers the sync request."""
    def __init__(self, attempts: int, received: Optional[bytes] = None):
        super().__init__(f'Failed to sync with bootloader after {attempts} attempts',
                         phase='sync', received=received)
        self.attempts = attempts


class ProtocolViolationException(ArduflashException):
    """Exception raised when the device answers with an unexpected response."""


class TransportException(ArduflashException):
    """Exception raised when there's an issue with the connection."""
    def __init__(self, message: str, phase: Optional[str] = None,
                 received: Optional[bytes] = None):
        super().__init__(f'Transport error: {message}', phase=phase, received=received)


class TransportClosedException(TransportException):
    """Exception raised when the underlying connection has been closed."""


class TransportBusyException(TransportException):
    """Exception raised when a transport is already owned by another upload."""


class UnsupportedTargetException(ArduflashException):
    """Exception raised when no strategy or protocol can serve a board."""
    def __init__(self, board: Optional[str]):
        super().__init__(f'No upload strategy found for board: {board}')
        self.board = board


class FirmwareDecodeException(ArduflashException):
    """Exception raised when a firmware image yields no usable bytes."""


class FirmwareTooLargeException(ArduflashException):
    """Exception raised when a firmware image exceeds the target's flash."""
    def __init__(self, size: int, limit: int, board: Optional[str] = None):
        target = board or 'target'
        super().__init__(f'Firmware of {size} bytes does not fit the {limit} bytes '
                         f'of flash available on {target}')
        self.size = size
        self.limit = limit


class DelegateToolException(ArduflashException):
    """Exception raised when an external upload tool exits with an error."""
    def __init__(self, tool: str, returncode: int, output: str = ''):
        message = f'{tool} exited with code {returncode}'
        if output:
            message = f'{message}: {output}'
        super().__init__(message, phase='programming')
        self.tool = tool
        self.returncode = returncode


class FileNotFoundException(ArduflashException):
    """Exception raised when a firmware file is not found."""
    def __init__(self, value):
        super().__init__(f'Firmware file not found at {value}')


class DeviceNotFoundException(ArduflashException):
    """Exception raised when a bootloader device is not attached."""
    def __init__(self, vid: int, pid: int, hint: str = ''):
        message = f'No device found at {vid:04x}:{pid:04x}'
        if hint:
            message = f'{message}; {hint}'
        super().__init__(message)
        self.vid = vid
        self.pid = pid
