"""
arduflash - Firmware uploader for Arduino-compatible boards.
"""

from .config import ProtocolConfig, ProtocolKind, lookup
from .hexfile import FirmwareImage, decode, load_image
from .stk500 import STK500Protocol
from .bossa import BossaProtocol
from .transport import BaseTransport, SerialTransport, Transport
from .strategies import (
    AVRStrategy,
    BOSSAStrategy,
    ESPToolStrategy,
    FlashReport,
    RP2040Strategy,
    TeensyStrategy,
    UploadOutcome,
    UploadStrategy,
)
from .uploader import UploadManager, UploadResult, UploadSession, default_strategies
from .exceptions import (
    ArduflashException,
    UploadTimeoutException,
    SyncFailedException,
    ProtocolViolationException,
    TransportException,
    TransportClosedException,
    TransportBusyException,
    UnsupportedTargetException,
    FirmwareDecodeException,
    FirmwareTooLargeException,
    DelegateToolException,
    DeviceNotFoundException,
    FileNotFoundException,
)

__version__ = '1.0.0'
