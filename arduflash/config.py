"""
Configuration module for arduflash.
Contains the per-board protocol parameters and the bootloader constants used
by the protocol engines.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

import logging
logger = logging.getLogger(__name__)


class ProtocolKind(Enum):
    """Upload protocol families."""
    STK500 = 'STK500v1'
    BOSSA = 'BOSSA'
    ESPTOOL = 'ESPTool'
    MASS_STORAGE = 'UF2'
    HID = 'HalfKay'


@dataclass(frozen=True)
class SerialParams:
    upload_baud: int
    touch_baud: Optional[int] = None
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = 'N'


@dataclass(frozen=True)
class TimingParams:
    sync_timeout_ms: int = 500
    command_timeout_ms: int = 500
    write_timeout_ms: int = 1000
    retry_count: int = 5
    retry_delay_ms: int = 100
    reset_delay_ms: int = 0
    erase_timeout_ms: int = 10000
    chunk_delay_ms: int = 0
    commit_wait_ms: int = 0


@dataclass(frozen=True)
class MemoryParams:
    page_size: int
    flash_size: int
    chunk_size: Optional[int] = None
    flash_base: int = 0
    # Offset of the application inside flash
    sketch_offset: int = 0
    # Bootloader staging buffer for buffered (SAM-BA) writes
    sram_buffer: Optional[int] = None
    boot_start: Optional[int] = None
    # Renesas bootloader adds sketch_offset to every copy address itself
    bootloader_adds_offset: bool = False


@dataclass(frozen=True)
class ProtocolConfig:
    """Immutable protocol parameters for one board family."""
    kind: ProtocolKind
    serial: SerialParams
    timing: TimingParams
    memory: MemoryParams
    variant: str = ''
    constants: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    bootloader_pids: Tuple[int, ...] = ()
    usb_vid: Optional[int] = None

    @property
    def transfer_size(self) -> int:
        """Chunk size if present, else page size, else 2048."""
        return self.memory.chunk_size or self.memory.page_size or 2048

    @property
    def uses_1200_baud_touch(self) -> bool:
        return self.serial.touch_baud == 1200

    @property
    def writable_size(self) -> int:
        """Flash bytes available to the application image."""
        end = self.memory.boot_start or self.memory.flash_size
        return end - self.memory.sketch_offset


# STK500v1 command and response bytes
class Stk500:
    """Constants for the STK500v1 bootloader protocol."""
    STK_OK = 0x10
    STK_FAILED = 0x11
    STK_INSYNC = 0x14
    CRC_EOP = 0x20
    STK_GET_SYNC = 0x30
    STK_ENTER_PROGMODE = 0x50
    STK_LEAVE_PROGMODE = 0x51
    STK_LOAD_ADDRESS = 0x55
    STK_PROG_PAGE = 0x64
    FLASH_MEMORY_TYPE = 0x46  # 'F'

    DEFAULT_TIMEOUT_MS = 1000
    SYNC_WINDOW_MS = 200
    SYNC_RETRY_DELAY_MS = 100
    FLASH_SYNC_ATTEMPTS = 20
    # LOAD_ADDRESS carries a 16-bit word address
    MAX_WORD_ADDRESS = 0xFFFF
    ADDRESSABLE_BYTES = (MAX_WORD_ADDRESS + 1) * 2


class Bossa:
    """Constants for the SAM-BA (BOSSA) bootloader protocol."""
    TERMINATOR = 0x0D
    SUB_CHUNK_SIZE = 512
    ERASE_PAGE_SIZE = 0x2000
    # Probe order when the primary upload baud does not answer
    FALLBACK_BAUD_RATES = (115200, 921600, 460800, 57600, 38400, 19200, 9600)
    ASCII_RATIO = 0.7


class HalfKay:
    """USB identifiers of the Teensy HalfKay bootloader."""
    VID = 0x16C0
    PID = 0x0486


STK500_CONFIG = ProtocolConfig(
    kind=ProtocolKind.STK500,
    variant='atmega328p',
    serial=SerialParams(upload_baud=115200),
    timing=TimingParams(
        sync_timeout_ms=500,
        command_timeout_ms=500,
        write_timeout_ms=1000,
        retry_count=5,
        retry_delay_ms=100,
    ),
    memory=MemoryParams(
        page_size=128,
        flash_size=0x8000,
        boot_start=0x7E00,
    ),
    constants=MappingProxyType({
        'STK_OK': Stk500.STK_OK,
        'STK_INSYNC': Stk500.STK_INSYNC,
        'CRC_EOP': Stk500.CRC_EOP,
        'STK_GET_SYNC': Stk500.STK_GET_SYNC,
        'STK_ENTER_PROGMODE': Stk500.STK_ENTER_PROGMODE,
        'STK_LEAVE_PROGMODE': Stk500.STK_LEAVE_PROGMODE,
        'STK_LOAD_ADDRESS': Stk500.STK_LOAD_ADDRESS,
        'STK_PROG_PAGE': Stk500.STK_PROG_PAGE,
    }),
)

STK500_MEGA_CONFIG = replace(
    STK500_CONFIG,
    variant='atmega2560',
    memory=replace(STK500_CONFIG.memory, page_size=256, flash_size=0x40000, boot_start=0x3E000),
)

BOSSA_RENESAS_CONFIG = ProtocolConfig(
    kind=ProtocolKind.BOSSA,
    variant='renesas-ra4m1',
    serial=SerialParams(upload_baud=230400, touch_baud=1200),
    timing=TimingParams(
        command_timeout_ms=1000,
        write_timeout_ms=5000,
        retry_count=3,
        retry_delay_ms=500,
        reset_delay_ms=2500,
        erase_timeout_ms=10000,
        chunk_delay_ms=250,
        commit_wait_ms=10000,
    ),
    memory=MemoryParams(
        page_size=256,
        flash_size=0x40000,
        chunk_size=4096,
        flash_base=0x00000000,
        sketch_offset=0x4000,
        sram_buffer=0x34,
        bootloader_adds_offset=True,
    ),
    bootloader_pids=(0x006D, 0x0054, 0x0057, 0x0069, 0x0369),
    usb_vid=0x2341,
)

BOSSA_SAMD_CONFIG = replace(
    BOSSA_RENESAS_CONFIG,
    variant='samd21',
    memory=replace(
        BOSSA_RENESAS_CONFIG.memory,
        sketch_offset=0x2000,
        sram_buffer=0x20001000,
        bootloader_adds_offset=False,
    ),
)

BOSSA_MBED_CONFIG = replace(BOSSA_SAMD_CONFIG, variant='mbed')

ESPTOOL_CONFIG = ProtocolConfig(
    kind=ProtocolKind.ESPTOOL,
    variant='esp32',
    serial=SerialParams(upload_baud=921600),
    timing=TimingParams(
        command_timeout_ms=3000,
        reset_delay_ms=1200,
        erase_timeout_ms=2000,
    ),
    memory=MemoryParams(
        page_size=1024,
        flash_size=0x400000,
        chunk_size=1024,
        sketch_offset=0x10000,
    ),
)

RP2040_CONFIG = ProtocolConfig(
    kind=ProtocolKind.MASS_STORAGE,
    variant='rp2040',
    serial=SerialParams(upload_baud=115200, touch_baud=1200),
    timing=TimingParams(reset_delay_ms=100),
    memory=MemoryParams(
        page_size=256,
        flash_size=0x200000,
        flash_base=0x10000000,
    ),
    usb_vid=0x2E8A,
)

TEENSY_CONFIG = ProtocolConfig(
    kind=ProtocolKind.HID,
    variant='halfkay',
    serial=SerialParams(upload_baud=115200),
    timing=TimingParams(),
    memory=MemoryParams(
        page_size=1024,
        flash_size=0x200000,
    ),
    bootloader_pids=(HalfKay.PID,),
    usb_vid=HalfKay.VID,
)

# Board to protocol mapping, in registration order
BOARD_PROTOCOLS: Tuple[Tuple[str, ProtocolConfig], ...] = (
    ('arduino:avr:uno', STK500_CONFIG),
    ('arduino:avr:nano', STK500_CONFIG),
    ('arduino:avr:mega', STK500_MEGA_CONFIG),
    ('arduino:avr:leonardo', STK500_CONFIG),
    ('arduino:avr:micro', STK500_CONFIG),

    ('arduino:renesas_uno:unor4wifi', BOSSA_RENESAS_CONFIG),
    ('arduino:renesas_uno:minima', BOSSA_RENESAS_CONFIG),
    ('arduino:renesas_uno:unor4minima', BOSSA_RENESAS_CONFIG),

    ('arduino:samd:mkr1000', BOSSA_SAMD_CONFIG),
    ('arduino:samd:nano_33_iot', BOSSA_SAMD_CONFIG),

    ('arduino:mbed_nano:nano33ble', BOSSA_MBED_CONFIG),
    ('arduino:mbed_nano:nanorp2040connect', BOSSA_MBED_CONFIG),
    ('arduino:mbed_portenta:envie_m7', BOSSA_MBED_CONFIG),

    ('esp32:esp32:esp32', ESPTOOL_CONFIG),
    ('arduino:esp32:nano_nora', ESPTOOL_CONFIG),

    ('rp2040:rp2040:rpipico', RP2040_CONFIG),
    ('arduino:mbed_rp2040:pico', RP2040_CONFIG),

    ('teensy:avr:teensy40', TEENSY_CONFIG),
)

# Default protocol when a board cannot be resolved
DEFAULT_BOARD = 'arduino:avr:uno'
DEFAULT_CONFIG = STK500_CONFIG

# The HEX decoder sizes its working buffer from the largest target
MAX_FLASH_SIZE = max(config.memory.flash_size for _, config in BOARD_PROTOCOLS)


def split_board_id(board: str) -> Tuple[str, ...]:
    """
    Split a board identifier into its colon delimited segments.

    Args:
        board: Identifier in vendor:architecture:board[:variant] form

    Returns:
        Tuple of 3 or 4 segments

    Raises:
        ValueError: If the identifier is not 3-4 non-empty segments
    """
    segments = tuple(board.strip().split(':'))
    if len(segments) not in (3, 4) or not all(segments):
        raise ValueError(f"Board identifier '{board}' must be vendor:architecture:board[:variant]")
    return segments


def _family(board: str) -> Tuple[str, ...]:
    return tuple(board.split(':')[:2])


def lookup(board: Optional[str]) -> ProtocolConfig:
    """
    Resolve the protocol configuration for a board.

    Exact match first, then the first registered key sharing the board's
    vendor:architecture prefix, then the AVR default.

    Args:
        board: Fully qualified board name

    Returns:
        Protocol configuration, never None
    """
    if not board:
        return DEFAULT_CONFIG

    for key, config in BOARD_PROTOCOLS:
        if key == board:
            return config

    family = _family(board)
    for key, config in BOARD_PROTOCOLS:
        if _family(key) == family:
            return config

    logger.debug(f'No protocol registered for {board}, using {DEFAULT_CONFIG.kind.value} defaults')
    return DEFAULT_CONFIG


def get_protocol_kind(board: Optional[str]) -> ProtocolKind:
    return lookup(board).kind


def get_chunk_size(board: Optional[str]) -> int:
    return lookup(board).transfer_size


def get_page_size(board: Optional[str]) -> int:
    return lookup(board).memory.page_size


def get_upload_baud_rate(board: Optional[str]) -> int:
    return lookup(board).serial.upload_baud


def uses_1200_baud_touch(board: Optional[str]) -> bool:
    """Check if a board enters its bootloader through the 1200 baud touch."""
    return lookup(board).uses_1200_baud_touch
