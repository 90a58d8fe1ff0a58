"""
Upload manager for arduflash.
Picks the strategy for a board and drives its prepare and flash phases.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .exceptions import ArduflashException, UnsupportedTargetException
from .strategies import (
    AVRStrategy,
    BOSSAStrategy,
    ESPToolStrategy,
    RP2040Strategy,
    TeensyStrategy,
    UploadOutcome,
    UploadStrategy,
)
from .strategies.base import Firmware, ProgressCallback
from .transport import Transport

logger = logging.getLogger(__name__)

Registry = Sequence[Tuple[str, UploadStrategy]]


def default_strategies(verify: bool = False, output_dir: Optional[str] = None) -> List[Tuple[str, UploadStrategy]]:
    """
    Build the stock registry, in match order.

    Args:
        verify: Enable CRC verification on SAM-BA uploads
        output_dir: Where mass storage strategies leave their artifact

    Returns:
        List of (board prefix, strategy) pairs
    """
    bossa = BOSSAStrategy(verify=verify)
    esp = ESPToolStrategy()
    rp2040 = RP2040Strategy(output_dir=output_dir)
    return [
        ('arduino:avr', AVRStrategy()),
        ('arduino:renesas_uno', bossa),
        ('arduino:samd', bossa),
        ('arduino:esp32', esp),
        ('esp32:esp32', esp),
        ('teensy:avr', TeensyStrategy()),
        ('arduino:mbed_nano', bossa),
        ('arduino:mbed_portenta', bossa),
        ('arduino:mbed_rp2040', rp2040),
        ('rp2040:rp2040', rp2040),
    ]


@dataclass(frozen=True)
class UploadResult:
    board: Optional[str]
    strategy: str
    outcome: UploadOutcome
    bytes_written: int = 0
    artifact: Optional[str] = None
    detail: str = ''

    @property
    def flashed(self) -> bool:
        return self.outcome is UploadOutcome.FLASHED


class UploadSession:
    """State of a single upload call."""

    def __init__(self, strategy: UploadStrategy, transport: Transport, board: Optional[str],
                 progress_callback: Optional[ProgressCallback] = None):
        self.strategy = strategy
        self.transport = transport
        self.board = board
        self.progress_callback = progress_callback
        self.percent = 0
        self.status = ''
        self.phase: Optional[str] = None

    def report(self, percent: int, status: str) -> None:
        """Forward progress, clamped to 0-100 and never moving backwards."""
        percent = max(self.percent, min(100, max(0, int(percent))))
        self.percent = percent
        self.status = status
        if self.progress_callback:
            self.progress_callback(percent, status)


class UploadManager:
    """Manages firmware uploads using board specific strategies."""

    def __init__(self, strategies: Optional[Registry] = None,
                 default: Optional[UploadStrategy] = None):
        """
        Args:
            strategies: (board prefix, strategy) pairs in match order
            default: Strategy for unmatched boards, the stock AVR strategy if
                the stock registry is used
        """
        if strategies is None:
            strategies = default_strategies()
            if default is None:
                default = strategies[0][1]
        self.strategies: Tuple[Tuple[str, UploadStrategy], ...] = tuple(strategies)
        self.default = default

    def select_strategy(self, board: Optional[str]) -> UploadStrategy:
        """
        Get the upload strategy for a board.

        Args:
            board: Fully qualified board name

        Returns:
            First strategy whose prefix the board starts with, else the default

        Raises:
            UnsupportedTargetException: If nothing matches and there is no default
        """
        if board:
            for prefix, strategy in self.strategies:
                if board.startswith(prefix):
                    return strategy
        if self.default is None:
            raise UnsupportedTargetException(board)
        return self.default

    def upload(self, transport: Transport, firmware: Firmware,
               progress_callback: Optional[ProgressCallback] = None,
               board: Optional[str] = None) -> UploadResult:
        """
        Upload firmware to a board.

        Args:
            transport: Connection to the board
            firmware: Intel HEX text or a raw image
            progress_callback: Called with (percent, status)
            board: Fully qualified board name

        Returns:
            UploadResult describing what actually happened on the device

        Raises:
            ArduflashException: Whatever the strategy raised, tagged with the phase
        """
        strategy = self.select_strategy(board)
        session = UploadSession(strategy, transport, board, progress_callback)
        logger.info(f"Using {strategy.name} for {board or 'default (arduino:avr)'}")

        session.report(0, 'Starting upload...')
        try:
            session.phase = 'prepare'
            strategy.prepare(transport, board)
            session.phase = 'flash'
            report = strategy.flash(transport, firmware, session.report, board)
        except ArduflashException as e:
            e.phase = e.phase or session.phase
            logger.error(f"Upload failed ({strategy.name}, {board or 'default'}): {e}")
            raise
        except Exception as e:
            logger.error(f"Upload failed during {session.phase} ({strategy.name}, {board or 'default'}): {e}")
            raise

        logger.info(f'Upload finished: {report.outcome.value}')
        return UploadResult(
            board=board,
            strategy=strategy.name,
            outcome=report.outcome,
            bytes_written=report.bytes_written,
            artifact=report.artifact,
            detail=report.detail,
        )
