"""
ESP32 upload strategy.

The ROM bootloader protocol is left to esptool: the port is reset into
download mode over DTR/RTS, then released and handed to the esptool command
line with the image in a temporary file.
"""

import importlib.util
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
from typing import Callable, List, Optional

from ..config import ESPTOOL_CONFIG, ProtocolConfig, ProtocolKind, lookup
from ..exceptions import DelegateToolException
from ..transport import Transport
from .base import Firmware, FlashReport, ProgressCallback, UploadOutcome, UploadStrategy

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(r'\((\d{1,3})\s*%\)')

# DTR drives IO0 and RTS drives EN through inverting transistors
HOLD_RESET_MS = 100
STABILIZE_MS = 100

OUTPUT_TAIL_LINES = 10


def esptool_command() -> List[str]:
    """Prefer the esptool module of this interpreter, else whatever is on PATH."""
    if importlib.util.find_spec('esptool') is not None:
        return [sys.executable, '-m', 'esptool']
    return [shutil.which('esptool') or shutil.which('esptool.py') or 'esptool']


class ESPToolStrategy(UploadStrategy):
    name = 'ESP32 (esptool)'
    kind = ProtocolKind.ESPTOOL

    def __init__(self, config_lookup: Callable[[Optional[str]], ProtocolConfig] = lookup,
                 popen=subprocess.Popen, command: Optional[List[str]] = None):
        """
        Args:
            config_lookup: Board to protocol resolver
            popen: Process factory used to run esptool
            command: esptool invocation, detected when omitted
        """
        super().__init__(config_lookup)
        self._popen = popen
        self._command = command

    def config_for(self, board: Optional[str]) -> ProtocolConfig:
        config = super().config_for(board)
        if config.kind is not ProtocolKind.ESPTOOL:
            return ESPTOOL_CONFIG
        return config

    def prepare(self, transport: Transport, board: Optional[str] = None) -> None:
        config = self.config_for(board)
        logger.info('PREPARE: ESP32 reset into download mode')

        def reset_sequence():
            if not transport.is_open:
                transport.open_at_baud(config.serial.upload_baud)
            # EN low, chip held in reset
            transport.set_control_signal('DTR', False)
            transport.set_control_signal('RTS', True)
            self._delay(HOLD_RESET_MS)
            # IO0 low, EN high: boot into the ROM loader
            transport.set_control_signal('DTR', True)
            transport.set_control_signal('RTS', False)
            self._delay(config.timing.reset_delay_ms)
            transport.set_control_signal('DTR', False)
            self._delay(STABILIZE_MS)

        if self._tolerate('DTR/RTS reset sequence', reset_sequence):
            logger.info('Reset sequence complete - ESP should be in bootloader mode')

    def build_command(self, port: str, baud: int, offset: int, path: str) -> List[str]:
        base = list(self._command) if self._command else esptool_command()
        return base + ['--port', port, '--baud', str(baud), 'write_flash', f'{offset:#x}', path]

    def _run(self, cmd: List[str], progress_callback: Optional[ProgressCallback]) -> None:
        logger.info(f"Running: {' '.join(cmd)}")
        try:
            proc = self._popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        except FileNotFoundError as e:
            raise DelegateToolException(cmd[0], -1, f'esptool not found: {e}') from e

        output_lines = []
        if proc.stdout:
            for line in proc.stdout:
                line = line.rstrip()
                output_lines.append(line)
                logger.debug(line)
                match = _PROGRESS_RE.search(line)
                if match:
                    self._report(progress_callback, min(99, int(match.group(1))), 'Writing flash')

        ret = proc.wait()
        if ret != 0:
            tail = '\n'.join(output_lines[-OUTPUT_TAIL_LINES:]) if output_lines else 'No output'
            raise DelegateToolException('esptool', ret, tail)

    def flash(self, transport: Transport, firmware: Firmware,
              progress_callback: Optional[ProgressCallback] = None,
              board: Optional[str] = None) -> FlashReport:
        config = self.config_for(board)
        logger.info('FLASH: Uploading firmware via esptool')
        image = self._load_image(firmware, config, board)

        handle = tempfile.NamedTemporaryFile(prefix='arduflash-', suffix='.bin', delete=False)
        try:
            with handle:
                handle.write(image.data)

            # esptool needs the port to itself
            self._tolerate('closing port', transport.close)
            self._report(progress_callback, 5, 'Starting esptool...')
            offset = config.memory.flash_base + config.memory.sketch_offset
            cmd = self.build_command(transport.port_name, config.serial.upload_baud, offset, handle.name)
            self._run(cmd, progress_callback)
        finally:
            os.unlink(handle.name)

        self._report(progress_callback, 100, 'Complete!')
        logger.info('Firmware upload complete!')
        return FlashReport(UploadOutcome.FLASHED, image.length, detail=f'esptool @ {offset:#x}')
