#!/usr/bin/env python3
"""
Example script demonstrating how to use arduflash as a library.
"""

import os
import sys
import logging

# Add the parent directory to the path so we can import the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from arduflash import ArduflashException, SerialTransport, UploadManager, UploadOutcome, config
from arduflash.hexfile import load_file

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def print_progress(percent, status):
    logger.info(f"[{percent:3d}%] {status}")


def main():
    """
    Example function demonstrating how to use arduflash as a library.

    Uploads a sketch to the board named on the command line.
    """
    # Parameters
    port_name = sys.argv[1] if len(sys.argv) > 1 else '/dev/ttyACM0'  # Change this to your actual port
    board = sys.argv[2] if len(sys.argv) > 2 else 'arduino:avr:uno'
    firmware_file = sys.argv[3] if len(sys.argv) > 3 else 'sketch.ino.hex'

    protocol = config.lookup(board)
    logger.info(f"Board {board} uses {protocol.kind.value} at {protocol.serial.upload_baud} baud")

    manager = UploadManager()
    logger.info(f"Selected strategy: {manager.select_strategy(board).name}")

    try:
        firmware = load_file(firmware_file)
        with SerialTransport(port_name, baudrate=protocol.serial.upload_baud) as transport:
            result = manager.upload(transport, firmware, print_progress, board)
    except ArduflashException as e:
        logger.error(f"Error: {e}")
        return 1

    if result.outcome is UploadOutcome.FLASHED:
        logger.info(f"Wrote {result.bytes_written} bytes")
    else:
        logger.warning(f"Device not programmed directly: {result.detail}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
