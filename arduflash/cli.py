"""
Command-line interface module for arduflash.
"""

import argparse
import logging
import sys
from typing import List, Optional

from tqdm import tqdm

from .config import BOARD_PROTOCOLS, DEFAULT_BOARD, lookup, split_board_id
from .exceptions import ArduflashException
from .hexfile import decode, load_file
from .strategies import UploadOutcome
from .transport import SerialTransport
from .uploader import UploadManager, UploadResult, default_strategies

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """
    Set up logging configuration.

    Args:
        verbose: Whether to enable verbose logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments (optional)

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description="Arduino-compatible firmware uploader")
    parser.add_argument("-v", "--verbose", help="Enable verbose logging", action="store_true")

    subparsers = parser.add_subparsers(dest='command', help='Operations')

    upload_parser = subparsers.add_parser('upload', help='Upload firmware to a board')
    upload_parser.add_argument("-p", "--port", required=True, help="Serial port name")
    upload_parser.add_argument("-b", "--board", default=DEFAULT_BOARD,
                               help="Fully qualified board name, e.g. arduino:avr:uno")
    upload_parser.add_argument("--output-dir", help="Where mass storage boards get their firmware.uf2")
    upload_parser.add_argument("--verify", help="Verify flash CRC after writing (SAM-BA boards)",
                               action="store_true")
    upload_parser.add_argument('firmware', help='Intel HEX, .bin or .uf2 file')

    subparsers.add_parser('boards', help='List known boards and their protocols')

    decode_parser = subparsers.add_parser('decode', help='Convert an Intel HEX file into a raw binary')
    decode_parser.add_argument('firmware', help='Intel HEX file')
    decode_parser.add_argument('output_file', help='Location of the output file')

    return parser.parse_args(args)


class ProgressBar:
    """Renders (percent, status) progress callbacks with tqdm."""

    def __init__(self, desc: str = 'Uploading'):
        self.pbar = tqdm(total=100, unit='%', desc=desc)
        self.last = 0

    def __call__(self, percent: int, status: str) -> None:
        if percent > self.last:
            self.pbar.update(percent - self.last)
            self.last = percent
        self.pbar.set_postfix_str(status)

    def close(self) -> None:
        self.pbar.close()


def report_result(result: UploadResult) -> None:
    """Log the outcome, calling out anything short of a real write."""
    if result.outcome is UploadOutcome.FLASHED:
        logger.info(f"Uploaded {result.bytes_written} bytes with {result.strategy}")
    elif result.outcome is UploadOutcome.MANUAL_HANDOFF:
        logger.warning(f"Firmware was NOT written by arduflash: {result.detail}")
        logger.warning(f"Artifact: {result.artifact}")
    else:
        logger.warning(f"Simulated upload only, the device was NOT programmed ({result.detail})")


def handle_upload(args: argparse.Namespace) -> bool:
    """
    Handle upload command.

    Args:
        args: Parsed arguments

    Returns:
        True if successful, False otherwise
    """
    try:
        split_board_id(args.board)
    except ValueError as e:
        logger.error(str(e))
        return False

    firmware = load_file(args.firmware)
    strategies = default_strategies(verify=args.verify, output_dir=args.output_dir)
    manager = UploadManager(strategies, default=strategies[0][1])

    config = lookup(args.board)
    transport = SerialTransport(args.port, baudrate=config.serial.upload_baud)
    progress = ProgressBar()
    try:
        result = manager.upload(transport, firmware, progress, args.board)
    finally:
        progress.close()
        transport.close()

    report_result(result)
    return True


def handle_boards(args: argparse.Namespace) -> bool:
    """
    Handle boards command.

    Args:
        args: Parsed arguments

    Returns:
        True if successful, False otherwise
    """
    print(f"{'Board':<40} {'Protocol':<10} {'Baud':>8} {'Page':>6} {'Chunk':>6}")
    for key, config in BOARD_PROTOCOLS:
        print(f"{key:<40} {config.kind.value:<10} {config.serial.upload_baud:>8} "
              f"{config.memory.page_size:>6} {config.transfer_size:>6}")
    return True


def handle_decode(args: argparse.Namespace) -> bool:
    """
    Handle decode command.

    Args:
        args: Parsed arguments

    Returns:
        True if successful, False otherwise
    """
    image = decode(load_file(args.firmware))
    try:
        with open(args.output_file, 'wb') as f:
            f.write(image.data)
        logger.info(f"Wrote {image.length} bytes to {args.output_file}")
    except OSError as e:
        logger.error(f"Failed to write output file: {e}")
        return False
    return True


HANDLERS = {
    'upload': handle_upload,
    'boards': handle_boards,
    'decode': handle_decode,
}


def run_command(args: argparse.Namespace) -> bool:
    """
    Run the specified command.

    Args:
        args: Parsed arguments

    Returns:
        True if successful, False otherwise
    """
    if not args.command:
        logger.error("No command specified")
        return False

    handler = HANDLERS.get(args.command)
    if handler is None:
        logger.error(f"Unknown command: {args.command}")
        return False

    try:
        return handler(args)
    except ArduflashException as e:
        logger.error(str(e))
        return False


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        if run_command(args):
            return 0
        else:
            return 1
    except Exception as e:
        logger.error(f"Unhandled exception: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
