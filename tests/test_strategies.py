"""
Test module for the upload strategies.
"""

import os
import struct
import sys
import tempfile
import unittest
from dataclasses import replace
from unittest.mock import MagicMock, patch

# Add parent directory to path to import arduflash modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import usb.core

from arduflash.bossa import calc_crc16
from arduflash.config import TEENSY_CONFIG
from arduflash.exceptions import (
    DelegateToolException,
    DeviceNotFoundException,
    FirmwareTooLargeException,
    TransportException,
    UploadTimeoutException,
)
from arduflash.strategies import (
    AVRStrategy,
    BOSSAStrategy,
    ESPToolStrategy,
    RP2040Strategy,
    TeensyStrategy,
    UploadOutcome,
)
from arduflash.strategies.bossa import FLASH_APPLET
from arduflash.strategies.teensy import find_halfkay

from fakes import FakeClock, FakeTransport, bossa_responder, stk500_responder

HEX_16 = ':10000000010203040506070809000102030405069A\n:00000001FF\n'


def uf2_image(blocks, payload_size=256):
    """Build a UF2 container of blocks carrying payload_size bytes each."""
    data = bytearray()
    for index in range(blocks):
        data += struct.pack('<8I', 0x0A324655, 0x9E5D5157, 0x2000, 0x10000000 + index * payload_size,
                            payload_size, index, blocks, 0xE48BFF56)
        data += bytes(476)
        data += struct.pack('<I', 0x0AB16F30)
    return bytes(data)


class StrategyTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        patcher = self.clock.patch()
        patcher.start()
        self.addCleanup(patcher.stop)
        self.progress = []

    def record(self, percent, status):
        self.progress.append((percent, status))

    def percents(self):
        return [percent for percent, _ in self.progress]


class TestAVRStrategy(StrategyTestCase):
    """Test cases for the DTR reset plus STK500 strategy."""

    def test_prepare_opens_and_pulses_dtr(self):
        transport = FakeTransport(self.clock, is_open=False)
        AVRStrategy().prepare(transport, 'arduino:avr:uno')
        self.assertEqual(transport.events, [
            ('open', 115200),
            ('signal', 'DTR', False),
            ('signal', 'DTR', True),
        ])

    def test_prepare_tolerates_transport_failure(self):
        transport = FakeTransport(self.clock, is_open=False)
        transport.open_at_baud = MagicMock(side_effect=TransportException('busy'))
        with self.assertLogs('arduflash.strategies.base', level='WARNING'):
            AVRStrategy().prepare(transport, 'arduino:avr:uno')

    def test_flash_hex(self):
        transport = FakeTransport(self.clock, responder=stk500_responder)
        report = AVRStrategy().flash(transport, HEX_16, self.record, 'arduino:avr:uno')
        self.assertEqual(report.outcome, UploadOutcome.FLASHED)
        self.assertEqual(report.bytes_written, 16)
        self.assertEqual(self.percents()[-1], 100)

    def test_flash_rejects_oversized_image(self):
        transport = FakeTransport(self.clock, responder=stk500_responder)
        with self.assertRaises(FirmwareTooLargeException):
            AVRStrategy().flash(transport, bytes(0x7E01), None, 'arduino:avr:uno')
        self.assertEqual(transport.writes, [])

    def test_mega_limit_is_word_addressable_flash(self):
        transport = FakeTransport(self.clock, responder=stk500_responder)
        with self.assertRaises(FirmwareTooLargeException) as ctx:
            AVRStrategy().flash(transport, bytes(0x30000), None, 'arduino:avr:mega')
        self.assertEqual(ctx.exception.limit, 0x20000)
        self.assertEqual(transport.writes, [])
        self.assertFalse(transport.owned)


class TestBOSSAStrategy(StrategyTestCase):
    """Test cases for the 1200 baud touch plus SAM-BA strategy."""

    def test_prepare_touch(self):
        transport = FakeTransport(self.clock, is_open=False, usb=(0x2341, 0x1002))
        BOSSAStrategy().prepare(transport, 'arduino:renesas_uno:unor4wifi')
        self.assertEqual(transport.events, [
            ('open', 1200),
            ('signal', 'DTR', True),
            ('signal', 'RTS', True),
            ('close',),
            ('open', 1200),
            ('signal', 'DTR', False),
            ('signal', 'RTS', True),
            ('close',),
        ])
        self.assertIn(2.5, self.clock.sleeps)

    def test_prepare_skips_touch_in_bootloader(self):
        transport = FakeTransport(self.clock, is_open=False, usb=(0x2341, 0x0069))
        BOSSAStrategy().prepare(transport, 'arduino:renesas_uno:unor4wifi')
        self.assertEqual(transport.events, [])

    def test_flash_renesas(self):
        transport = FakeTransport(self.clock, is_open=False, responder=bossa_responder(version='v1.1'))
        firmware = b'\xAA' * 5000
        report = BOSSAStrategy().flash(transport, firmware, self.record, 'arduino:renesas_uno:unor4wifi')

        self.assertEqual(report.outcome, UploadOutcome.FLASHED)
        self.assertEqual(report.bytes_written, 5000)
        self.assertEqual(transport.events[0], ('open', 230400))
        self.assertIn(FLASH_APPLET, transport.writes)

        commands = transport.commands()
        self.assertEqual(commands[:5], [
            'N#', 'S00000000,00000034#', 'W00000030,00000400#', 'W00000020,00000000#', 'X00000000#',
        ])
        self.assertEqual([c for c in commands if c.startswith('Y')], [
            'Y00000034,0#', 'Y00000000,00001000#',
            'Y00000034,0#', 'Y00001000,00001000#',
        ])
        self.assertEqual(commands[-1], 'K#')

        percents = self.percents()
        self.assertEqual(percents, sorted(percents))
        for milestone in (5, 10, 12, 15, 95, 96, 98, 100):
            self.assertIn(milestone, percents)
        self.assertEqual(transport.release_count, 1)
        self.assertFalse(transport.is_open)

    def test_flash_samd_uses_absolute_addresses(self):
        transport = FakeTransport(self.clock, is_open=False, responder=bossa_responder())
        BOSSAStrategy().flash(transport, b'\x55' * 100, self.record, 'arduino:samd:mkr1000')
        commands = transport.commands()
        self.assertNotIn(FLASH_APPLET, transport.writes)
        self.assertIn('X00002000#', commands)
        self.assertIn('Y20001000,0#', commands)
        self.assertIn('Y00002000,00001000#', commands)

    def test_flash_with_verify(self):
        firmware = b'\x11' * 4096
        transport = FakeTransport(self.clock, is_open=False,
                                  responder=bossa_responder(crc=calc_crc16(firmware)))
        BOSSAStrategy(verify=True).flash(transport, firmware, self.record, 'arduino:renesas_uno:minima')
        self.assertIn('Z00000000,00001000#', transport.commands())

    def test_flash_falls_back_to_alternate_baud(self):
        state = {}
        responder = bossa_responder()

        def respond(data):
            # Only the 115200 line produces readable text
            if state.get('baud') != 115200:
                return b'\x80\xFE\x81' if data == b'N#' else b''
            return responder(data)

        transport = FakeTransport(self.clock, is_open=False, responder=respond)
        original_open = transport.open_at_baud

        def open_at_baud(baud):
            state['baud'] = baud
            original_open(baud)
        transport.open_at_baud = open_at_baud

        report = BOSSAStrategy().flash(transport, b'\x01' * 10, self.record, 'arduino:renesas_uno:unor4wifi')
        self.assertIn('115200', report.detail)
        self.assertIn((5, 'Trying 115200 baud...'), self.progress)

    def test_flash_no_bootloader(self):
        transport = FakeTransport(self.clock, is_open=False, responder=lambda data: b'')
        with self.assertRaises(UploadTimeoutException) as ctx:
            BOSSAStrategy().flash(transport, b'\x01' * 10, self.record, 'arduino:renesas_uno:unor4wifi')
        self.assertEqual(ctx.exception.phase, 'sync')
        self.assertEqual(transport.release_count, 1)

    def test_flash_rejects_oversized_image(self):
        transport = FakeTransport(self.clock, is_open=False, responder=bossa_responder())
        with self.assertRaises(FirmwareTooLargeException):
            BOSSAStrategy().flash(transport, bytes(0x3C001), None, 'arduino:renesas_uno:unor4wifi')
        self.assertEqual(transport.events, [])


class FakePopen:
    """Stands in for subprocess.Popen running esptool."""

    def __init__(self, lines, returncode=0):
        self.lines = lines
        self.returncode = returncode
        self.cmd = None
        self.payload = None

    def __call__(self, cmd, **kwargs):
        self.cmd = cmd
        with open(cmd[-1], 'rb') as f:
            self.payload = f.read()
        self.stdout = iter(line + '\n' for line in self.lines)
        return self

    def wait(self):
        return self.returncode


class TestESPToolStrategy(StrategyTestCase):
    """Test cases for the esptool delegate."""

    def test_prepare_reset_sequence(self):
        transport = FakeTransport(self.clock, is_open=False)
        ESPToolStrategy().prepare(transport, 'esp32:esp32:esp32')
        self.assertEqual(transport.events, [
            ('open', 921600),
            ('signal', 'DTR', False),
            ('signal', 'RTS', True),
            ('signal', 'DTR', True),
            ('signal', 'RTS', False),
            ('signal', 'DTR', False),
        ])
        self.assertIn(1.2, self.clock.sleeps)

    def test_flash_runs_esptool(self):
        popen = FakePopen([
            'Connecting....',
            'Writing at 0x00010000... (50 %)',
            'Writing at 0x00010400... (100 %)',
            'Hash of data verified.',
        ])
        transport = FakeTransport(self.clock)
        strategy = ESPToolStrategy(popen=popen, command=['esptool'])
        report = strategy.flash(transport, b'\xE9' * 2048, self.record, 'esp32:esp32:esp32')

        self.assertEqual(popen.cmd[:7], ['esptool', '--port', '/dev/ttyFAKE', '--baud', '921600',
                                         'write_flash', '0x10000'])
        self.assertEqual(popen.payload, b'\xE9' * 2048)
        self.assertFalse(os.path.exists(popen.cmd[-1]))
        self.assertFalse(transport.is_open)
        self.assertEqual(self.percents(), [5, 50, 99, 100])
        self.assertEqual(report.outcome, UploadOutcome.FLASHED)

    def test_flash_failure(self):
        popen = FakePopen(['A fatal error occurred: Failed to connect to ESP32'], returncode=2)
        strategy = ESPToolStrategy(popen=popen, command=['esptool'])
        with self.assertRaises(DelegateToolException) as ctx:
            strategy.flash(FakeTransport(self.clock), b'\xE9' * 16, None, 'esp32:esp32:esp32')
        self.assertEqual(ctx.exception.returncode, 2)
        self.assertIn('Failed to connect', str(ctx.exception))
        self.assertFalse(os.path.exists(popen.cmd[-1]))

    def test_missing_tool(self):
        strategy = ESPToolStrategy(popen=MagicMock(side_effect=FileNotFoundError('esptool')),
                                   command=['esptool'])
        with self.assertRaises(DelegateToolException):
            strategy.flash(FakeTransport(self.clock), b'\xE9' * 16, None, 'esp32:esp32:esp32')


class TestRP2040Strategy(StrategyTestCase):
    """Test cases for the UF2 hand-off."""

    def test_prepare_touch(self):
        transport = FakeTransport(self.clock, is_open=False)
        RP2040Strategy().prepare(transport, 'rp2040:rp2040:rpipico')
        self.assertEqual(transport.events, [('open', 1200), ('close',)])

    def test_flash_writes_artifact(self):
        firmware = b'UF2\n' + bytes(508)
        with tempfile.TemporaryDirectory() as output_dir:
            transport = FakeTransport(self.clock)
            report = RP2040Strategy(output_dir=output_dir).flash(
                transport, firmware, self.record, 'rp2040:rp2040:rpipico')

            self.assertEqual(report.outcome, UploadOutcome.MANUAL_HANDOFF)
            self.assertEqual(report.artifact, os.path.join(output_dir, 'firmware.uf2'))
            with open(report.artifact, 'rb') as f:
                self.assertEqual(f.read(), firmware)
        self.assertEqual(self.progress, [(100, 'Done (Manual Drag & Drop)')])
        self.assertEqual(transport.writes, [])

    def test_flash_warns_on_non_uf2(self):
        with tempfile.TemporaryDirectory() as output_dir:
            with self.assertLogs('arduflash.strategies.rp2040', level='WARNING') as logs:
                RP2040Strategy(output_dir=output_dir).flash(
                    FakeTransport(self.clock), b'\x00' * 64, None, 'rp2040:rp2040:rpipico')
        self.assertTrue(any('UF2 magic' in line for line in logs.output))

    def test_uf2_size_counts_payload_not_container(self):
        firmware = uf2_image(4800)
        self.assertGreater(len(firmware), 0x200000)
        with tempfile.TemporaryDirectory() as output_dir:
            report = RP2040Strategy(output_dir=output_dir).flash(
                FakeTransport(self.clock), firmware, None, 'rp2040:rp2040:rpipico')
        self.assertEqual(report.outcome, UploadOutcome.MANUAL_HANDOFF)

    def test_uf2_payload_over_flash_is_rejected(self):
        with tempfile.TemporaryDirectory() as output_dir:
            with self.assertRaises(FirmwareTooLargeException) as ctx:
                RP2040Strategy(output_dir=output_dir).flash(
                    FakeTransport(self.clock), uf2_image(8193), None, 'rp2040:rp2040:rpipico')
            self.assertEqual(ctx.exception.size, 8193 * 256)
            self.assertFalse(os.path.exists(os.path.join(output_dir, 'firmware.uf2')))


class TestTeensyStrategy(StrategyTestCase):
    """Test cases for the simulated HalfKay strategy."""

    def test_prepare_warns_when_absent(self):
        finder = MagicMock(return_value=None)
        with self.assertLogs('arduflash.strategies.teensy', level='WARNING'):
            TeensyStrategy(finder=finder).prepare(FakeTransport(self.clock), 'teensy:avr:teensy40')
        finder.assert_called_once_with(0x16C0, 0x0486)

    def test_bootloader_ids_come_from_config(self):
        config = replace(TEENSY_CONFIG, bootloader_pids=(0x0478,))
        finder = MagicMock(return_value=None)
        strategy = TeensyStrategy(config_lookup=lambda board: config, finder=finder)
        with self.assertRaises(DeviceNotFoundException) as ctx:
            strategy.flash(FakeTransport(self.clock), HEX_16, None, 'teensy:avr:teensy40')
        finder.assert_called_once_with(0x16C0, 0x0478)
        self.assertIn('16c0:0478', str(ctx.exception))

    def test_flash_is_simulated(self):
        strategy = TeensyStrategy(finder=MagicMock(return_value=object()))
        transport = FakeTransport(self.clock)
        report = strategy.flash(transport, HEX_16, self.record, 'teensy:avr:teensy40')
        self.assertEqual(report.outcome, UploadOutcome.SIMULATED)
        self.assertEqual(report.bytes_written, 0)
        self.assertEqual(self.percents(), [10, 50, 100])
        self.assertEqual(transport.writes, [])

    def test_flash_requires_device(self):
        strategy = TeensyStrategy(finder=MagicMock(return_value=None))
        with self.assertRaises(DeviceNotFoundException):
            strategy.flash(FakeTransport(self.clock), HEX_16, self.record, 'teensy:avr:teensy40')
        self.assertEqual(self.progress, [])

    @patch('usb.core.find')
    def test_find_halfkay(self, mock_find):
        mock_find.return_value = 'device'
        self.assertEqual(find_halfkay(), 'device')
        mock_find.assert_called_once_with(idVendor=0x16C0, idProduct=0x0486)

    @patch('usb.core.find', side_effect=usb.core.NoBackendError('No backend available'))
    def test_find_halfkay_without_backend(self, mock_find):
        self.assertIsNone(find_halfkay())


if __name__ == '__main__':
    unittest.main()
