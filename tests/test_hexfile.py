"""
Test module for the Intel HEX decoder.
"""

import io
import os
import sys
import tempfile
import unittest

from intelhex import IntelHex

# Add parent directory to path to import arduflash modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from arduflash.exceptions import FileNotFoundException, FirmwareDecodeException
from arduflash.hexfile import FirmwareImage, decode, is_hex_text, load_file, load_image

SIXTEEN_BYTES = ':10000000010203040506070809000102030405069A\n:00000001FF\n'


def encode_hex(data: bytes, offset: int = 0) -> str:
    ih = IntelHex()
    ih.puts(offset, data)
    out = io.StringIO()
    ih.write_hex_file(out)
    return out.getvalue()


class TestDecode(unittest.TestCase):
    """Test cases for decode()."""

    def test_single_record(self):
        image = decode(SIXTEEN_BYTES)
        self.assertEqual(image.length, 16)
        self.assertEqual(image.data, bytes([1, 2, 3, 4, 5, 6, 7, 8, 9, 0, 1, 2, 3, 4, 5, 6]))

    def test_bytes_input(self):
        self.assertEqual(decode(SIXTEEN_BYTES.encode('ascii')).length, 16)

    def test_crlf_line_endings(self):
        self.assertEqual(decode(SIXTEEN_BYTES.replace('\n', '\r\n')).length, 16)

    def test_intelhex_encoded_image(self):
        data = bytes((i * 7) & 0xFF for i in range(1000))
        self.assertEqual(decode(encode_hex(data)).data, data)

    def test_gap_is_zero_filled(self):
        text = ':0200000011222B\n:02001000334475\n:00000001FF\n'
        image = decode(text)
        self.assertEqual(image.length, 0x12)
        self.assertEqual(image.data[:2], b'\x11\x22')
        self.assertEqual(image.data[2:0x10], bytes(14))
        self.assertEqual(image.data[0x10:], b'\x33\x44')

    def test_checksum_not_validated(self):
        image = decode(':0400000001020304FF\n:00000001FF\n')
        self.assertEqual(image.data, b'\x01\x02\x03\x04')

    def test_extended_records_ignored(self):
        text = ':020000040001F9\n:020000021000EC\n:02000000AABB99\n:00000001FF\n'
        self.assertEqual(decode(text).data, b'\xAA\xBB')

    def test_malformed_lines_skipped(self):
        text = 'garbage\n:ZZ000000\n\n:02000000AABB99\n'
        self.assertEqual(decode(text).data, b'\xAA\xBB')

    def test_truncated_data_field(self):
        # Declared length still defines the extent of the image
        image = decode(':04000000AABB\n')
        self.assertEqual(image.data, b'\xAA\xBB\x00\x00')

    def test_no_data_raises(self):
        with self.assertRaises(FirmwareDecodeException):
            decode(':00000001FF\n')
        with self.assertRaises(FirmwareDecodeException):
            decode('')


class TestLoadImage(unittest.TestCase):
    """Test cases for payload normalisation."""

    def test_is_hex_text(self):
        self.assertTrue(is_hex_text(SIXTEEN_BYTES))
        self.assertTrue(is_hex_text(b'  ' + SIXTEEN_BYTES.encode()))
        self.assertFalse(is_hex_text(b'UF2\n'))

    def test_hex_text_is_decoded(self):
        self.assertEqual(load_image(SIXTEEN_BYTES).length, 16)

    def test_raw_bytes_pass_through(self):
        self.assertEqual(load_image(b'\x01\x02\x03').data, b'\x01\x02\x03')

    def test_image_pass_through(self):
        image = FirmwareImage(b'\xAA')
        self.assertIs(load_image(image), image)

    def test_empty_payloads_raise(self):
        for payload in (b'', '', FirmwareImage(b'')):
            with self.assertRaises(FirmwareDecodeException):
                load_image(payload)

    def test_non_hex_text_raises(self):
        with self.assertRaises(FirmwareDecodeException):
            load_image('not a hex file')

    def test_pages(self):
        image = FirmwareImage(bytes(300))
        pages = list(image.pages(128))
        self.assertEqual([offset for offset, _ in pages], [0, 128, 256])
        self.assertEqual([len(chunk) for _, chunk in pages], [128, 128, 44])


class TestLoadFile(unittest.TestCase):

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundException):
            load_file('/nonexistent/firmware.hex')

    def test_reads_content(self):
        with tempfile.NamedTemporaryFile(mode='wb', suffix='.hex', delete=False) as temp_file:
            temp_file.write(SIXTEEN_BYTES.encode('ascii'))
        try:
            self.assertEqual(decode(load_file(temp_file.name)).length, 16)
        finally:
            os.unlink(temp_file.name)


if __name__ == '__main__':
    unittest.main()
