# SPDX-License-Identifier: LGPL-3.0-or-later
import io
import tempfile
import unittest
from pathlib import Path

from fakes.images import dense, memory_image, pattern, write_raw
from vmi.disk.extent import ExtentKind
from vmi.disk.sources import FileSlice
from vmi.formats.descriptor import FormatTag
from vmi.formats.raw import RAW_CONFIDENCE, DenseReader, RawCodec, write_dense

BLOCK = 64 * 1024


class TestRawCodec(unittest.TestCase):
    """Tests for the identity codec."""

    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.dir = Path(self._td.name)
        self.codec = RawCodec(BLOCK)

    def tearDown(self):
        self._td.cleanup()

    def test_probe(self):
        """Any non-empty regular file is a weak raw candidate."""
        p = write_raw(self.dir / "a.img", 4096, [(0, b"x")])
        empty = write_raw(self.dir / "empty.img", 0)
        self.assertEqual(self.codec.probe(p), RAW_CONFIDENCE)
        self.assertEqual(self.codec.probe(empty), 0.0)
        self.assertEqual(self.codec.probe(self.dir), 0.0)
        self.assertEqual(self.codec.probe(self.dir / "missing"), 0.0)

    def test_open_classifies_blocks(self):
        """Non-zero blocks are Data; written zeros are Zero or Sparse, never Data."""
        data = pattern(BLOCK)
        p = self.dir / "disk.img"
        p.write_bytes(data + bytes(2 * BLOCK) + data)
        img = self.codec.open(p)
        self.assertEqual(img.virtual_size, 4 * BLOCK)
        self.assertEqual(img.descriptor.tag, FormatTag.RAW)
        kinds = [(e.offset, e.length, e.kind) for e in img.extents]
        self.assertEqual(kinds[0], (0, BLOCK, ExtentKind.DATA))
        self.assertEqual(kinds[-1], (3 * BLOCK, BLOCK, ExtentKind.DATA))
        for offset, length, kind in kinds[1:-1]:
            self.assertNotEqual(kind, ExtentKind.DATA)
        self.assertEqual(img.allocated_bytes, 2 * BLOCK)
        self.assertEqual(dense(img), p.read_bytes())

    def test_open_sparse_file(self):
        """Filesystem holes never become Data extents."""
        size = 16 * BLOCK
        p = write_raw(self.dir / "holes.img", size, [(5 * BLOCK, pattern(100))])
        img = self.codec.open(p)
        self.assertEqual(img.virtual_size, size)
        # hole-reporting filesystems give a smaller data region than one scan block
        self.assertTrue(0 < img.allocated_bytes <= BLOCK)
        for e in img.extents:
            if e.is_data:
                self.assertGreaterEqual(e.offset, 5 * BLOCK)
                self.assertLessEqual(e.end, 6 * BLOCK)
        self.assertEqual(img.read_at(5 * BLOCK, 100), pattern(100))
        self.assertGreaterEqual(img.sparse_ratio, 15 / 16)

    def test_open_unaligned_tail(self):
        p = self.dir / "odd.img"
        p.write_bytes(pattern(BLOCK + 1000))
        img = self.codec.open(p)
        self.assertEqual(img.virtual_size, BLOCK + 1000)
        self.assertEqual(dense(img), p.read_bytes())

    def test_open_slice(self):
        """A raw disk inside a container is read through its window."""
        p = self.dir / "container"
        p.write_bytes(b"H" * 512 + pattern(BLOCK) + b"T" * 512)
        img = self.codec.open(FileSlice(p, 512, BLOCK))
        self.assertEqual(dense(img), pattern(BLOCK))

    def test_create_leaves_holes(self):
        img = memory_image(
            (ExtentKind.DATA, pattern(1000)),
            (ExtentKind.SPARSE, 10 * BLOCK),
            (ExtentKind.DATA, bytes(500)),
            (ExtentKind.ZERO, 100),
        )
        out = self.dir / "out.img"
        written = self.codec.create(img, out)
        self.assertEqual(out.stat().st_size, img.virtual_size)
        self.assertEqual(written, 1000)
        self.assertEqual(out.read_bytes(), dense(img))

    def test_artifacts(self):
        self.assertEqual(self.codec.artifacts(self.dir / "x.img"), [self.dir / "x.img"])


class TestDenseStreams(unittest.TestCase):
    def test_write_dense(self):
        img = memory_image((ExtentKind.DATA, b"abc"), (ExtentKind.SPARSE, 5), (ExtentKind.DATA, b"z"))
        buf = io.BytesIO()
        self.assertEqual(write_dense(buf, img.blocks()), 9)
        self.assertEqual(buf.getvalue(), b"abc" + bytes(5) + b"z")

    def test_dense_reader_pads_and_fills_reads(self):
        """Reads are filled completely across block boundaries, then zero padded."""
        img = memory_image((ExtentKind.DATA, b"abc"), (ExtentKind.ZERO, 4), (ExtentKind.DATA, b"xyz"))
        reader = DenseReader(img.blocks(chunk_size=2), total=16)
        self.assertEqual(reader.read(5), b"abc\x00\x00")
        self.assertEqual(reader.read(100), b"\x00\x00xyz" + bytes(6))
        self.assertEqual(reader.read(10), b"")

    def test_dense_reader_order_check(self):
        from vmi.core.exceptions import MalformedLayout

        img = memory_image((ExtentKind.DATA, b"abc"), (ExtentKind.DATA, b"def"))
        blocks = list(img.blocks())
        reader = DenseReader(reversed(blocks), total=6)
        with self.assertRaises(MalformedLayout):
            reader.read(6)


if __name__ == "__main__":
    unittest.main()
