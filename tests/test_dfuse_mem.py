import unittest

from pydfuhost.dfuse_mem import DFUSE, MemSegment, MemoryInfo, parse_memory_layout
from pydfuhost.exceptions import FormatError, MemoryMapError

STM32F4_FLASH = "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg"


class TestParseMemoryLayout(unittest.TestCase):

    def test_stm32f4_flash(self):
        mem = parse_memory_layout(STM32F4_FLASH)
        self.assertEqual(mem.name, "Internal Flash")
        self.assertEqual(mem.segments, (
            MemSegment(0x08000000, 0x08010000, 0x4000, DFUSE(7)),
            MemSegment(0x08010000, 0x08020000, 0x10000, DFUSE(7)),
            MemSegment(0x08020000, 0x08100000, 0x20000, DFUSE(7)),
        ))
        for segment in mem:
            self.assertTrue(segment.readable)
            self.assertTrue(segment.erasable)
            self.assertTrue(segment.writable)

    def test_bytes_input(self):
        mem = parse_memory_layout(STM32F4_FLASH.encode('ascii'))
        self.assertEqual(len(mem), 3)

    def test_type_letters(self):
        mem = parse_memory_layout("@Mixed /0x00000000/1*1Ka,1*1Kb,1*1Kc,1*1Kd,1*1Ke,1*1Kf,1*1Kg")
        self.assertEqual([int(s.mem_type) for s in mem], [1, 2, 3, 4, 5, 6, 7])

    def test_readonly_segment(self):
        mem = parse_memory_layout("@Option Bytes  /0x1FFFC000/01*016 e")
        segment, = mem.segments
        self.assertEqual(segment.start, 0x1FFFC000)
        self.assertEqual(segment.end, 0x1FFFC000 + 16)
        self.assertEqual(segment.sector_size, 16)
        self.assertTrue(segment.readable)
        self.assertFalse(segment.erasable)
        self.assertTrue(segment.writable)

    def test_multiple_blocks(self):
        mem = parse_memory_layout(
            "@Flash /0x08000000/2*2Ka/0x20000000/1*1Mg")
        self.assertEqual([(s.start, s.end) for s in mem], [
            (0x08000000, 0x08001000),
            (0x20000000, 0x20100000),
        ])

    def test_not_a_memory_descriptor(self):
        with self.assertRaises(FormatError):
            parse_memory_layout("DFU interface")
        with self.assertRaises(FormatError):
            parse_memory_layout("@No slash here")

    def test_no_segments(self):
        mem = parse_memory_layout("@Empty/")
        self.assertEqual(mem.name, "Empty")
        self.assertEqual(mem.segments, ())

    def test_zero_sector_size(self):
        with self.assertRaisesRegex(FormatError, "Zero sector size"):
            parse_memory_layout("@Flash/0x08000000/1*0Kg")
        with self.assertRaises(FormatError):
            parse_memory_layout("@Flash/0x08000000/4*016Kg,2*0 a")


class TestMemoryInfo(unittest.TestCase):

    def setUp(self):
        self.mem = parse_memory_layout(STM32F4_FLASH)

    def test_find_segment(self):
        self.assertEqual(self.mem.find_segment(0x08000000).sector_size, 0x4000)
        self.assertEqual(self.mem.find_segment(0x0801ffff).sector_size, 0x10000)
        self.assertIsNone(self.mem.find_segment(0x08100000))
        self.assertIsNone(self.mem.find_segment(0x07ffffff))

    def test_sector_bounds(self):
        self.assertEqual(self.mem.sector_start(0x08004123), 0x08004000)
        self.assertEqual(self.mem.sector_end(0x08004123), 0x08008000)
        self.assertEqual(self.mem.sector_start(0x08010000), 0x08010000)
        self.assertEqual(self.mem.sector_end(0x08010000), 0x08020000)

    def test_sector_outside_map(self):
        with self.assertRaises(MemoryMapError):
            self.mem.sector_start(0x09000000)
        with self.assertRaises(MemoryMapError):
            self.mem.sector_end(0x09000000)

    def test_first_writable_segment(self):
        mem = MemoryInfo("x", (
            MemSegment(0, 0x100, 0x100, DFUSE.READABLE),
            MemSegment(0x100, 0x200, 0x100, DFUSE(7)),
        ))
        self.assertEqual(mem.first_writable_segment().start, 0x100)
        self.assertIsNone(MemoryInfo("x").first_writable_segment())

    def test_max_read_size(self):
        self.assertEqual(self.mem.max_read_size(0x08000000), 0x100000)
        self.assertEqual(self.mem.max_read_size(0x080F0000), 0x10000)
        self.assertEqual(self.mem.max_read_size(0x09000000), 0)

    def test_max_read_size_stops_at_unreadable(self):
        mem = MemoryInfo("x", (
            MemSegment(0x1000, 0x2000, 0x400, DFUSE(7)),
            MemSegment(0x2000, 0x3000, 0x400, DFUSE(7)),
            MemSegment(0x3000, 0x4000, 0x400, DFUSE.WRITEABLE),
        ))
        self.assertEqual(mem.max_read_size(0x1800), 0x1800)
        self.assertEqual(mem.max_read_size(0x3000), 0)

    def test_max_read_size_stops_at_gap(self):
        mem = MemoryInfo("x", (
            MemSegment(0x1000, 0x2000, 0x400, DFUSE(7)),
            MemSegment(0x3000, 0x4000, 0x400, DFUSE(7)),
        ))
        self.assertEqual(mem.max_read_size(0x1000), 0x1000)

    def test_str(self):
        self.assertEqual(str(self.mem.segments[0]),
                         "0x08000000-0x08010000 4 x 16384 (rew)")

    def test_zero_size_segment_str(self):
        segment = MemSegment(0x1000, 0x1000, 0, DFUSE.READABLE)
        self.assertEqual(segment.sector_count, 0)
        self.assertEqual(str(segment), "0x00001000-0x00001000 0 x 0 (r)")


if __name__ == '__main__':
    unittest.main()
