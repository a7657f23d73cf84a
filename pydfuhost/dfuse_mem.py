"""
Helper functions for reading the memory map in a device
following the ST DfuSe 1.1a specification.

The map is encoded in the alternate setting name string as per
ST document UM0424 section 4.3.2, e.g.
    @Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg

This program is free software; you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation; either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program; if not, write to the Free Software
Foundation, Inc., 59 Temple Place, Suite 330, Boston, MA  02111-1307  USA
"""
import re
from dataclasses import dataclass
from enum import IntFlag
from typing import Iterator, Optional, Tuple, Union

from pydfuhost.exceptions import FormatError, MemoryMapError
from pydfuhost.logger import logger

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])


class DFUSE(IntFlag):
    """DFUSE read/write flags"""
    READABLE = 0x1
    ERASABLE = 0x2
    WRITEABLE = 0x4


SECTOR_MULTIPLIERS = {
    ' ': 1,
    'B': 1,
    'K': 1024,
    'M': 1048576,
}

_CONTIGUOUS_RE = re.compile(
    r'/\s*(0x[0-9a-fA-F]{1,8})\s*/(\s*[0-9]+\s*\*\s*[0-9]+\s?[ BKM]\s*[abcdefg]\s*,?\s*)+'
)
_SEGMENT_RE = re.compile(
    r'([0-9]+)\s*\*\s*([0-9]+)\s?([ BKM])\s*([abcdefg])\s*,?\s*'
)


@dataclass(frozen=True)
class MemSegment:
    """
    Memory segment: sector_count sectors of sector_size bytes,
    covering [start, end)
    """
    start: int
    end: int
    sector_size: int
    mem_type: DFUSE = DFUSE(0)

    @property
    def readable(self) -> bool:
        return bool(self.mem_type & DFUSE.READABLE)

    @property
    def erasable(self) -> bool:
        return bool(self.mem_type & DFUSE.ERASABLE)

    @property
    def writable(self) -> bool:
        return bool(self.mem_type & DFUSE.WRITEABLE)

    @property
    def sector_count(self) -> int:
        if not self.sector_size:
            return 0
        return (self.end - self.start) // self.sector_size

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.end

    def __str__(self):
        return (f"0x{self.start:08x}-0x{self.end:08x} "
                f"{self.sector_count} x {self.sector_size} "
                f"({'r' if self.readable else ''}"
                f"{'e' if self.erasable else ''}"
                f"{'w' if self.writable else ''})")


@dataclass(frozen=True)
class MemoryInfo:
    """Named memory region with its segments in descriptor order"""
    name: str
    segments: Tuple[MemSegment, ...] = ()

    def __iter__(self) -> Iterator[MemSegment]:
        return iter(self.segments)

    def __len__(self):
        return len(self.segments)

    def find_segment(self, address: int) -> Optional[MemSegment]:
        """
        Find the memory segment containing the given address.
        :return: MemSegment instance if found, None otherwise.
        """
        for segment in self.segments:
            if address in segment:
                return segment
        return None

    def _resolve(self, address: int, segment: Optional[MemSegment]) -> MemSegment:
        if segment is None:
            segment = self.find_segment(address)
        if segment is None:
            raise MemoryMapError(f"Address 0x{address:08x} outside of memory map")
        return segment

    def sector_start(self, address: int, segment: MemSegment = None) -> int:
        """Start address of the sector holding address"""
        segment = self._resolve(address, segment)
        sector_index = (address - segment.start) // segment.sector_size
        return segment.start + sector_index * segment.sector_size

    def sector_end(self, address: int, segment: MemSegment = None) -> int:
        """End address (exclusive) of the sector holding address"""
        segment = self._resolve(address, segment)
        sector_index = (address - segment.start) // segment.sector_size
        return segment.start + (sector_index + 1) * segment.sector_size

    def first_writable_segment(self) -> Optional[MemSegment]:
        """First segment, in descriptor order, that can be written"""
        return next((s for s in self.segments if s.writable), None)

    def max_read_size(self, start_address: int) -> int:
        """
        Bytes readable from start_address on, following address adjacent
        readable segments and stopping at the first non readable one
        """
        num_bytes = 0
        for segment in self.segments:
            if start_address in segment:
                if not segment.readable:
                    return 0
                num_bytes += segment.end - start_address
            elif segment.start == start_address + num_bytes:
                if not segment.readable:
                    break
                num_bytes += segment.end - segment.start
        return num_bytes


def parse_memory_layout(intf_desc: Union[str, bytes]) -> MemoryInfo:
    """
    Parse memory map from interface descriptor string
    encoded as per ST document UM0424 section 4.3.2.
    :param intf_desc: alternate setting name, "@Name/0xaddr/count*sizeUt,..."
    :return: MemoryInfo instance
    :raise FormatError: not a DfuSe memory descriptor
    """
    if isinstance(intf_desc, (bytes, bytearray)):
        intf_desc = intf_desc.decode('ascii')

    name_end = intf_desc.find('/')
    if not intf_desc.startswith('@') or name_end == -1:
        raise FormatError(f'Not a DfuSe memory descriptor: "{intf_desc}"')

    name = intf_desc[1:name_end].strip()
    _logger.debug(f"DfuSe interface name: {name}")

    segments = []
    for block in _CONTIGUOUS_RE.finditer(intf_desc, name_end):
        address = int(block.group(1), 16)
        for match in _SEGMENT_RE.finditer(block.group(0), block.end(1) - block.start()):
            _sectors, _size, multiplier, type_char = match.groups()
            sectors = int(_sectors, 10)
            size = int(_size, 10) * SECTOR_MULTIPLIERS[multiplier]
            if not size:
                raise FormatError(f"Zero sector size in memory descriptor: \"{match.group(0)}\"")
            mem_type = DFUSE((ord(type_char) - ord('a') + 1) & 7)

            segment = MemSegment(address, address + sectors * size, size, mem_type)
            _logger.debug(f"Memory segment at {segment}")
            segments.append(segment)

            address += sectors * size

    _logger.debug(f"Parsed details of {len(segments)} segments")
    return MemoryInfo(name, tuple(segments))


__all__ = (
    'DFUSE',
    'MemSegment',
    'MemoryInfo',
    'parse_memory_layout',
)
