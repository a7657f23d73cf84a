"""
This implements the ST Microsystems DFU extensions (DfuSe)
as per the DfuSe 1.1a specification (Document UM0391)

DfuSe commands ride on DNLOAD requests with block number 0,
firmware data uses block number 2 and up, addressed through SET_ADDRESS.

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
from enum import IntEnum
from typing import Optional

from pydfuhost import dfu_load
from pydfuhost.dfu import DeviceSession, State, Status, StatusRetVal
from pydfuhost.dfuse_mem import MemoryInfo
from pydfuhost.exceptions import Errx, ProtocolError, MemoryMapError, UsageError
from pydfuhost.logger import logger

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])

# block number of the first data block, 0 and 1 are reserved for commands
DATA_BLOCK = 2


class Command(IntEnum):
    """DFUSE commands"""
    GET_COMMANDS = 0x00
    SET_ADDRESS = 0x21
    ERASE_SECTOR = 0x41


def _memory_info(session: DeviceSession) -> MemoryInfo:
    if not session.is_dfuse:
        raise UsageError(f"DfuSe operation on a {session.variant.value} session")
    if not session.memory_info or not session.memory_info.segments:
        raise MemoryMapError("No memory map available")
    return session.memory_info


def special_command(session: DeviceSession,
                    command: Command,
                    param: int = 0x00,
                    length: int = 1) -> StatusRetVal:
    """
    Perform DfuSe-specific commands.
    Sends [command] + param (little-endian, length 1 or 4 bytes)
    as DNLOAD block 0 and waits until the device leaves dfuDNBUSY
    :param session: DfuSe session
    :param command: DfuSe command to execute
    :param param: command parameter, an address for SET_ADDRESS / ERASE_SECTOR
    :param length: parameter width in bytes
    :return: final status
    """
    if not session.is_dfuse:
        raise UsageError(f"DfuSe command {command.name} on a {session.variant.value} session")
    if length not in (1, 4):
        raise ValueError(f"Don't know how to handle data of len {length}")

    payload = bytes([command]) + param.to_bytes(length, 'little')

    try:
        session.download(payload, 0)
    except ProtocolError as e:
        raise ProtocolError(f"Error during special DfuSe command {command.name}: {e}") from e

    status = session.poll_until(lambda state: state != State.DFU_DOWNLOAD_BUSY)
    if status.bStatus != Status.OK:
        raise ProtocolError(f"Special DfuSe command {command.name} failed {status}")
    return status


def set_address(session: DeviceSession, address: int) -> StatusRetVal:
    """SET_ADDRESS pointer command"""
    _logger.debug(f"Setting address pointer to 0x{address:08x}")
    return special_command(session, Command.SET_ADDRESS, address, 4)


def erase_sector(session: DeviceSession, address: int) -> StatusRetVal:
    """ERASE_SECTOR command for the sector starting at address"""
    return special_command(session, Command.ERASE_SECTOR, address, 4)


def get_commands(session: DeviceSession) -> StatusRetVal:
    """GET_COMMANDS command"""
    return special_command(session, Command.GET_COMMANDS)


def erase(session: DeviceSession, start_address: int, length: int) -> None:
    """
    Erase every sector touched by [start_address, start_address + length).
    Segments that are not erasable are skipped but count as progress.
    """
    mem = _memory_info(session)
    if length <= 0:
        return

    segment = mem.find_segment(start_address)
    address = mem.sector_start(start_address, segment)
    end_address = mem.sector_end(start_address + length - 1)

    bytes_erased = 0
    bytes_to_erase = end_address - address
    session.report_progress(bytes_erased, bytes_to_erase)

    while address < end_address:
        if segment.end <= address:
            segment = mem.find_segment(address)
            if segment is None:
                raise MemoryMapError(f"Address 0x{address:08x} outside of memory map")
        if not segment.erasable:
            # Skip over the non-erasable section
            bytes_erased = min(bytes_erased + segment.end - address, bytes_to_erase)
            address = segment.end
            session.report_progress(bytes_erased, bytes_to_erase)
            continue
        sector_address = mem.sector_start(address, segment)
        _logger.debug(f"Erasing {segment.sector_size}B at 0x{sector_address:08x}")
        erase_sector(session, sector_address)
        address = sector_address + segment.sector_size
        bytes_erased += segment.sector_size
        session.report_progress(bytes_erased, bytes_to_erase)


def _start_address(session: DeviceSession) -> int:
    if session.start_address is None:
        start_address = _memory_info(session).segments[0].start
        _logger.warning(f"Using inferred start address 0x{start_address:08x}")
    else:
        start_address = session.start_address
        if session.memory_info is None or session.memory_info.find_segment(start_address) is None:
            _logger.warning(f"Start address 0x{start_address:08x} "
                            f"outside of memory map bounds")
    return start_address


def do_download(session: DeviceSession,
                xfer_size: int,
                data: bytes,
                manifestation_tolerant: bool = True,
                skip_erase: bool = False) -> int:
    """
    Download a raw binary to the session's start address
    :param session: open DfuSe session
    :param xfer_size: transfer size
    :param data: firmware image
    :param manifestation_tolerant: leave DFU mode after the transfer
    :param skip_erase: do not erase the target sectors first
    :return: bytes sent
    """
    _memory_info(session)
    if xfer_size <= 0:
        raise ValueError(f"Invalid transfer size {xfer_size}")

    expected_size = len(data)
    start_address = _start_address(session)

    if not skip_erase:
        session.begin_phase("Erasing DFU device memory")
        erase(session, start_address, expected_size)

    session.begin_phase("Copying data from host to DFU device")

    bytes_sent = 0
    address = start_address
    session.report_progress(bytes_sent, expected_size)

    while bytes_sent < expected_size:
        chunk_size = min(expected_size - bytes_sent, xfer_size)

        set_address(session, address)
        bytes_written = session.download(data[bytes_sent:bytes_sent + chunk_size], DATA_BLOCK)
        _logger.debug(f"Sent {bytes_written} bytes")
        if bytes_written != chunk_size:
            raise ProtocolError(f"Failed to write whole chunk: "
                                f"{bytes_written} of {chunk_size} bytes")
        status = session.poll_until_idle(State.DFU_DOWNLOAD_IDLE)
        if status.bStatus != Status.OK:
            _logger.error("Transfer failed!")
            raise ProtocolError(f"DFU DOWNLOAD failed {status}")
        address += chunk_size

        bytes_sent += bytes_written
        session.report_progress(bytes_sent, expected_size)

    _logger.info(f"Wrote {bytes_sent} bytes")

    if manifestation_tolerant:
        session.begin_phase("Manifesting new firmware")
        set_address(session, start_address)
        session.download(b'', DATA_BLOCK)
        try:
            session.poll_until(lambda state: state == State.DFU_MANIFEST)
        except Errx as e:
            _logger.error(f"Error during DfuSe manifestation: {e}")

    return bytes_sent


def do_upload(session: DeviceSession,
              xfer_size: int,
              max_size: Optional[int] = None) -> bytes:
    """
    Upload memory starting at the session's start address
    :param session: open DfuSe session
    :param xfer_size: transfer size
    :param max_size: bytes to read, by default up to the end of
        the readable memory following the start address
    :return: uploaded bytes
    """
    if not session.is_dfuse:
        raise UsageError(f"DfuSe upload on a {session.variant.value} session")
    start_address = _start_address(session)

    if max_size is None:
        max_size = _memory_info(session).max_read_size(start_address)
        if max_size == 0:
            raise MemoryMapError(f"Memory at 0x{start_address:08x} is not readable")

    _logger.info(f"Reading up to 0x{max_size:x} bytes starting at 0x{start_address:08x}")
    if session.get_state() != State.DFU_IDLE:
        session.abort_to_idle()
    set_address(session, start_address)
    session.abort_to_idle()

    # DfuSe encodes the read address based on the transfer size,
    # the block number - 2, and the SET_ADDRESS pointer.
    return dfu_load.do_upload(session, xfer_size, max_size, DATA_BLOCK)


__all__ = (
    'Command',
    'special_command',
    'set_address',
    'erase_sector',
    'get_commands',
    'erase',
    'do_download',
    'do_upload',
)
