"""
DFU transfer routines

This is supposed to be a general DFU implementation, as specified in the
USB DFU 1.0 and 1.1 specification.

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
from typing import Optional

from pydfuhost.dfu import DeviceSession, State, Status
from pydfuhost.exceptions import (Errx, ProtocolError, TransportError,
                                  DeviceGoneError)
from pydfuhost.logger import logger

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])


def do_upload(session: DeviceSession,
              xfer_size: int,
              max_size: Optional[int] = None,
              first_block: int = 0) -> bytes:
    """
    Uploads data from DFU device block by block
    :param session: open DeviceSession
    :param xfer_size: chunk size
    :param max_size: optional - upper bound of bytes to read
    :param first_block: block number of the first UPLOAD request
    :return: uploaded bytes
    """
    if xfer_size <= 0:
        raise ValueError(f"Invalid transfer size {xfer_size}")

    session.begin_phase("Copying data from DFU device to host")

    transaction = first_block
    blocks = []
    bytes_read = 0
    session.report_progress(bytes_read, max_size)

    while True:
        if max_size is None:
            bytes_to_read = xfer_size
        else:
            bytes_to_read = min(xfer_size, max_size - bytes_read)

        chunk = session.upload(bytes_to_read, transaction)
        transaction += 1
        _logger.debug(f"Read {len(chunk)} bytes")
        if chunk:
            blocks.append(chunk)
            bytes_read += len(chunk)
        session.report_progress(bytes_read, max_size)

        # last block, a short read marks the end of data
        if len(chunk) < bytes_to_read:
            break
        if max_size is not None and bytes_read >= max_size:
            break

    if max_size is not None and bytes_read == max_size:
        # the device may not know about our size cap
        session.abort_to_idle()

    _logger.info(f"Read {bytes_read} bytes")
    return b''.join(blocks)


def _manifest(session: DeviceSession, manifestation_tolerant: bool) -> None:
    session.begin_phase("Manifesting new firmware")

    if manifestation_tolerant:
        # A device that is not really manifestation tolerant
        # may end up in dfuMANIFEST-WAIT-RESET instead of dfuIDLE
        try:
            status = session.poll_until(
                lambda state: state in (State.DFU_IDLE, State.DFU_MANIFEST_WAIT_RESET)
            )
        except DeviceGoneError as e:
            _logger.warning(f"Unable to poll final manifestation status: {e}")
        else:
            if status.bState == State.DFU_MANIFEST_WAIT_RESET:
                _logger.debug("Device transitioned to MANIFEST_WAIT_RESET "
                              "even though it is manifestation tolerant")
            if status.bStatus != Status.OK:
                raise ProtocolError(f"DFU MANIFEST failed {status}")
    else:
        # Try polling once to initiate manifestation
        try:
            final_status = session.get_status()
            _logger.debug(f"Final DFU status: {final_status}")
        except Errx as e:
            _logger.debug(f"Manifest GET_STATUS poll error: {e}")

    # Reset to exit MANIFEST_WAIT_RESET
    try:
        session.reset()
    except DeviceGoneError as e:
        _logger.debug(f"Ignored reset error: {e}")
    except TransportError as e:
        raise TransportError(f"Error during reset for manifestation: {e}") from e


def do_download(session: DeviceSession,
                xfer_size: int,
                data: bytes,
                manifestation_tolerant: bool = True) -> int:
    """
    Downloads data to DFU device, then manifests it and resets the device
    :param session: open DeviceSession
    :param xfer_size: transaction size
    :param data: firmware image
    :param manifestation_tolerant: bitManifestationTolerant of the functional descriptor
    :return: bytes sent
    """
    if xfer_size <= 0:
        raise ValueError(f"Invalid transfer size {xfer_size}")

    session.begin_phase("Copying data from host to DFU device")

    expected_size = len(data)
    bytes_sent = 0
    transaction = 0
    session.report_progress(bytes_sent, expected_size)

    while bytes_sent < expected_size:
        chunk_size = min(expected_size - bytes_sent, xfer_size)

        bytes_written = session.download(data[bytes_sent:bytes_sent + chunk_size], transaction)
        transaction += 1
        _logger.debug(f"Sent {bytes_written} bytes")
        if bytes_written != chunk_size:
            raise ProtocolError(f"Failed to write whole chunk: "
                                f"{bytes_written} of {chunk_size} bytes")
        status = session.poll_until_idle(State.DFU_DOWNLOAD_IDLE)

        if status.bStatus != Status.OK:
            _logger.error("Transfer failed!")
            raise ProtocolError(f"DFU DOWNLOAD failed {status}")

        bytes_sent += bytes_written
        session.report_progress(bytes_sent, expected_size)

    # Send one zero-sized download request to signalize end
    _logger.debug("Sending empty block")
    session.download(b'', transaction)

    _logger.info(f"Wrote {bytes_sent} bytes")

    _manifest(session, manifestation_tolerant)
    return bytes_sent


__all__ = (
    'do_upload',
    'do_download'
)
