"""
pydfuhost
Command line front end of the DFU / DfuSe host engine

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
import argparse
from enum import Enum
from typing import Optional, Tuple

from pydfuhost import __version__
from pydfuhost import dfu
from pydfuhost import dfu_load
from pydfuhost import dfu_util
from pydfuhost import dfuse
from pydfuhost.dfu import DeviceSession, State
from pydfuhost.exceptions import (Errx, UsageError, NoInputError, DeviceGoneError,
                                  DisconnectTimeoutError, SysExit, except_and_safe_exit)
from pydfuhost.logger import logger, set_verbose
from pydfuhost.progress import Progress, BACKENDS
from pydfuhost.transport import DEFAULT_TIMEOUT
from pydfuhost.usb_dfu import BmAttributes

VERSION = f"pydfuhost {__version__}\n"

# how long to wait for a detached device to leave the bus, milliseconds
DETACH_DISCONNECT_TIMEOUT = 5000


class Mode(Enum):
    """What the command line asked for"""
    NONE = 0
    LIST = 1
    DETACH = 2
    UPLOAD = 3
    DOWNLOAD = 4


def parse_vid_pid(string: str) -> Tuple[Optional[int], Optional[int]]:
    """
    Parse "vid:pid" in hexadecimal, either part may be empty
    :return: (vendor, product), None for a missing part
    """
    try:
        vendor_str, product_str = string.split(':')
        vendor = int(vendor_str, 16) if vendor_str else None
        product = int(product_str, 16) if product_str else None
    except ValueError as e:
        raise UsageError(f"Invalid device filter \"{string}\", expected <vid>:<pid>") from e
    return vendor, product


def parse_dfuse_address(string: str) -> Tuple[int, Optional[int]]:
    """
    Parse "address[:length]", numbers in any base int() accepts
    :return: (address, length or None)
    """
    address_str, _, length_str = string.partition(':')
    try:
        address = int(address_str, 0)
        length = int(length_str, 0) if length_str else None
    except ValueError as e:
        raise UsageError(f"Invalid DfuSe address \"{string}\"") from e
    if length is not None and length <= 0:
        raise UsageError(f"Invalid DfuSe upload length {length}")
    return address, length


def add_cli_options(parser: argparse.ArgumentParser) -> None:
    """Add cli options"""
    parser.add_argument("-V", "--version", action="version", version=VERSION,
                        help="Print the version number")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print verbose debug statements")
    parser.add_argument("-l", "--list", action="store_true",
                        help="List the currently attached DFU capable USB devices")
    parser.add_argument("-e", "--detach", action="store_true",
                        help="Detach the currently attached DFU capable USB devices")
    parser.add_argument("-d", "--device", metavar="<vendorID>:<productID>",
                        help="Specify Vendor/Product ID of DFU device")
    parser.add_argument("-a", "--alt", metavar="<alt>",
                        help="Specify the Altsetting of the DFU Interface by number or name")
    parser.add_argument("-t", "--transfer-size", metavar="<size>", type=lambda s: int(s, 0),
                        help="Specify the number of bytes per USB Transfer")
    parser.add_argument("-U", "--upload", metavar="<file>",
                        help="Read firmware from device into <file>")
    parser.add_argument("-D", "--download", metavar="<file>",
                        help="Write firmware from <file> into device")
    parser.add_argument("-R", "--reset", action="store_true",
                        help="Issue USB Reset signalling once we're finished")
    parser.add_argument("-s", "--dfuse-address", metavar="<address>[:<length>]",
                        help="ST DfuSe mode, specify target address "
                             "for raw file download or upload, "
                             "and optionally the upload length")
    parser.add_argument("--skip-erase", action="store_true",
                        help="DfuSe mode, do not erase sectors before download")
    parser.add_argument("--timeout", metavar="<ms>", type=int, default=DEFAULT_TIMEOUT,
                        help="USB control transfer timeout in milliseconds")
    parser.add_argument("--progress", choices=sorted(BACKENDS), default="rich",
                        help="Progress bar style")


def _parse_mode(args: argparse.Namespace) -> Mode:
    modes = [mode for mode, wanted in ((Mode.LIST, args.list),
                                       (Mode.DETACH, args.detach),
                                       (Mode.UPLOAD, args.upload),
                                       (Mode.DOWNLOAD, args.download)) if wanted]
    if len(modes) > 1:
        raise UsageError("Only one of -l, -e, -U and -D can be used at a time")
    return modes[0] if modes else Mode.NONE


def list_devices(candidates) -> None:
    """Print DFU interfaces, fixing up names the platform did not report"""
    by_device = {}
    for candidate in candidates:
        by_device.setdefault(candidate.transport.identity, []).append(candidate)
    for device_candidates in by_device.values():
        session = dfu_util.open_session(device_candidates[0], dfuse=False)
        dfu_util.list_dfu_interfaces(
            dfu_util.fix_interface_names(session, device_candidates)
        )


def _select_candidate(candidates, alt: Optional[str]) -> dfu.InterfaceCandidate:
    if not candidates:
        raise Errx("No DFU capable USB device found", SysExit.EX_UNAVAILABLE)
    devices = {c.transport.identity for c in candidates}
    if len(devices) > 1:
        # After a bus reset the target gets a new address,
        # so we cannot tell identical devices apart
        raise UsageError("More than one DFU capable USB device found, "
                         "you might try `--list' and then disconnect all but one device")
    selected = dfu_util.select_candidates(candidates, alt)
    if not selected:
        raise UsageError(f"No DFU interface matches alternate setting \"{alt}\"")
    if len(selected) > 1:
        logger.warning(f"Multiple alternate settings found, using alt={selected[0].alternate} "
                       f"name=\"{selected[0].name}\"")
    return selected[0]


def _prepare_dfu_mode(session: DeviceSession) -> None:
    status = session.get_status()
    logger.info(f"Determining device status: {status}")
    if status.bState == State.APP_IDLE or status.bState == State.APP_DETACH:
        raise UsageError("Device still in run-time mode, detach it first with -e")
    if status.bState == State.DFU_ERROR:
        logger.info("Clearing status")
        session.clear_status()
    elif status.bState in (State.DFU_DOWNLOAD_IDLE, State.DFU_UPLOAD_IDLE):
        logger.info("Aborting previous incomplete transfer")
        session.abort_to_idle()


def _detach(session: DeviceSession, func_dfu) -> None:
    logger.info("Sending DFU detach request...")
    session.detach()
    if func_dfu is None or not func_dfu.bmAttributes & BmAttributes.USB_DFU_WILL_DETACH:
        logger.info("Resetting USB to switch into DFU mode")
        try:
            session.reset()
        except DeviceGoneError as e:
            logger.debug(f"Ignored reset error: {e}")
    try:
        session.wait_for_disconnect(DETACH_DISCONNECT_TIMEOUT)
    except DisconnectTimeoutError as e:
        logger.warning(f"Device did not disconnect: {e}")


def _upload(session: DeviceSession, transfer_size: int,
            upload_length: Optional[int], filename: str) -> None:
    try:
        file = open(filename, "xb")  # pylint: disable=consider-using-with
    except OSError as e:
        raise Errx(f"Cannot open file {filename} for writing: {e}", SysExit.EX_CANTCREAT) from e

    with file:
        if session.is_dfuse:
            data = dfuse.do_upload(session, transfer_size, upload_length)
        else:
            data = dfu_load.do_upload(session, transfer_size, upload_length)
        try:
            file.write(data)
        except OSError as e:
            raise Errx(f"Error writing {filename}: {e}", SysExit.EX_IOERR) from e
    logger.info(f"Wrote {len(data)} bytes to {filename}")


def _download(session: DeviceSession, transfer_size: int, func_dfu,
              filename: str, skip_erase: bool) -> None:
    try:
        with open(filename, "rb") as file:
            data = file.read()
    except OSError as e:
        raise NoInputError(f"Cannot open file {filename} for reading: {e}") from e
    logger.info(f"Read {len(data)} bytes from {filename}")

    manifestation_tolerant = func_dfu.manifestation_tolerant if func_dfu else True
    if session.is_dfuse:
        dfuse.do_download(session, transfer_size, data,
                          manifestation_tolerant, skip_erase)
    else:
        dfu_load.do_download(session, transfer_size, data, manifestation_tolerant)


@except_and_safe_exit(logger)
def main(argv=None) -> None:
    """Cli entry point"""

    parser = argparse.ArgumentParser(
        prog="pydfuhost",
        description="USB DFU and ST DfuSe firmware upload/download tool"
    )
    add_cli_options(parser)
    args = parser.parse_args(argv)

    if args.verbose:
        set_verbose()

    mode = _parse_mode(args)
    if mode == Mode.NONE:
        parser.print_help()
        raise UsageError("You need to specify one of -l, -e, -D or -U")

    try:
        dfu.init(args.timeout)
    except ValueError as e:
        raise UsageError(str(e)) from e

    vendor, product = parse_vid_pid(args.device) if args.device else (None, None)
    if vendor is not None or product is not None:
        logger.info(f"Filter on VID = {vendor if vendor is None else f'0x{vendor:04X}'} "
                    f"PID = {product if product is None else f'0x{product:04X}'}")

    upload_length = None
    start_address = None
    if args.dfuse_address:
        start_address, upload_length = parse_dfuse_address(args.dfuse_address)

    candidates = dfu_util.find_all_dfu_interfaces(vendor, product)

    if mode == Mode.LIST:
        list_devices(candidates)
        return

    candidate = _select_candidate(candidates, args.alt)
    logger.info(f"Opening DFU capable USB device {candidate.transport!r}")

    with Progress(BACKENDS[args.progress]) as progress:
        session = dfu_util.open_session(
            candidate,
            dfuse=True if args.dfuse_address else None,
            on_progress=progress,
            on_phase=progress.phase,
        )
        with session:
            try:
                func_dfu = dfu_util.get_functional_descriptor(session)
            except Errx as e:
                logger.warning(f"Cannot read DFU functional descriptor: {e}")
                func_dfu = None
            if func_dfu is None:
                logger.warning("No DFU functional descriptor found")
            else:
                logger.debug(repr(func_dfu))

            if mode == Mode.DETACH:
                _detach(session, func_dfu)
                return

            if session.is_dfuse:
                session.start_address = start_address
                if session.memory_info:
                    for segment in session.memory_info:
                        logger.debug(f"{session.memory_info.name}: {segment}")

            transfer_size = args.transfer_size
            if not transfer_size:
                if not func_dfu or not func_dfu.wTransferSize:
                    raise UsageError("Transfer size must be specified with -t")
                transfer_size = func_dfu.wTransferSize
            logger.info(f"Transfer size = {transfer_size}")

            _prepare_dfu_mode(session)

            if mode == Mode.UPLOAD:
                _upload(session, transfer_size, upload_length, args.upload)
            else:
                _download(session, transfer_size, func_dfu, args.download, args.skip_erase)

            if args.reset and (session.is_dfuse or mode == Mode.UPLOAD):
                logger.info("Resetting USB...")
                try:
                    session.reset()
                except DeviceGoneError as e:
                    logger.debug(f"Ignored reset error: {e}")

    logger.info("Done!")


if __name__ == '__main__':
    main()
