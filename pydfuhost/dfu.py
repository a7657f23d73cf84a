"""
Low-level DFU communication routines
DFU class requests, status polling and the device session holding them together.

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
import threading
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, Optional

from pydfuhost import transport as _transport
from pydfuhost.descriptors import (parse_configuration_descriptor,
                                   decode_string_descriptor, DeviceDescriptor,
                                   InterfaceDescriptor)
from pydfuhost.dfuse_mem import MemoryInfo, parse_memory_layout
from pydfuhost.exceptions import (Errx, ProtocolError, TransportError,
                                  DisconnectTimeoutError)
from pydfuhost.logger import logger
from pydfuhost.portable import milli_sleep
from pydfuhost.transport import (Transport, TransferResult, TransferStatus,
                                 Direction, RequestType, Recipient)
from pydfuhost.usb_dfu import (Request, USB_REQ_GET_DESCRIPTOR, USB_DT_DEVICE,
                               USB_DT_CONFIG, USB_DT_STRING, USB_DT_DEVICE_SIZE,
                               LANGID_EN_US)

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])


class State(IntEnum):
    """Dfu states"""
    APP_IDLE = 0x00
    APP_DETACH = 0x01
    DFU_IDLE = 0x02
    DFU_DOWNLOAD_SYNC = 0x03
    DFU_DOWNLOAD_BUSY = 0x04
    DFU_DOWNLOAD_IDLE = 0x05
    DFU_MANIFEST_SYNC = 0x06
    DFU_MANIFEST = 0x07
    DFU_MANIFEST_WAIT_RESET = 0x08
    DFU_UPLOAD_IDLE = 0x09
    DFU_ERROR = 0x0a

    def to_string(self):
        """
        :return: State.self name by State Enum
        """
        return state_to_string(self)


class Status(IntEnum):
    """Dfu statuses"""
    OK = 0x00
    ERROR_TARGET = 0x01
    ERROR_FILE = 0x02
    ERROR_WRITE = 0x03
    ERROR_ERASE = 0x04
    ERROR_CHECK_ERASED = 0x05
    ERROR_PROG = 0x06
    ERROR_VERIFY = 0x07
    ERROR_ADDRESS = 0x08
    ERROR_NOTDONE = 0x09
    ERROR_FIRMWARE = 0x0a
    ERROR_VENDOR = 0x0b
    ERROR_USBR = 0x0c
    ERROR_POR = 0x0d
    ERROR_UNKNOWN = 0x0e
    ERROR_STALLEDPKT = 0x0f

    def to_string(self):
        """
        :return: Status.self name by Status Enum
        """
        return status_to_string(self)


class ProtocolVariant(Enum):
    """Which protocol flavour a session speaks"""
    GENERIC = 'dfu'
    DFUSE = 'dfuse'


def _coerce(enum_cls, value: int):
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass
class StatusRetVal:
    """
    Converts GETSTATUS result bytes to applicable dataclass
    This is based off of DFU_GETSTATUS (DFU 1.1, Section 6.1.2)
    """
    # pylint: disable=invalid-name
    bStatus: Status = Status.ERROR_UNKNOWN
    bwPollTimeout: int = 0
    bState: State = State.DFU_ERROR
    iString: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'StatusRetVal':
        """Creates StatusRetVal instance from a 6 bytes sequence"""
        if len(data) < 6:
            raise ProtocolError(f"GETSTATUS returned {len(data)} bytes, expected 6")
        return cls(
            _coerce(Status, data[0]),
            int.from_bytes(data[1:4], 'little'),
            _coerce(State, data[4]),
            data[5],
        )

    def __bytes__(self) -> bytes:
        return (
            bytes([self.bStatus])
            + self.bwPollTimeout.to_bytes(3, 'little')
            + bytes([self.bState, self.iString])
        )

    def __str__(self):
        return (f"state({int(self.bState)}) = {state_to_string(self.bState)}, "
                f"status({int(self.bStatus)}) = {status_to_string(self.bStatus)}")


@dataclass(frozen=True)
class InterfaceCandidate:
    """A DFU capable configuration/interface/alternate setting of a device"""
    configuration: int
    interface: int
    alternate: int
    name: Optional[str] = None
    transport: Optional[Transport] = field(default=None, compare=False, repr=False)


ProgressCallback = Callable[[int, Optional[int]], None]
PhaseCallback = Callable[[str], None]


def init(timeout: int) -> None:
    """
    Initiate the library with specified control transfer timeout
    :param timeout in milliseconds
    :return: None
    """
    if timeout <= 0:
        raise ValueError(f"dfu_init: Invalid timeout value {timeout}")
    _transport.set_timeout(timeout)


# pylint: disable=too-many-instance-attributes,too-many-public-methods
class DeviceSession:
    """
    One open DFU interface of one device.

    All requests are sequential, the session never has two control
    transfers in flight. Use it as a context manager so the interface
    claim is released even if a transfer failed.
    """

    def __init__(self,
                 transport: Transport,
                 candidate: InterfaceCandidate,
                 variant: ProtocolVariant = ProtocolVariant.GENERIC,
                 memory_info: MemoryInfo = None,
                 sleep: Callable[[int], None] = milli_sleep,
                 on_progress: ProgressCallback = None,
                 on_phase: PhaseCallback = None):
        self.transport = transport
        self.candidate = candidate
        self.interface = candidate.interface
        self.variant = variant
        if (variant is ProtocolVariant.DFUSE
                and memory_info is None and candidate.name):
            memory_info = parse_memory_layout(candidate.name)
        self.memory_info = memory_info
        self.start_address: Optional[int] = None
        self.sleep = sleep
        self.on_progress = on_progress
        self.on_phase = on_phase
        self.disconnected = False

    def __repr__(self):
        return (f"DeviceSession({self.variant.value}, cfg={self.candidate.configuration}, "
                f"intf={self.interface}, alt={self.candidate.alternate}, "
                f"name={self.candidate.name!r})")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    @property
    def is_dfuse(self) -> bool:
        """True for sessions speaking ST's DfuSe extension"""
        return self.variant is ProtocolVariant.DFUSE

    def open(self) -> None:
        """Select configuration, claim the interface and select the alternate setting"""
        self.interface = self.candidate.interface
        self.transport.open(self.candidate.configuration,
                            self.interface,
                            self.candidate.alternate)
        self.disconnected = False

    def close(self) -> None:
        """Release the interface claim"""
        self.transport.close()

    def report_progress(self, done: int, total: Optional[int] = None) -> None:
        """Forward byte progress to the on_progress callback"""
        if total is None:
            _logger.debug(f"{done}")
        else:
            _logger.debug(f"{done}/{total}")
        if self.on_progress is not None:
            self.on_progress(done, total)

    def begin_phase(self, description: str) -> None:
        """Announce a long running phase: erase, download, upload, manifest"""
        _logger.info(description)
        if self.on_phase is not None:
            self.on_phase(description)

    # class requests

    def _check(self, result: TransferResult, request: Request, direction: Direction) -> None:
        if result.status is TransferStatus.STALL:
            self.transport.clear_halt(direction, self.interface)
            raise ProtocolError(f"{request.name} request stalled")
        if result.status is not TransferStatus.OK:
            raise ProtocolError(f"{request.name} request failed: {result.status.value}")

    def request_out(self, request: Request, data: bytes = None, value: int = 0) -> int:
        """
        Class specific OUT request to the DFU interface
        :return: bytes written
        """
        result = self.transport.control_transfer_out(
            RequestType.CLASS, Recipient.INTERFACE,
            request, value, self.interface, data
        )
        self._check(result, request, Direction.OUT)
        return result.bytes_written

    def request_in(self, request: Request, length: int, value: int = 0) -> bytes:
        """
        Class specific IN request to the DFU interface
        :return: received bytes
        """
        result = self.transport.control_transfer_in(
            RequestType.CLASS, Recipient.INTERFACE,
            request, value, self.interface, length
        )
        self._check(result, request, Direction.IN)
        return bytes(result.data)

    def detach(self, timeout: int = 1000) -> int:
        """
        DETACH Request (DFU Spec 1.1, Section 5.1)

        Asks a run-time device to switch to DFU mode. The device may drop off
        the bus right away, so no status is read back.
        :param timeout: the time in ms the device should wait for a USB reset
        """
        _logger.debug('DETACH...')
        return self.request_out(Request.DETACH, None, timeout)

    def download(self, data: bytes, transaction: int) -> int:
        """
        DNLOAD Request (DFU Spec 1.1, Section 6.1.1)
        :param data: payload, empty to signal the end of the transfer
        :param transaction: block number
        :return: bytes written
        """
        _logger.debug(f'DFU_DOWNLOAD block {transaction}, {len(data or b"")} bytes')
        return self.request_out(Request.DNLOAD, data, transaction)

    def upload(self, length: int, transaction: int) -> bytes:
        """
        UPLOAD Request (DFU Spec 1.1, Section 6.2)
        :param length: bytes requested
        :param transaction: block number
        :return: received bytes, fewer than requested on the last block
        """
        _logger.debug(f'UPLOAD block {transaction}, {length} bytes')
        return self.request_in(Request.UPLOAD, length, transaction)

    def get_status(self) -> StatusRetVal:
        """
        GETSTATUS Request (DFU Spec 1.1, Section 6.1.2)
        """
        try:
            data = self.request_in(Request.GETSTATUS, 6)
        except ProtocolError as e:
            raise ProtocolError(f"DFU GETSTATUS failed: {e}") from e
        status = StatusRetVal.from_bytes(data)
        _logger.debug(f'GET_STATUS {status}')
        return status

    def get_state(self) -> State:
        """
        GETSTATE Request (DFU Spec 1.1, Section 6.1.5)
        """
        try:
            data = self.request_in(Request.GETSTATE, 1)
        except ProtocolError as e:
            raise ProtocolError(f"DFU GETSTATE failed: {e}") from e
        if len(data) < 1:
            raise ProtocolError("DFU GETSTATE returned no data")
        return _coerce(State, data[0])

    def clear_status(self) -> int:
        """
        CLRSTATUS Request (DFU Spec 1.1, Section 6.1.3)
        """
        _logger.debug('CLEAR_STATUS...')
        return self.request_out(Request.CLRSTATUS)

    def abort(self) -> int:
        """
        ABORT Request (DFU Spec 1.1, Section 6.1.4)
        """
        _logger.debug('ABORT...')
        return self.request_out(Request.ABORT)

    def abort_to_idle(self) -> None:
        """Abort whatever is going on and make sure the device sits in dfuIDLE"""
        self.abort()
        state = self.get_state()
        if state == State.DFU_ERROR:
            self.clear_status()
            state = self.get_state()
        if state != State.DFU_IDLE:
            raise ProtocolError(f"Failed to reach idle state after abort: "
                                f"state {int(state)} = {state_to_string(state)}")

    def poll_until(self, state_predicate: Callable[[int], bool]) -> StatusRetVal:
        """
        Query the status until state_predicate(state) holds or the device enters
        dfuERROR, waiting the device requested bwPollTimeout between queries.
        dfuERROR is returned to the caller, not raised.
        """
        status = self.get_status()
        while not state_predicate(status.bState) and status.bState != State.DFU_ERROR:
            _logger.debug(f"Sleeping for {status.bwPollTimeout}ms")
            self.sleep(status.bwPollTimeout)
            status = self.get_status()
        return status

    def poll_until_idle(self, idle_state: State) -> StatusRetVal:
        """poll_until the state equals idle_state"""
        return self.poll_until(lambda state: state == idle_state)

    def reset(self) -> None:
        """USB reset of the device"""
        self.transport.reset()

    def wait_for_disconnect(self, timeout: int = 0) -> 'DeviceSession':
        """
        Block until the transport reports this device gone.
        :param timeout: milliseconds, 0 waits forever
        :raise DisconnectTimeoutError: the device still was there after timeout
        """
        identity = self.transport.identity
        gone = threading.Event()

        def on_disconnect(device_identity):
            if device_identity == identity:
                gone.set()

        self.transport.add_disconnect_listener(on_disconnect)
        try:
            if not gone.wait(timeout / 1000 if timeout > 0 else None):
                raise DisconnectTimeoutError(f"Disconnect timeout expired after {timeout}ms")
        finally:
            self.transport.remove_disconnect_listener(on_disconnect)
        self.disconnected = True
        return self

    # standard requests

    def _get_descriptor(self, value: int, index: int, length: int) -> bytes:
        result = self.transport.control_transfer_in(
            RequestType.STANDARD, Recipient.DEVICE,
            USB_REQ_GET_DESCRIPTOR, value, index, length
        )
        if result.status is not TransferStatus.OK:
            raise TransportError(f"GET_DESCRIPTOR 0x{value:04x} failed: {result.status.value}")
        return bytes(result.data)

    def read_device_descriptor(self) -> DeviceDescriptor:
        """Read and decode the device descriptor"""
        data = self._get_descriptor(USB_DT_DEVICE << 8, 0, USB_DT_DEVICE_SIZE)
        return DeviceDescriptor.from_bytes(data)

    def read_configuration_descriptor(self, index: int) -> bytes:
        """
        Read the full configuration descriptor set:
        the header first for wTotalLength, then everything
        """
        value = (USB_DT_CONFIG << 8) | index
        header = self._get_descriptor(value, 0, 4)
        if len(header) < 4:
            raise TransportError(f"Short configuration descriptor header: {len(header)} bytes")
        total_length = int.from_bytes(header[2:4], 'little')
        return self._get_descriptor(value, 0, total_length)

    def read_string_descriptor(self, index: int, lang_id: int = 0):
        """
        Read a string descriptor
        :return: list of LANGIDs for lang_id 0, otherwise the string
        """
        value = (USB_DT_STRING << 8) | index
        head = self._get_descriptor(value, lang_id, 1)
        if not head:
            raise TransportError(f"Failed to read string descriptor {index}")
        data = self._get_descriptor(value, lang_id, head[0])
        return decode_string_descriptor(data, lang_id)

    def read_interface_names(self) -> Dict[int, Dict[int, Dict[int, Optional[str]]]]:
        """
        Resolve alternate setting names from the raw configuration descriptors
        :return: {configuration value: {interface: {alternate: name}}}
        """
        num_configurations = self.read_device_descriptor().bNumConfigurations

        configs: Dict[int, Dict[int, Dict[int, int]]] = {}
        string_indices = set()
        for config_index in range(num_configurations):
            config = parse_configuration_descriptor(
                self.read_configuration_descriptor(config_index)
            )
            interfaces = configs.setdefault(config.bConfigurationValue, {})
            for desc in config.descriptors:
                if isinstance(desc, InterfaceDescriptor):
                    interfaces.setdefault(desc.bInterfaceNumber, {})[
                        desc.bAlternateSetting] = desc.iInterface
                    if desc.iInterface > 0:
                        string_indices.add(desc.iInterface)

        strings = {}
        for index in sorted(string_indices):
            try:
                strings[index] = self.read_string_descriptor(index, LANGID_EN_US)
            except Errx as e:
                _logger.warning(f"Cannot read interface name {index}: {e}")
                strings[index] = None

        return {
            config_value: {
                intf: {alt: strings.get(i_interface) for alt, i_interface in alts.items()}
                for intf, alts in interfaces.items()
            }
            for config_value, interfaces in configs.items()
        }


def state_to_string(state: int) -> Optional[str]:
    """
    :param state:
    :return: State name by State Enum
    """
    try:
        return _STATES_NAMES[State(state)]
    except (ValueError, KeyError):
        return None


def status_to_string(status: int) -> Optional[str]:
    """
    :param status:
    :return: Status description by Status Enum
    """
    try:
        return _DFU_STATUS_NAMES[Status(status)]
    except (ValueError, KeyError):
        return None


_STATES_NAMES = {
    State.APP_IDLE: 'appIDLE',
    State.APP_DETACH: 'appDETACH',
    State.DFU_IDLE: 'dfuIDLE',
    State.DFU_DOWNLOAD_SYNC: 'dfuDNLOAD-SYNC',
    State.DFU_DOWNLOAD_BUSY: 'dfuDNBUSY',
    State.DFU_DOWNLOAD_IDLE: 'dfuDNLOAD-IDLE',
    State.DFU_MANIFEST_SYNC: 'dfuMANIFEST-SYNC',
    State.DFU_MANIFEST: 'dfuMANIFEST',
    State.DFU_MANIFEST_WAIT_RESET: 'dfuMANIFEST-WAIT-RESET',
    State.DFU_UPLOAD_IDLE: 'dfuUPLOAD-IDLE',
    State.DFU_ERROR: 'dfuERROR',
}

_DFU_STATUS_NAMES = {
    Status.OK: "No error condition is present",
    Status.ERROR_TARGET: "File is not targeted for use by this device",
    Status.ERROR_FILE: "File is for this device but fails some vendor-specific test",
    Status.ERROR_WRITE: "Device is unable to write memory",
    Status.ERROR_ERASE: "Memory erase function failed",
    Status.ERROR_CHECK_ERASED: "Memory erase check failed",
    Status.ERROR_PROG: "Program memory function failed",
    Status.ERROR_VERIFY: "Programmed memory failed verification",
    Status.ERROR_ADDRESS: "Cannot program memory due to received address that is out of range",
    Status.ERROR_NOTDONE: "Received DNLOAD with wLength = 0, "
                          "but device does not think that it has all data yet",
    Status.ERROR_FIRMWARE: "Device's firmware is corrupt. "
                           "It cannot return to run-time (non-DFU) operations",
    Status.ERROR_VENDOR: "iString indicates a vendor specific error",
    Status.ERROR_USBR: "Device detected unexpected USB reset signalling",
    Status.ERROR_POR: "Device detected unexpected power on reset",
    Status.ERROR_UNKNOWN: "Something went wrong, but the device does not know what it was",
    Status.ERROR_STALLEDPKT: "Device stalled an unexpected request"
}


__all__ = (
    "State",
    "Status",
    "StatusRetVal",
    "ProtocolVariant",
    "InterfaceCandidate",
    "DeviceSession",
    "state_to_string",
    "status_to_string",
    "init",
)
