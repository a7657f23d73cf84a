"""
USB transport adapter
The DFU engine talks to the bus only through the Transport contract below.
PyUsbTransport implements it on top of pyusb with the libusb1 backend.

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
import errno
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Hashable, List, Optional

import libusb_package
import usb.control
import usb.core
import usb.util
from usb.backend import libusb1
from usb.backend.libusb1 import (LIBUSB_ERROR_PIPE, LIBUSB_ERROR_NO_DEVICE,
                                 LIBUSB_ERROR_NOT_FOUND, LIBUSB_ERROR_OVERFLOW)

from pydfuhost.exceptions import TransportError, DeviceGoneError
from pydfuhost.logger import logger

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])

DEFAULT_TIMEOUT = 5000

# control transfer timeout in milliseconds, see dfu.init()
TIMEOUT: int = DEFAULT_TIMEOUT

# how often the disconnect watcher checks the bus, in milliseconds
DISCONNECT_POLL_INTERVAL = 100


class Direction(str, Enum):
    """Data stage direction of a control request"""
    IN = 'in'
    OUT = 'out'


class RequestType(IntEnum):
    """bmRequestType type bits"""
    STANDARD = usb.util.CTRL_TYPE_STANDARD
    CLASS = usb.util.CTRL_TYPE_CLASS
    VENDOR = usb.util.CTRL_TYPE_VENDOR


class Recipient(IntEnum):
    """bmRequestType recipient bits"""
    DEVICE = usb.util.CTRL_RECIPIENT_DEVICE
    INTERFACE = usb.util.CTRL_RECIPIENT_INTERFACE
    ENDPOINT = usb.util.CTRL_RECIPIENT_ENDPOINT


class TransferStatus(Enum):
    """Outcome of a control transfer that reached the device"""
    OK = 'ok'
    STALL = 'stall'
    OTHER = 'other'


@dataclass
class TransferResult:
    """control transfer result"""
    status: TransferStatus = TransferStatus.OK
    data: bytes = b''
    bytes_written: int = 0


@dataclass(frozen=True)
class UsbAltSetting:
    """One alternate setting as seen by enumeration"""
    alternate: int
    interface_class: int
    interface_subclass: int
    interface_protocol: int
    name: Optional[str] = None


@dataclass
class UsbInterface:
    """Interface number with its alternate settings"""
    number: int
    alternates: List[UsbAltSetting] = field(default_factory=list)


@dataclass
class UsbConfiguration:
    """Configuration value with its interfaces"""
    value: int
    interfaces: List[UsbInterface] = field(default_factory=list)


DisconnectCallback = Callable[[Hashable], None]


class Transport(ABC):
    """
    What the DFU engine needs from a USB access library.
    Failures that never reached the device are raised as TransportError,
    DeviceGoneError when the device left the bus.
    """

    @property
    @abstractmethod
    def identity(self) -> Hashable:
        """Value identifying the physical device, passed to disconnect listeners"""

    @abstractmethod
    def open(self, configuration: int, interface: int, alternate: int) -> None:
        """Select configuration, claim interface, select alternate setting"""

    @abstractmethod
    def close(self) -> None:
        """Release the device, tolerating a device that is already gone"""

    @abstractmethod
    def control_transfer_out(self, request_type: RequestType, recipient: Recipient,
                             request: int, value: int, index: int,
                             data: Optional[bytes] = None) -> TransferResult:
        """Host to device control transfer"""

    @abstractmethod
    def control_transfer_in(self, request_type: RequestType, recipient: Recipient,
                            request: int, value: int, index: int,
                            length: int) -> TransferResult:
        """Device to host control transfer"""

    @abstractmethod
    def clear_halt(self, direction: Direction, interface: int) -> None:
        """Clear a stall condition"""

    @abstractmethod
    def reset(self) -> None:
        """Issue a USB port reset"""

    @abstractmethod
    def configurations(self) -> List[UsbConfiguration]:
        """Enumeration tree of the device"""

    @abstractmethod
    def add_disconnect_listener(self, callback: DisconnectCallback) -> None:
        """Register callback(identity) fired when a device leaves the bus"""

    @abstractmethod
    def remove_disconnect_listener(self, callback: DisconnectCallback) -> None:
        """Unregister a callback, unknown callbacks are ignored"""


def set_timeout(timeout: int) -> None:
    """Sets the control transfer timeout in milliseconds"""
    global TIMEOUT  # pylint: disable=global-statement
    TIMEOUT = timeout


def get_backend():
    """libusb1 backend with the library shipped by libusb-package"""
    return libusb1.get_backend(find_library=libusb_package.find_library)


def _is_stall(e: usb.core.USBError) -> bool:
    return e.backend_error_code == LIBUSB_ERROR_PIPE or e.errno == errno.EPIPE


def _is_gone(e: usb.core.USBError) -> bool:
    return (e.backend_error_code in (LIBUSB_ERROR_NO_DEVICE, LIBUSB_ERROR_NOT_FOUND)
            or e.errno in (errno.ENODEV, errno.ENOENT))


def _translate(e: usb.core.USBError, what: str) -> TransportError:
    if _is_gone(e):
        return DeviceGoneError(f"{what}: device unavailable ({e})")
    return TransportError(f"{what}: {e}")


class PyUsbTransport(Transport):
    """Transport over a pyusb usb.core.Device"""

    def __init__(self, dev: usb.core.Device, backend=None):
        self.dev = dev
        self.backend = backend
        self._claimed = set()
        self._alternates = {}
        self._listeners: List[DisconnectCallback] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def __repr__(self):
        return (f"PyUsbTransport({self.dev.idVendor:04x}:{self.dev.idProduct:04x}, "
                f"bus={self.dev.bus}, address={self.dev.address})")

    @property
    def identity(self) -> Hashable:
        return self.dev.bus, self.dev.address, self.dev.idVendor, self.dev.idProduct

    def open(self, configuration: int, interface: int, alternate: int) -> None:
        """
        Configuration and alternate setting are only selected when they differ
        from what the device reports, claimed interfaces are claimed once
        """
        try:
            try:
                current = self.dev.get_active_configuration().bConfigurationValue
            except usb.core.USBError as e:
                if _is_gone(e):
                    raise
                current = None
            if current != configuration:
                _logger.debug(f"Setting Configuration {configuration}...")
                self.dev.set_configuration(configuration)
                self._alternates.clear()

            if interface not in self._claimed:
                _logger.debug(f"Claiming USB DFU Interface {interface}...")
                usb.util.claim_interface(self.dev, interface)
                self._claimed.add(interface)

            if interface not in self._alternates:
                self._alternates[interface] = self._current_alternate(interface)
            if self._alternates[interface] != alternate:
                _logger.debug(f"Setting Alternate Interface #{alternate}...")
                self.dev.set_interface_altsetting(interface, alternate)
                self._alternates[interface] = alternate
        except usb.core.USBError as e:
            raise _translate(e, "Cannot open DFU interface") from e

    def _current_alternate(self, interface: int) -> Optional[int]:
        try:
            return usb.control.get_interface(self.dev, interface)
        except usb.core.USBError as e:
            if _is_gone(e):
                raise
            _logger.debug(f"GET_INTERFACE not supported: {e}")
            return None

    def close(self) -> None:
        try:
            for interface in sorted(self._claimed):
                usb.util.release_interface(self.dev, interface)
        except usb.core.USBError as e:
            if not _is_gone(e):
                raise _translate(e, "Cannot release interface") from e
            _logger.debug(f"Device already gone on close: {e}")
        finally:
            self._claimed.clear()
            self._alternates.clear()
            usb.util.dispose_resources(self.dev)

    def _ctrl_transfer(self, direction: int, request_type: RequestType,
                       recipient: Recipient, request: int, value: int,
                       index: int, data_or_length) -> TransferResult:
        try:
            result = self.dev.ctrl_transfer(
                bmRequestType=direction | request_type | recipient,
                bRequest=request,
                wValue=value,
                wIndex=index,
                data_or_wLength=data_or_length,
                timeout=TIMEOUT,
            )
        except usb.core.USBError as e:
            if _is_stall(e):
                return TransferResult(TransferStatus.STALL)
            if e.backend_error_code == LIBUSB_ERROR_OVERFLOW:
                return TransferResult(TransferStatus.OTHER)
            raise _translate(e, f"Control request 0x{request:02x} failed") from e
        if direction == usb.util.CTRL_IN:
            return TransferResult(data=result.tobytes())
        return TransferResult(bytes_written=result)

    def control_transfer_out(self, request_type: RequestType, recipient: Recipient,
                             request: int, value: int, index: int,
                             data: Optional[bytes] = None) -> TransferResult:
        return self._ctrl_transfer(usb.util.CTRL_OUT, request_type, recipient,
                                   request, value, index, data or None)

    def control_transfer_in(self, request_type: RequestType, recipient: Recipient,
                            request: int, value: int, index: int,
                            length: int) -> TransferResult:
        return self._ctrl_transfer(usb.util.CTRL_IN, request_type, recipient,
                                   request, value, index, length)

    def clear_halt(self, direction: Direction, interface: int) -> None:
        _logger.debug(f"Clearing {direction.value} halt on interface {interface}")
        try:
            self.dev.clear_halt(usb.util.ENDPOINT_IN if direction == Direction.IN
                                else usb.util.ENDPOINT_OUT)
        except usb.core.USBError as e:
            raise _translate(e, "Cannot clear halt") from e

    def reset(self) -> None:
        try:
            self.dev.reset()
        except usb.core.USBError as e:
            raise _translate(e, "Unable to reset the device") from e

    def configurations(self) -> List[UsbConfiguration]:
        configs = []
        for cfg in self.dev.configurations():
            config = UsbConfiguration(cfg.bConfigurationValue)
            interfaces = {}
            for intf in cfg:
                if intf.bInterfaceNumber not in interfaces:
                    interfaces[intf.bInterfaceNumber] = UsbInterface(intf.bInterfaceNumber)
                    config.interfaces.append(interfaces[intf.bInterfaceNumber])
                interfaces[intf.bInterfaceNumber].alternates.append(UsbAltSetting(
                    alternate=intf.bAlternateSetting,
                    interface_class=intf.bInterfaceClass,
                    interface_subclass=intf.bInterfaceSubClass,
                    interface_protocol=intf.bInterfaceProtocol,
                    name=self._get_string(intf.iInterface),
                ))
            configs.append(config)
        return configs

    def _get_string(self, index: int) -> Optional[str]:
        if not index:
            return None
        try:
            return usb.util.get_string(self.dev, index)
        except (usb.core.USBError, ValueError) as e:
            _logger.debug(f"Cannot read string descriptor {index}: {e}")
            return None

    def add_disconnect_listener(self, callback: DisconnectCallback) -> None:
        with self._lock:
            self._listeners.append(callback)
            # a watcher told to stop may still be finishing a bus scan
            if (self._watcher is None or not self._watcher.is_alive()
                    or self._stop.is_set()):
                self._stop = threading.Event()
                self._watcher = threading.Thread(
                    target=self._watch, args=(self._stop,),
                    name=f"{self!r} watcher", daemon=True
                )
                self._watcher.start()

    def remove_disconnect_listener(self, callback: DisconnectCallback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
            if not self._listeners:
                self._stop.set()

    def _is_present(self) -> bool:
        bus, address = self.dev.bus, self.dev.address
        return usb.core.find(
            backend=self.backend,
            custom_match=lambda d: d.bus == bus and d.address == address
        ) is not None

    def _watch(self, stop: threading.Event) -> None:
        while not stop.wait(DISCONNECT_POLL_INTERVAL / 1000):
            if not self._is_present():
                with self._lock:
                    if stop.is_set():
                        return
                    listeners = list(self._listeners)
                _logger.debug(f"{self!r} disconnected")
                for callback in listeners:
                    callback(self.identity)
                return


def find_devices(vendor: int = None, product: int = None, backend=None) -> List[PyUsbTransport]:
    """
    Enumerate attached USB devices
    :param vendor: optional VID filter
    :param product: optional PID filter
    :param backend: pyusb backend, libusb-package's libusb1 by default
    """
    if backend is None:
        backend = get_backend()
    id_filter = {}
    if vendor is not None:
        id_filter["idVendor"] = vendor
    if product is not None:
        id_filter["idProduct"] = product
    try:
        devices = list(usb.core.find(find_all=True, backend=backend, **id_filter))
    except usb.core.USBError as e:
        raise TransportError(f"Cannot enumerate USB devices: {e}") from e
    return [PyUsbTransport(dev, backend) for dev in devices]


__all__ = (
    'Direction',
    'RequestType',
    'Recipient',
    'TransferStatus',
    'TransferResult',
    'UsbAltSetting',
    'UsbInterface',
    'UsbConfiguration',
    'Transport',
    'PyUsbTransport',
    'set_timeout',
    'get_backend',
    'find_devices',
    'TIMEOUT',
    'DEFAULT_TIMEOUT',
)
