"""
USB descriptor parsing
Decodes raw device, configuration, interface and DFU functional descriptors
as laid out by USB 2.0 (Chapter 9) and DFU 1.1 (Section 4.1.3)

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
import struct
from dataclasses import dataclass, field
from typing import List, Union

from pydfuhost.exceptions import FormatError
from pydfuhost.logger import logger
from pydfuhost.usb_dfu import (BmAttributes, USB_DT_DFU, USB_DT_INTERFACE,
                               USB_CLASS_APP_SPECIFIC, USB_SUBCLASS_DFU,
                               USB_DT_DEVICE_SIZE, USB_DT_CONFIG_SIZE,
                               USB_DT_INTERFACE_SIZE, USB_DT_DFU_SIZE)

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])

_DEVICE_FMT = '<BBHBBBBHHHBBBB'
_CONFIG_FMT = '<BBHBBBBB'
_INTERFACE_FMT = '<BBBBBBBBB'
_FUNC_FMT = '<BBBHHH'
_FUNC_DFU10_FMT = '<BBBHH'


def _unpack(fmt: str, data: bytes, what: str) -> tuple:
    size = struct.calcsize(fmt)
    if len(data) < size:
        raise FormatError(f"{what} descriptor too short: "
                          f"{len(data)} bytes, expected {size}")
    return struct.unpack(fmt, bytes(data[:size]))


# pylint: disable=invalid-name
@dataclass
class Descriptor:
    """Generic descriptor node, keeps the raw bytes including the header"""
    bLength: int = 0
    bDescriptorType: int = 0
    data: bytes = b''


@dataclass
class DeviceDescriptor:
    """Standard device descriptor (USB 2.0, Table 9-8)"""
    bLength: int = 0
    bDescriptorType: int = 0
    bcdUSB: int = 0
    bDeviceClass: int = 0
    bDeviceSubClass: int = 0
    bDeviceProtocol: int = 0
    bMaxPacketSize0: int = 0
    idVendor: int = 0
    idProduct: int = 0
    bcdDevice: int = 0
    iManufacturer: int = 0
    iProduct: int = 0
    iSerialNumber: int = 0
    bNumConfigurations: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> 'DeviceDescriptor':
        """parse bytes to a DeviceDescriptor"""
        return cls(*_unpack(_DEVICE_FMT, data, "Device"))


@dataclass
class FuncDescriptor:
    """DFU functional descriptor (DFU 1.1, Table 4.2)"""
    bLength: int = 0
    bDescriptorType: int = 0
    bmAttributes: BmAttributes = BmAttributes(0)
    wDetachTimeOut: int = 0
    wTransferSize: int = 0
    bcdDFUVersion: int = 0

    def __repr__(self) -> str:
        return (f"FuncDescriptor("
                f"bLength={self.bLength}, "
                f"bDescriptorType={self.bDescriptorType}, "
                f"bmAttributes={self.bmAttributes!r}, "
                f"wDetachTimeOut={self.wDetachTimeOut}, "
                f"wTransferSize={self.wTransferSize}, "
                f"bcdDFUVersion=0x{self.bcdDFUVersion:04x})")

    @property
    def manifestation_tolerant(self) -> bool:
        """bitManifestationTolerant"""
        return bool(self.bmAttributes & BmAttributes.USB_DFU_MANIFEST_TOL)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'FuncDescriptor':
        """parse bytes to a FuncDescriptor"""
        if 7 <= len(data) < USB_DT_DFU_SIZE:
            # DFU 1.0 descriptors end before bcdDFUVersion
            _logger.debug("Deducing device DFU version from functional descriptor length")
            fields = _unpack(_FUNC_DFU10_FMT, data, "DFU functional") + (0x0100,)
        else:
            fields = _unpack(_FUNC_FMT, data, "DFU functional")
        b_length, b_type, attributes, detach, xfer, version = fields
        return cls(b_length, b_type, BmAttributes(attributes), detach, xfer, version)


@dataclass
class InterfaceDescriptor:
    """Standard interface descriptor (USB 2.0, Table 9-12)"""
    bLength: int = 0
    bDescriptorType: int = 0
    bInterfaceNumber: int = 0
    bAlternateSetting: int = 0
    bNumEndpoints: int = 0
    bInterfaceClass: int = 0
    bInterfaceSubClass: int = 0
    bInterfaceProtocol: int = 0
    iInterface: int = 0
    descriptors: List[Union[Descriptor, FuncDescriptor]] = field(default_factory=list)

    @property
    def is_dfu(self) -> bool:
        """True for the DFU class/subclass pair, any protocol"""
        return (self.bInterfaceClass == USB_CLASS_APP_SPECIFIC
                and self.bInterfaceSubClass == USB_SUBCLASS_DFU)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'InterfaceDescriptor':
        """parse bytes to an InterfaceDescriptor"""
        return cls(*_unpack(_INTERFACE_FMT, data, "Interface"))


AnyDescriptor = Union[Descriptor, FuncDescriptor, InterfaceDescriptor]


@dataclass
class ConfigurationDescriptor:
    """Standard configuration descriptor (USB 2.0, Table 9-10) with its sub descriptors"""
    bLength: int = 0
    bDescriptorType: int = 0
    wTotalLength: int = 0
    bNumInterfaces: int = 0
    bConfigurationValue: int = 0
    iConfiguration: int = 0
    bmAttributes: int = 0
    bMaxPower: int = 0
    descriptors: List[AnyDescriptor] = field(default_factory=list)

    @property
    def interfaces(self) -> List[InterfaceDescriptor]:
        """Interface descriptors in byte order"""
        return [d for d in self.descriptors if isinstance(d, InterfaceDescriptor)]

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ConfigurationDescriptor':
        """parse the full configuration descriptor set"""
        config = cls(*_unpack(_CONFIG_FMT, data, "Configuration"))
        config.descriptors = parse_sub_descriptors(data[USB_DT_CONFIG_SIZE:])
        return config


def parse_device_descriptor(data: bytes) -> DeviceDescriptor:
    """Decode an 18 byte device descriptor"""
    if len(data) < USB_DT_DEVICE_SIZE:
        raise FormatError(f"Device descriptor too short: {len(data)} bytes")
    return DeviceDescriptor.from_bytes(data)


def parse_configuration_descriptor(data: bytes) -> ConfigurationDescriptor:
    """Decode the 9 byte configuration header and everything nested after it"""
    return ConfigurationDescriptor.from_bytes(data)


def parse_interface_descriptor(data: bytes) -> InterfaceDescriptor:
    """Decode a 9 byte interface descriptor, without children"""
    if len(data) < USB_DT_INTERFACE_SIZE:
        raise FormatError(f"Interface descriptor too short: {len(data)} bytes")
    return InterfaceDescriptor.from_bytes(data)


def parse_functional_descriptor(data: bytes) -> FuncDescriptor:
    """Decode a DFU functional descriptor"""
    return FuncDescriptor.from_bytes(data)


def parse_sub_descriptors(data: bytes) -> List[AnyDescriptor]:
    """
    Walk the descriptors following a configuration header.

    Every descriptor lands in the returned flat list. Each non-interface
    descriptor is also appended to the children of the interface descriptor
    preceding it. A DFU functional descriptor is decoded only while the
    current interface is a DFU interface, otherwise it stays generic.
    A tail shorter than 3 bytes is ignored.

    :param data: raw bytes after the configuration header
    :return: flat list of descriptors
    """
    data = bytes(data)
    descriptors: List[AnyDescriptor] = []
    curr_intf = None
    in_dfu_intf = False
    offset = 0

    while len(data) - offset > 2:
        b_length = data[offset]
        b_type = data[offset + 1]
        if b_length == 0:
            raise FormatError(f"Zero length descriptor at offset {offset}")
        desc_data = data[offset:offset + b_length]

        if b_type == USB_DT_INTERFACE:
            curr_intf = parse_interface_descriptor(desc_data)
            in_dfu_intf = curr_intf.is_dfu
            descriptors.append(curr_intf)
        elif in_dfu_intf and b_type == USB_DT_DFU:
            func_desc = parse_functional_descriptor(desc_data)
            descriptors.append(func_desc)
            curr_intf.descriptors.append(func_desc)
        else:
            desc = Descriptor(b_length, b_type, desc_data)
            descriptors.append(desc)
            if curr_intf is not None:
                curr_intf.descriptors.append(desc)

        offset += b_length

    return descriptors


def find_functional_descriptor(config: ConfigurationDescriptor,
                               interface: int = None,
                               alternate: int = None) -> [FuncDescriptor, None]:
    """
    First DFU functional descriptor of the configuration,
    optionally restricted to an interface number and alternate setting
    """
    for intf in config.interfaces:
        if interface is not None and intf.bInterfaceNumber != interface:
            continue
        if alternate is not None and intf.bAlternateSetting != alternate:
            continue
        for desc in intf.descriptors:
            if isinstance(desc, FuncDescriptor):
                return desc
    return None


def decode_string_descriptor(data: bytes, lang_id: int = 0) -> [str, List[int]]:
    """
    Decode a string descriptor.
    :param data: descriptor bytes, data[0] is bLength
    :param lang_id: 0 means the descriptor holds the supported LANGIDs
    :return: list of LANGIDs for lang_id 0, the decoded string otherwise
    """
    if len(data) < 2:
        raise FormatError(f"String descriptor too short: {len(data)} bytes")
    b_length = min(data[0], len(data))
    count = (b_length - 2) // 2
    words = list(struct.unpack(f'<{count}H', bytes(data[2:2 + count * 2])))
    if lang_id == 0:
        return words
    return ''.join(chr(w) for w in words)


__all__ = (
    'Descriptor',
    'DeviceDescriptor',
    'ConfigurationDescriptor',
    'InterfaceDescriptor',
    'FuncDescriptor',
    'parse_device_descriptor',
    'parse_configuration_descriptor',
    'parse_interface_descriptor',
    'parse_functional_descriptor',
    'parse_sub_descriptors',
    'find_functional_descriptor',
    'decode_string_descriptor',
)
