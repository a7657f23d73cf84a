"""
Protocol definitions for USB DFU

This ought to be compliant to the USB DFU Spec 1.1 as available from
https://www.usb.org/sites/default/files/DFU_1.1.pdf
and to ST's DfuSe 1.1a extension (Document UM0391)

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
from enum import IntEnum, IntFlag

# Standard descriptor types (USB 2.0, Table 9-5)
USB_DT_DEVICE = 0x01
USB_DT_CONFIG = 0x02
USB_DT_STRING = 0x03
USB_DT_INTERFACE = 0x04
USB_DT_DFU = 0x21

USB_DT_DEVICE_SIZE = 18
USB_DT_CONFIG_SIZE = 9
USB_DT_INTERFACE_SIZE = 9
USB_DT_DFU_SIZE = 9

# Standard request (USB 2.0, Table 9-4)
USB_REQ_GET_DESCRIPTOR = 0x06

# DFU interface class triple (DFU Rev 1.1, Section 4.2.3 / 4.1.1)
USB_CLASS_APP_SPECIFIC = 0xfe
USB_SUBCLASS_DFU = 0x01
USB_PROTOCOL_DFU_RUNTIME = 0x01
USB_PROTOCOL_DFU_MODE = 0x02

LANGID_EN_US = 0x0409


class BmAttributes(IntFlag):
    """Enum of DFU functional descriptor's bmAttributes"""
    USB_DFU_CAN_DOWNLOAD = 1 << 0
    USB_DFU_CAN_UPLOAD = 1 << 1
    USB_DFU_MANIFEST_TOL = 1 << 2
    USB_DFU_WILL_DETACH = 1 << 3


# DFU class-specific requests (Section 3, DFU Rev 1.1)
class Request(IntEnum):
    """Dfu requests"""
    DETACH = 0x00
    DNLOAD = 0x01
    UPLOAD = 0x02
    GETSTATUS = 0x03
    CLRSTATUS = 0x04
    GETSTATE = 0x05
    ABORT = 0x06


__all__ = (
    'USB_DT_DEVICE',
    'USB_DT_CONFIG',
    'USB_DT_STRING',
    'USB_DT_INTERFACE',
    'USB_DT_DFU',
    'USB_DT_DEVICE_SIZE',
    'USB_DT_CONFIG_SIZE',
    'USB_DT_INTERFACE_SIZE',
    'USB_DT_DFU_SIZE',
    'USB_REQ_GET_DESCRIPTOR',
    'USB_CLASS_APP_SPECIFIC',
    'USB_SUBCLASS_DFU',
    'USB_PROTOCOL_DFU_RUNTIME',
    'USB_PROTOCOL_DFU_MODE',
    'LANGID_EN_US',
    'BmAttributes',
    'Request',
)
