"""
Functions for detecting DFU USB entities

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
from dataclasses import replace
from typing import Iterable, List, Optional

from pydfuhost.descriptors import (FuncDescriptor, parse_configuration_descriptor,
                                   find_functional_descriptor)
from pydfuhost.dfu import DeviceSession, InterfaceCandidate, ProtocolVariant
from pydfuhost.exceptions import Errx, UsageError
from pydfuhost.logger import logger
from pydfuhost.transport import Transport, find_devices
from pydfuhost.usb_dfu import (USB_CLASS_APP_SPECIFIC, USB_SUBCLASS_DFU,
                               USB_PROTOCOL_DFU_RUNTIME, USB_PROTOCOL_DFU_MODE)

_logger = logger.getChild(__name__.rsplit('.', maxsplit=1)[-1])

_DFU_PROTOCOLS = (USB_PROTOCOL_DFU_RUNTIME, USB_PROTOCOL_DFU_MODE)


def is_dfuse_name(name: Optional[str]) -> bool:
    """True when an alternate setting name is a DfuSe memory descriptor"""
    return bool(name) and name.startswith('@')


def find_dfu_interfaces(transport: Transport) -> List[InterfaceCandidate]:
    """
    Walk the enumeration tree of one device
    and collect every DFU capable alternate setting
    """
    candidates = []
    for config in transport.configurations():
        for intf in config.interfaces:
            for alt in intf.alternates:
                if (alt.interface_class == USB_CLASS_APP_SPECIFIC
                        and alt.interface_subclass == USB_SUBCLASS_DFU
                        and alt.interface_protocol in _DFU_PROTOCOLS):
                    candidates.append(InterfaceCandidate(
                        configuration=config.value,
                        interface=intf.number,
                        alternate=alt.alternate,
                        name=alt.name,
                        transport=transport,
                    ))
    return candidates


def find_all_dfu_interfaces(vendor: int = None,
                            product: int = None,
                            backend=None) -> List[InterfaceCandidate]:
    """
    DFU interfaces of every attached device,
    optionally filtered by vendor and product id
    """
    matches = []
    for transport in find_devices(vendor, product, backend):
        try:
            matches.extend(find_dfu_interfaces(transport))
        except Errx as e:
            _logger.warning(f"Skipping {transport!r}: {e}")
    return matches


def fix_interface_names(session: DeviceSession,
                        candidates: Iterable[InterfaceCandidate]) -> List[InterfaceCandidate]:
    """
    Some platforms do not report alternate setting names,
    read them from the raw descriptors when any are missing
    """
    candidates = list(candidates)
    if all(c.name is not None for c in candidates):
        return candidates

    try:
        names = session.read_interface_names()
    except Errx as e:
        _logger.warning(f"Cannot read interface names: {e}")
        return candidates

    fixed = []
    for candidate in candidates:
        if candidate.name is None:
            name = (names.get(candidate.configuration, {})
                    .get(candidate.interface, {})
                    .get(candidate.alternate))
            candidate = replace(candidate, name=name)
        fixed.append(candidate)
    return fixed


def get_functional_descriptor(session: DeviceSession) -> Optional[FuncDescriptor]:
    """
    DFU functional descriptor of the session's configuration
    :return: FuncDescriptor or None if the device has none
    """
    num_configurations = session.read_device_descriptor().bNumConfigurations
    for index in range(num_configurations):
        config = parse_configuration_descriptor(
            session.read_configuration_descriptor(index)
        )
        if config.bConfigurationValue == session.candidate.configuration:
            return find_functional_descriptor(config, session.candidate.interface)
    return None


def select_candidates(candidates: Iterable[InterfaceCandidate],
                      alternate: str = None) -> List[InterfaceCandidate]:
    """
    Filter candidates by alternate setting number or alternate setting name
    """
    candidates = list(candidates)
    if alternate is None:
        return candidates
    try:
        number = int(alternate, 0)
    except ValueError:
        return [c for c in candidates if c.name == alternate]
    return [c for c in candidates if c.alternate == number]


def open_session(candidate: InterfaceCandidate,
                 dfuse: bool = None,
                 **kwargs) -> DeviceSession:
    """
    Build a DeviceSession for candidate, not yet opened.
    Speaks DfuSe when requested, or by default when the
    alternate setting name is a DfuSe memory descriptor
    :param candidate: InterfaceCandidate with a transport
    :param dfuse: force the protocol variant, None to detect it
    :param kwargs: passed to DeviceSession
    """
    if candidate.transport is None:
        raise UsageError(f"No transport for {candidate!r}")
    if dfuse is None:
        dfuse = is_dfuse_name(candidate.name)
    variant = ProtocolVariant.DFUSE if dfuse else ProtocolVariant.GENERIC
    _logger.debug(f"Opening {variant.value} session on {candidate!r}")
    return DeviceSession(candidate.transport, candidate, variant, **kwargs)


def print_dfu_if(candidate: InterfaceCandidate) -> None:
    """Print one DFU interface"""
    print(f"Found DFU: {candidate.transport!r}, "
          f"cfg={candidate.configuration}, intf={candidate.interface}, "
          f"alt={candidate.alternate}, name=\"{candidate.name or 'UNKNOWN'}\"")


def list_dfu_interfaces(candidates: Iterable[InterfaceCandidate]) -> None:
    """Print every DFU interface"""
    for candidate in candidates:
        print_dfu_if(candidate)


__all__ = (
    'is_dfuse_name',
    'find_dfu_interfaces',
    'find_all_dfu_interfaces',
    'fix_interface_names',
    'get_functional_descriptor',
    'select_candidates',
    'open_session',
    'print_dfu_if',
    'list_dfu_interfaces',
)
