"""
Pydfuhost exceptions.

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
import logging
import sys
from enum import IntEnum
from functools import wraps


class SysExit(IntEnum):
    """sysexits.h compatible exit codes"""
    OTHER = 1
    EX_OK = 0
    EX_USAGE = 64  # command line usage error
    EX_DATAERR = 65  # data format error
    EX_NOINPUT = 66  # cannot open input
    EX_UNAVAILABLE = 69  # service unavailable
    EX_SOFTWARE = 70  # internal software error
    EX_CANTCREAT = 73  # can't create (user) output file
    EX_IOERR = 74  # input/output error
    EX_TEMPFAIL = 75  # temp failure; user is invited to retry
    EX_PROTOCOL = 76  # remote error in protocol


class Errx(Exception):
    """
    Base class of every pydfuhost error.
    Carries the process exit code the CLI terminates with.
    """
    exit_code = SysExit.OTHER

    def __init__(self, message, exit_code: SysExit = None):
        super().__init__(message)
        if isinstance(exit_code, SysExit):
            self.exit_code = exit_code


class TransportError(Errx, IOError):
    """USB transport failure: timeout, I/O error, unexpected device state"""
    exit_code = SysExit.EX_IOERR


class DeviceGoneError(TransportError):
    """The device disappeared from the bus (disconnected or reset)"""


class DisconnectTimeoutError(TransportError):
    """The device did not disconnect within the requested time"""
    exit_code = SysExit.EX_TEMPFAIL


class ProtocolError(Errx):
    """
    The device answered, but with a DFU level failure:
    non-OK status, unexpected state, rejected command or stalled request
    """
    exit_code = SysExit.EX_PROTOCOL


class FormatError(Errx, ValueError):
    """Malformed descriptor bytes or memory map string"""
    exit_code = SysExit.EX_DATAERR


class MemoryMapError(Errx):
    """Address outside the memory map or no memory map available"""
    exit_code = SysExit.EX_DATAERR


class UsageError(Errx):
    """Invalid command-line arguments or misuse of the API"""
    exit_code = SysExit.EX_USAGE


class NoInputError(Errx, OSError):
    """EX_NOINPUT"""
    exit_code = SysExit.EX_NOINPUT


def except_and_safe_exit(_logger: logging.Logger = None):
    """decorator to handle exceptions and exit safely"""

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except Errx as e:
                if str(e) and _logger:
                    if _logger.getEffectiveLevel() <= logging.DEBUG:
                        _logger.exception(e)
                    else:
                        _logger.error(e)
                sys.exit(e.exit_code)
            except KeyboardInterrupt:
                if _logger:
                    _logger.error("Interrupted")
                sys.exit(SysExit.EX_TEMPFAIL)

        return wrapper

    return decorator


__all__ = (
    'SysExit',
    'Errx',
    'TransportError',
    'DeviceGoneError',
    'DisconnectTimeoutError',
    'ProtocolError',
    'FormatError',
    'MemoryMapError',
    'UsageError',
    'NoInputError',
    'except_and_safe_exit'
)
