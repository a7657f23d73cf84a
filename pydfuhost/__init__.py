"""
PyDfuHost - Pure python host side client for USB DFU 1.1 and ST DfuSe devices
wrappers to **[pyusb](https://github.com/pyusb/pyusb)**

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

__version__ = "0.1.0"
__author__ = "pydfuhost developers"
__copyright__ = ('pydfuhost developers',)
