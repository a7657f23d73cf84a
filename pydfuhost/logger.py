"""
Package logger for pydfuhost
Modules log through logger.getChild(<module name>)
"""

import logging

__all__ = ('logger', 'usb_logger', 'set_verbose')


formatter = logging.Formatter("%(levelname)s:%(name)s:%(message)s")
stream_handler = logging.StreamHandler()
stream_handler.setFormatter(formatter)

logger = logging.getLogger('pydfuhost')
logger.setLevel(logging.INFO)
logger.addHandler(stream_handler)

# pyusb traces control transfers on this logger at DEBUG
usb_logger = logging.getLogger('usb')


def set_verbose(verbose: bool = True) -> None:
    """Switch pydfuhost and pyusb loggers between INFO and DEBUG"""
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    usb_logger.setLevel(level)
    if verbose and stream_handler not in usb_logger.handlers:
        usb_logger.addHandler(stream_handler)
