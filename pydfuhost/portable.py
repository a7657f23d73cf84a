"""
Sleep helpers used by the DFU polling loops
"""

from time import sleep


def milli_sleep(msec: int) -> None:
    """
    :param msec: sleep timeout in milliseconds
    :return: None
    """
    if msec > 0:
        sleep(msec / 1000)
