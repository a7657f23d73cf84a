import logging
import unittest

from pydfuhost.exceptions import (SysExit, Errx, TransportError, DeviceGoneError,
                                  DisconnectTimeoutError, ProtocolError, FormatError,
                                  MemoryMapError, UsageError, NoInputError,
                                  except_and_safe_exit)

_logger = logging.getLogger('pydfuhost.test')


class TestExceptions(unittest.TestCase):

    def test_exit_codes(self):
        self.assertEqual(TransportError("x").exit_code, SysExit.EX_IOERR)
        self.assertEqual(DeviceGoneError("x").exit_code, SysExit.EX_IOERR)
        self.assertEqual(DisconnectTimeoutError("x").exit_code, SysExit.EX_TEMPFAIL)
        self.assertEqual(ProtocolError("x").exit_code, SysExit.EX_PROTOCOL)
        self.assertEqual(FormatError("x").exit_code, SysExit.EX_DATAERR)
        self.assertEqual(MemoryMapError("x").exit_code, SysExit.EX_DATAERR)
        self.assertEqual(UsageError("x").exit_code, SysExit.EX_USAGE)
        self.assertEqual(NoInputError("x").exit_code, SysExit.EX_NOINPUT)

    def test_exit_code_override(self):
        self.assertEqual(Errx("x").exit_code, SysExit.OTHER)
        self.assertEqual(Errx("x", SysExit.EX_CANTCREAT).exit_code, SysExit.EX_CANTCREAT)

    def test_hierarchy(self):
        self.assertTrue(issubclass(DeviceGoneError, TransportError))
        self.assertTrue(issubclass(TransportError, IOError))
        self.assertTrue(issubclass(FormatError, ValueError))
        for exc in (TransportError, ProtocolError, FormatError, MemoryMapError, UsageError):
            self.assertTrue(issubclass(exc, Errx))


class TestSafeExit(unittest.TestCase):

    def test_passes_result(self):
        @except_and_safe_exit(_logger)
        def func(value):
            return value * 2

        self.assertEqual(func(21), 42)

    def test_errx_exits(self):
        @except_and_safe_exit(_logger)
        def func():
            raise ProtocolError("DNLOAD request stalled")

        with self.assertLogs(_logger, level='ERROR'):
            with self.assertRaises(SystemExit) as ctx:
                func()
        self.assertEqual(ctx.exception.code, SysExit.EX_PROTOCOL)

    def test_keyboard_interrupt(self):
        @except_and_safe_exit(_logger)
        def func():
            raise KeyboardInterrupt

        with self.assertLogs(_logger, level='ERROR'):
            with self.assertRaises(SystemExit) as ctx:
                func()
        self.assertEqual(ctx.exception.code, SysExit.EX_TEMPFAIL)

    def test_other_exceptions_propagate(self):
        @except_and_safe_exit(_logger)
        def func():
            raise RuntimeError("bug")

        with self.assertRaises(RuntimeError):
            func()


if __name__ == '__main__':
    unittest.main()
