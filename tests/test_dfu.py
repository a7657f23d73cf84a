import threading
import unittest
from unittest.mock import MagicMock

from pydfuhost import dfu, transport
from pydfuhost.dfu import (DeviceSession, InterfaceCandidate, ProtocolVariant,
                           State, Status, StatusRetVal)
from pydfuhost.exceptions import ProtocolError, DisconnectTimeoutError, TransportError
from pydfuhost.transport import Direction, TransferResult, TransferStatus
from pydfuhost.usb_dfu import Request
from tests.fake_device import (FakeTransport, DFUSE_NAME, device_descriptor,
                               interface_descriptor, functional_descriptor,
                               configuration_descriptor, string_descriptor)


def make_session(fake, name=None, variant=ProtocolVariant.GENERIC, **kwargs):
    candidate = InterfaceCandidate(1, 0, 0, name, fake)
    return DeviceSession(fake, candidate, variant, **kwargs)


class TestDfu(unittest.TestCase):

    def tearDown(self):
        dfu.init(transport.DEFAULT_TIMEOUT)

    def test_init(self):
        dfu.init(1000)
        self.assertEqual(transport.TIMEOUT, 1000)

    def test_init_invalid(self):
        with self.assertRaises(ValueError):
            dfu.init(0)

    def test_str(self):
        self.assertEqual(dfu.status_to_string(dfu.Status.OK), "No error condition is present")
        self.assertEqual(dfu.Status.OK.to_string(), "No error condition is present")
        self.assertEqual(dfu.state_to_string(dfu.State.APP_IDLE), "appIDLE")
        self.assertEqual(dfu.State.DFU_MANIFEST_WAIT_RESET.to_string(), "dfuMANIFEST-WAIT-RESET")
        self.assertIsNone(dfu.state_to_string(0x42))
        self.assertIsNone(dfu.status_to_string(0x42))


class TestStatusRetVal(unittest.TestCase):

    def test_decode(self):
        status = StatusRetVal.from_bytes(bytes([0x00, 0x64, 0x00, 0x00, 0x05, 0x00]))
        self.assertEqual(status.bStatus, Status.OK)
        self.assertEqual(status.bwPollTimeout, 100)
        self.assertEqual(status.bState, State.DFU_DOWNLOAD_IDLE)

    def test_poll_timeout_24bit(self):
        status = StatusRetVal.from_bytes(bytes([0x00, 0x01, 0x02, 0x03, 0x02, 0x00]))
        self.assertEqual(status.bwPollTimeout, 0x030201)

    def test_unknown_values_kept(self):
        status = StatusRetVal.from_bytes(bytes([0x42, 0, 0, 0, 0x33, 0]))
        self.assertEqual(status.bStatus, 0x42)
        self.assertEqual(status.bState, 0x33)

    def test_short(self):
        with self.assertRaises(ProtocolError):
            StatusRetVal.from_bytes(bytes(5))

    def test_bytes(self):
        data = bytes([0x03, 0x10, 0x27, 0x00, 0x0a, 0x00])
        self.assertEqual(bytes(StatusRetVal.from_bytes(data)), data)


class TestDeviceSession(unittest.TestCase):

    def setUp(self):
        self.fake = FakeTransport()
        self.sleeps = []
        self.session = make_session(self.fake, sleep=self.sleeps.append)

    def test_context_manager(self):
        with self.session as session:
            self.assertIs(session, self.session)
            self.assertEqual(self.fake.opened, (1, 0, 0))
        self.assertEqual(self.fake.closed, 1)

    def test_context_manager_closes_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.session:
                raise RuntimeError
        self.assertEqual(self.fake.closed, 1)

    def test_request_addressing(self):
        self.session.interface = 3
        self.session.detach(1000)
        record = self.fake.records[-1]
        self.assertEqual(record.request, Request.DETACH)
        self.assertEqual(record.value, 1000)
        self.assertEqual(record.index, 3)
        self.assertEqual(record.request_type, 0x20)
        self.assertEqual(record.recipient, 0x01)

    def test_get_status(self):
        status = self.session.get_status()
        self.assertEqual(status.bState, State.DFU_IDLE)
        self.assertEqual(status.bStatus, Status.OK)
        self.assertEqual(self.fake.records[-1].length, 6)

    def test_get_state(self):
        self.fake.state = State.DFU_UPLOAD_IDLE
        self.assertEqual(self.session.get_state(), State.DFU_UPLOAD_IDLE)

    def test_download_stall_clears_halt_once(self):
        self.fake.stall.add(Request.DNLOAD)
        with self.assertRaises(ProtocolError):
            self.session.download(b'\x00' * 16, 0)
        self.assertEqual(self.fake.clear_halts, [(Direction.OUT, 0)])
        self.assertEqual(len(self.fake.dnload_records()), 1)

    def test_upload_stall_clears_in_halt(self):
        self.fake.stall.add(Request.UPLOAD)
        with self.assertRaises(ProtocolError):
            self.session.upload(64, 0)
        self.assertEqual(self.fake.clear_halts, [(Direction.IN, 0)])

    def test_get_status_stall(self):
        self.fake.stall.add(Request.GETSTATUS)
        with self.assertRaisesRegex(ProtocolError, "GETSTATUS"):
            self.session.get_status()

    def test_other_failure(self):
        mock_transport = MagicMock()
        mock_transport.control_transfer_in.return_value = TransferResult(TransferStatus.OTHER)
        session = make_session(mock_transport)
        with self.assertRaises(ProtocolError):
            session.get_state()
        mock_transport.clear_halt.assert_not_called()

    def test_poll_until_sleeps_poll_timeout(self):
        self.fake.poll_timeout = 20
        self.fake.busy_polls = 2
        self.session.download(b'\x01' * 8, 0)
        status = self.session.poll_until_idle(State.DFU_DOWNLOAD_IDLE)
        self.assertEqual(status.bState, State.DFU_DOWNLOAD_IDLE)
        self.assertEqual(self.sleeps, [20, 20])

    def test_poll_until_returns_error_state(self):
        self.fake.fail_block[0] = Status.ERROR_WRITE
        self.session.download(b'\x01' * 8, 0)
        status = self.session.poll_until_idle(State.DFU_DOWNLOAD_IDLE)
        self.assertEqual(status.bState, State.DFU_ERROR)
        self.assertEqual(status.bStatus, Status.ERROR_WRITE)

    def test_abort_to_idle(self):
        self.fake.state = State.DFU_UPLOAD_IDLE
        self.session.abort_to_idle()
        self.assertEqual(self.fake.requests, [Request.ABORT, Request.GETSTATE])

    def test_abort_to_idle_clears_error(self):
        mock_transport = MagicMock()
        mock_transport.control_transfer_out.return_value = TransferResult()
        mock_transport.control_transfer_in.side_effect = [
            TransferResult(data=bytes([State.DFU_ERROR])),
            TransferResult(data=bytes([State.DFU_IDLE])),
        ]
        session = make_session(mock_transport)
        session.abort_to_idle()
        requests = [c.args[2] for c in mock_transport.control_transfer_out.call_args_list]
        self.assertEqual(requests, [Request.ABORT, Request.CLRSTATUS])

    def test_abort_to_idle_fails(self):
        mock_transport = MagicMock()
        mock_transport.control_transfer_out.return_value = TransferResult()
        mock_transport.control_transfer_in.return_value = TransferResult(
            data=bytes([State.DFU_MANIFEST]))
        session = make_session(mock_transport)
        with self.assertRaisesRegex(ProtocolError, "idle"):
            session.abort_to_idle()

    def test_progress_and_phase(self):
        progress, phases = [], []
        session = make_session(self.fake, on_progress=lambda d, t: progress.append((d, t)),
                               on_phase=phases.append)
        session.begin_phase("Erasing")
        session.report_progress(10, 100)
        session.report_progress(20)
        self.assertEqual(phases, ["Erasing"])
        self.assertEqual(progress, [(10, 100), (20, None)])

    def test_dfuse_variant_parses_memory_map(self):
        session = make_session(self.fake, DFUSE_NAME, ProtocolVariant.DFUSE)
        self.assertTrue(session.is_dfuse)
        self.assertEqual(session.memory_info.name, "Internal Flash")
        self.assertEqual(len(session.memory_info.segments), 3)

    def test_generic_variant_ignores_memory_map(self):
        session = make_session(self.fake, DFUSE_NAME)
        self.assertFalse(session.is_dfuse)
        self.assertIsNone(session.memory_info)


class TestWaitForDisconnect(unittest.TestCase):

    def setUp(self):
        self.fake = FakeTransport()
        self.session = make_session(self.fake)

    def test_disconnect(self):
        timer = threading.Timer(0.05, self.fake.disconnect)
        timer.start()
        try:
            self.assertIs(self.session.wait_for_disconnect(2000), self.session)
        finally:
            timer.cancel()
        self.assertTrue(self.session.disconnected)
        self.assertEqual(self.fake.listeners, [])

    def test_timeout(self):
        with self.assertRaises(DisconnectTimeoutError):
            self.session.wait_for_disconnect(50)
        self.assertFalse(self.session.disconnected)
        self.assertEqual(self.fake.listeners, [])

    def test_other_device_ignored(self):
        def other_device_gone():
            for callback in list(self.fake.listeners):
                callback(("other", 1))

        timer = threading.Timer(0.01, other_device_gone)
        timer.start()
        try:
            with self.assertRaises(DisconnectTimeoutError):
                self.session.wait_for_disconnect(100)
        finally:
            timer.cancel()


class TestDescriptorReads(unittest.TestCase):

    def setUp(self):
        self.fake = FakeTransport()
        self.fake.descriptors = {
            0x0100: device_descriptor(num_configurations=1),
            0x0200: configuration_descriptor(
                interface_descriptor(0, 0, i_interface=4),
                functional_descriptor(),
                interface_descriptor(0, 1, i_interface=5),
                interface_descriptor(0, 2, i_interface=0),
            ),
            0x0304: string_descriptor(DFUSE_NAME),
            0x0305: string_descriptor("@Option Bytes  /0x1FFFC000/01*016 e"),
        }
        self.session = make_session(self.fake)

    def test_read_configuration_descriptor(self):
        data = self.session.read_configuration_descriptor(0)
        self.assertEqual(data, self.fake.descriptors[0x0200])
        lengths = [r.length for r in self.fake.records]
        self.assertEqual(lengths, [4, len(data)])

    def test_read_interface_names(self):
        names = self.session.read_interface_names()
        self.assertEqual(names, {1: {0: {
            0: DFUSE_NAME,
            1: "@Option Bytes  /0x1FFFC000/01*016 e",
            2: None,
        }}})

    def test_missing_descriptor(self):
        with self.assertRaises(TransportError):
            self.session.read_string_descriptor(9, 0x0409)


if __name__ == '__main__':
    unittest.main()
