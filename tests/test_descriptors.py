import unittest

from pydfuhost import descriptors
from pydfuhost.descriptors import (Descriptor, FuncDescriptor, InterfaceDescriptor,
                                   parse_configuration_descriptor, parse_device_descriptor,
                                   parse_functional_descriptor, parse_sub_descriptors,
                                   find_functional_descriptor, decode_string_descriptor)
from pydfuhost.exceptions import FormatError
from pydfuhost.usb_dfu import BmAttributes
from tests.fake_device import (device_descriptor, interface_descriptor, functional_descriptor,
                               configuration_descriptor, string_descriptor)


class TestDeviceDescriptor(unittest.TestCase):

    def test_parse(self):
        desc = parse_device_descriptor(device_descriptor(0x0483, 0xdf11, 2))
        self.assertEqual(desc.bLength, 18)
        self.assertEqual(desc.bcdUSB, 0x0200)
        self.assertEqual(desc.idVendor, 0x0483)
        self.assertEqual(desc.idProduct, 0xdf11)
        self.assertEqual(desc.bcdDevice, 0x2200)
        self.assertEqual(desc.bNumConfigurations, 2)

    def test_too_short(self):
        with self.assertRaises(FormatError):
            parse_device_descriptor(device_descriptor()[:10])


class TestFunctionalDescriptor(unittest.TestCase):

    def test_parse(self):
        desc = parse_functional_descriptor(
            functional_descriptor(attributes=0x0f, transfer_size=1024, version=0x011a))
        self.assertEqual(desc.wTransferSize, 1024)
        self.assertEqual(desc.bcdDFUVersion, 0x011a)
        self.assertEqual(desc.wDetachTimeOut, 255)
        self.assertTrue(desc.bmAttributes & BmAttributes.USB_DFU_CAN_UPLOAD)
        self.assertTrue(desc.manifestation_tolerant)

    def test_not_manifestation_tolerant(self):
        desc = parse_functional_descriptor(functional_descriptor(attributes=0x0b))
        self.assertFalse(desc.manifestation_tolerant)

    def test_dfu_1_0_length(self):
        data = functional_descriptor(transfer_size=64)[:7]
        desc = FuncDescriptor.from_bytes(data)
        self.assertEqual(desc.wTransferSize, 64)
        self.assertEqual(desc.bcdDFUVersion, 0x0100)

    def test_too_short(self):
        with self.assertRaises(FormatError):
            parse_functional_descriptor(functional_descriptor()[:5])


class TestConfigurationDescriptor(unittest.TestCase):

    def setUp(self):
        self.data = configuration_descriptor(
            interface_descriptor(0, 0, i_interface=4),
            functional_descriptor(transfer_size=2048),
            interface_descriptor(0, 1, i_interface=5),
            value=1,
        )

    def test_header(self):
        config = parse_configuration_descriptor(self.data)
        self.assertEqual(config.bConfigurationValue, 1)
        self.assertEqual(config.wTotalLength, len(self.data))
        self.assertEqual(config.bNumInterfaces, 1)

    def test_nesting(self):
        config = parse_configuration_descriptor(self.data)
        self.assertEqual(len(config.descriptors), 3)
        self.assertEqual(len(config.interfaces), 2)
        first, second = config.interfaces
        self.assertTrue(first.is_dfu)
        self.assertEqual(first.iInterface, 4)
        self.assertEqual(len(first.descriptors), 1)
        self.assertIsInstance(first.descriptors[0], FuncDescriptor)
        self.assertEqual(second.bAlternateSetting, 1)
        self.assertEqual(second.descriptors, [])

    def test_find_functional_descriptor(self):
        config = parse_configuration_descriptor(self.data)
        func = find_functional_descriptor(config)
        self.assertEqual(func.wTransferSize, 2048)
        self.assertIsNone(find_functional_descriptor(config, interface=3))

    def test_functional_outside_dfu_interface_stays_generic(self):
        data = (interface_descriptor(0, 0, interface_class=0x03, subclass=0x00)
                + functional_descriptor())
        parsed = parse_sub_descriptors(data)
        self.assertIsInstance(parsed[0], InterfaceDescriptor)
        self.assertIsInstance(parsed[1], Descriptor)
        self.assertEqual(parsed[1].bDescriptorType, 0x21)
        self.assertEqual(parsed[0].descriptors, [parsed[1]])

    def test_descriptor_before_interface(self):
        endpoint = bytes([7, 0x05, 0x81, 0x02, 0x40, 0x00, 0x00])
        parsed = parse_sub_descriptors(endpoint + interface_descriptor())
        self.assertIsInstance(parsed[0], Descriptor)
        self.assertEqual(parsed[0].data, endpoint)
        self.assertEqual(parsed[1].descriptors, [])

    def test_short_tail_ignored(self):
        parsed = parse_sub_descriptors(interface_descriptor() + b'\x02\x05')
        self.assertEqual(len(parsed), 1)

    def test_zero_length(self):
        with self.assertRaises(FormatError):
            parse_sub_descriptors(b'\x00\x04\x00\x00')

    def test_module_exports(self):
        for name in descriptors.__all__:
            self.assertTrue(hasattr(descriptors, name))


class TestStringDescriptor(unittest.TestCase):

    def test_string(self):
        data = string_descriptor("@Internal Flash")
        self.assertEqual(decode_string_descriptor(data, 0x0409), "@Internal Flash")

    def test_langids(self):
        data = bytes([6, 0x03, 0x09, 0x04, 0x07, 0x04])
        self.assertEqual(decode_string_descriptor(data, 0), [0x0409, 0x0407])

    def test_blength_limits(self):
        data = string_descriptor("abc") + b'\x64\x00'
        self.assertEqual(decode_string_descriptor(data, 0x0409), "abc")

    def test_too_short(self):
        with self.assertRaises(FormatError):
            decode_string_descriptor(b'\x02', 0x0409)


if __name__ == '__main__':
    unittest.main()
