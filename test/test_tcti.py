#!/usr/bin/python3 -u
# SPDX-License-Identifier: BSD-2

import socket
import unittest

from tpm2_pysession import *
from tpm2_pysession.TCTI import _parse_conf
from .TSS2_BaseTest import TSS2_EsapiTest

startup = b"\x80\x01\x00\x00\x00\x0C\x00\x00\x01\x44\x00\x00"


class MyTCTI(PyTCTI):
    def __init__(self, subtcti, max_size=4096, magic=None):
        self._tcti = subtcti
        self._is_finalized = False
        self._error = None

        if magic is not None:
            super().__init__(max_size=max_size, magic=magic)
        else:
            super().__init__(max_size=max_size)

    @property
    def is_finalized(self):
        return self._is_finalized

    def do_transmit(self, command):
        if self._error is not None:
            raise self._error
        self._tcti.transmit(command)

    def do_receive(self, timeout):
        if self._error is not None:
            raise self._error
        return self._tcti.receive(timeout)

    def do_finalize(self):
        self._is_finalized = True


class CannedTCTI(PyTCTI):
    def __init__(self, response, max_size=4096, timeout=None):
        super().__init__(max_size=max_size, timeout=timeout)
        self._response = response
        self.timeouts = []

    def do_transmit(self, command):
        pass

    def do_receive(self, timeout):
        self.timeouts.append(timeout)
        if isinstance(self._response, Exception):
            raise self._response
        return self._response


def unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("localhost", 0))
        return s.getsockname()[1]


class TestTCTI(TSS2_EsapiTest):
    def test_init(self):
        self.assertGreater(int.from_bytes(self.tcti.magic, "big"), 0)
        self.assertFalse(self.tcti.closed)

        with self.assertRaises(ValueError):
            PyTCTI(magic=b"toolongmagic")

    def test_transmit_receive(self):
        self.tcti.transmit(startup)

        resp = self.tcti.receive()
        # already started
        self.assertEqual(resp, b"\x80\x01\x00\x00\x00\n\x00\x00\x01\x00")

    def test_exchange(self):
        resp = self.tcti.exchange(startup)
        self.assertEqual(resp[6:10], b"\x00\x00\x01\x00")

    def test_finalize(self):
        tcti = MyTCTI(self.tcti)
        tcti.finalize()
        self.assertTrue(tcti.is_finalized)
        self.assertTrue(tcti.closed)
        # a second finalize is a no-op
        tcti.finalize()

        with self.assertRaises(TransportError):
            tcti.transmit(startup)

        with self.assertRaises(TransportError):
            tcti.receive()

    def test_context_manager(self):
        with MyTCTI(self.tcti) as tcti:
            self.assertFalse(tcti.closed)
        self.assertTrue(tcti.is_finalized)

    def test_custom_pytcti_esapi(self):
        tcti = MyTCTI(self.tcti)
        with ESAPI(tcti) as ectx:
            self.assertEqual(len(ectx.get_random(8)), 8)
            session = ectx.start_auth_session(unbound())
            self.assertEqual(len(ectx.get_random(8, session1=session)), 8)
        # closing the ESAPI leaves a passed in TCTI open
        self.assertFalse(tcti.is_finalized)

    def test_custom_pytcti_magic(self):
        tcti = MyTCTI(self.tcti, magic=b"PYTHON")
        self.assertEqual(tcti.magic, b"PYTHON")

        with self.assertRaises(ValueError):
            MyTCTI(self.tcti, magic=b"THISISTOOLONG")

    def test_custom_pytcti_errors(self):
        tcti = MyTCTI(self.tcti)
        tcti._error = ConnectionResetError("peer went away")
        with self.assertRaises(TransportError) as e:
            tcti.transmit(startup)
        self.assertIn("transmit failed", str(e.exception))
        self.assertIsInstance(e.exception.__cause__, ConnectionResetError)

        with self.assertRaises(TransportError) as e:
            tcti.receive()
        self.assertIn("receive failed", str(e.exception))

        tcti._error = TransportError("passed through")
        with self.assertRaises(TransportError) as e:
            tcti.transmit(startup)
        self.assertEqual(str(e.exception), "passed through")

    def test_custom_pytcti_max_size(self):
        tcti = MyTCTI(self.tcti, max_size=8)
        self.assertEqual(tcti.max_size, 8)
        with self.assertRaises(TransportError):
            tcti.transmit(startup)

        tcti = CannedTCTI(b"\x00" * 20, max_size=16)
        tcti.transmit(b"\x00" * 10)
        with self.assertRaises(TransportError):
            tcti.receive()

    def test_pytcti_not_implemented(self):
        tcti = PyTCTI()
        with self.assertRaises(NotImplementedError):
            tcti.transmit(startup)

        with self.assertRaises(NotImplementedError):
            tcti.receive()

    def test_receive_timeout(self):
        tcti = CannedTCTI(socket.timeout("timed out"), timeout=2.0)
        self.assertEqual(tcti.timeout, 2.0)

        with self.assertRaises(TransportError) as e:
            tcti.receive()
        self.assertEqual(str(e.exception), "no response within 2.0 seconds")

        with self.assertRaises(TransportError) as e:
            tcti.receive(0.5)
        self.assertEqual(str(e.exception), "no response within 0.5 seconds")
        self.assertEqual(tcti.timeouts, [2.0, 0.5])

    def test_simulator_out_of_order(self):
        self.requireSoftwareTPM()
        with self.assertRaises(TransportError):
            self.tcti.receive()

        self.tcti.transmit(startup)
        with self.assertRaises(TransportError):
            self.tcti.transmit(startup)
        self.tcti.receive()

    def test_device_missing(self):
        with self.assertRaises(TransportError):
            DeviceTCTI("/nonexistent/tpmrm0")

    def test_socket_refused(self):
        port = unused_port()
        with self.assertRaises(TransportError):
            SocketTCTI(port=port, timeout=1.0, power_on=False)


class TestOpenTCTI(unittest.TestCase):
    def test_simulator(self):
        with open_tcti("simulator") as tcti:
            self.assertIsInstance(tcti, SimulatorTCTI)
            self.assertTrue(tcti.tpm.started)

    def test_esapi_opens_tcti(self):
        ectx = ESAPI("simulator")
        tcti = ectx.tcti
        self.assertIsInstance(tcti, SimulatorTCTI)
        self.assertEqual(len(ectx.get_random(4)), 4)
        ectx.close()
        self.assertTrue(tcti.closed)

    def test_esapi_bad_tcti(self):
        with self.assertRaises(TypeError):
            ESAPI(42)

    def test_device(self):
        with self.assertRaises(TransportError):
            open_tcti("/dev/nonexistent-tpm")

        with self.assertRaises(TransportError):
            open_tcti("device:/nonexistent/tpmrm0")

    def test_socket(self):
        port = unused_port()
        with self.assertRaises(TransportError):
            open_tcti(f"localhost:{port}", timeout=1.0)

    def test_unknown(self):
        with self.assertRaises(ValueError):
            open_tcti("bogus")

        with self.assertRaises(ValueError):
            open_tcti("swtpm:port")

    def test_parse_conf(self):
        self.assertEqual(
            _parse_conf("host=127.0.0.1, port=0x911"), {"host": "127.0.0.1", "port": "0x911"}
        )
        self.assertEqual(_parse_conf(""), {})

        with self.assertRaises(ValueError):
            _parse_conf("host")


if __name__ == "__main__":
    unittest.main()
