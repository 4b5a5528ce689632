# SPDX-License-Identifier: BSD-2

from .constants import TPM2_MAX
from .exceptions import TransportError
from .log import session_loggers

import os
import select
import socket
from typing import Optional

logger = session_loggers["tcti"]


def _describe(buf: bytes) -> str:
    # tag, size and command or response code, never the payload
    if len(buf) < 10:
        return f"{len(buf)} bytes"
    tag = int.from_bytes(buf[0:2], "big")
    size = int.from_bytes(buf[2:6], "big")
    code = int.from_bytes(buf[6:10], "big")
    return f"tag=0x{tag:04X} size={size} code=0x{code:X}"


class TCTI:
    """The TPM Command Transmission Interface.

    Moves command buffers to the TPM and response buffers back, one exchange at a time.
    Subclasses implement ``do_transmit`` and ``do_receive`` and optionally ``do_finalize``.

    Args:
        timeout (float): Default seconds to wait for a response, None waits indefinitely.

    Returns:
        An instance of a TCTI.
    """

    def __init__(self, timeout: Optional[float] = None, magic: bytes = b"PYTCTI\x00\x00"):
        if len(magic) > 8:
            raise ValueError(f"Expected magic to be at most 8 bytes, got: {len(magic)}")
        self._magic = magic
        self._timeout = timeout
        self._closed = False

    @property
    def magic(self) -> bytes:
        """Returns the MAGIC string of the TCTI.

        Returns:
            The magic byte string.
        """
        return self._magic

    @property
    def timeout(self) -> Optional[float]:
        """The default response timeout in seconds."""
        return self._timeout

    @property
    def closed(self) -> bool:
        return self._closed

    def transmit(self, command: bytes) -> None:
        """Transmits bytes to the TPM.

        Args:
            command (bytes): The bytes to transmit to the TPM.

        Raises:
            TransportError: The TCTI is closed or the write failed.
        """
        if self._closed:
            raise TransportError("TCTI is closed")
        logger.debug(f"transmit {_describe(command)}")
        try:
            self.do_transmit(bytes(command))
        except TransportError:
            raise
        except OSError as e:
            raise TransportError(f"transmit failed: {e}") from e

    def receive(self, timeout: Optional[float] = None) -> bytes:
        """Receives bytes from the TPM.

        Args:
            timeout (float): The maximum time to wait for a response in seconds.
                Defaults to the timeout of the TCTI.

        Returns:
            The TPM response as bytes.

        Raises:
            TransportError: The TCTI is closed, the read failed or timed out.
        """
        if self._closed:
            raise TransportError("TCTI is closed")
        if timeout is None:
            timeout = self._timeout
        try:
            resp = self.do_receive(timeout)
        except TransportError:
            raise
        except (socket.timeout, TimeoutError) as e:
            raise TransportError(f"no response within {timeout} seconds") from e
        except OSError as e:
            raise TransportError(f"receive failed: {e}") from e
        logger.debug(f"receive {_describe(resp)}")
        return resp

    def exchange(self, command: bytes, timeout: Optional[float] = None) -> bytes:
        """Transmits a command and waits for its response.

        Args:
            command (bytes): The marshaled command.
            timeout (float): Seconds to wait for the response.

        Returns:
            The marshaled response.

        Raises:
            TransportError: on I/O failures and timeouts.
        """
        self.transmit(command)
        return self.receive(timeout)

    def finalize(self):
        """Cleans up a TCTI's state and resources."""
        if self._closed:
            return
        self._closed = True
        self.do_finalize()

    close = finalize

    def do_transmit(self, command: bytes) -> None:
        raise NotImplementedError("Subclass needs to implement do_transmit")

    def do_receive(self, timeout: Optional[float]) -> bytes:
        raise NotImplementedError("Subclass needs to implement do_receive")

    def do_finalize(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.finalize()


class PyTCTI(TCTI):
    """Subclass for implementing a TCTI in Python.

    Extend this object and implement the following methods:
        - def do_transmit(self, command: bytes) -> None
            This method transmits a command buffer to the TPM. This method IS REQUIRED.

        - def do_receive(self, timeout: float) -> bytes:
            This method receives a response from the TPM and returns it. This method IS REQUIRED

        - def do_finalize(self) -> None:
             Finalizes a TCTI, this is analogous to close on a file. This method is OPTIONAL.

    Note:
        OSError and its subclasses raised by these methods are reported as TransportError.

    Args:
        max_size (int): The largest command and response accepted. Defaults to 4096.
        timeout (float): Default seconds to wait for a response.
        magic (bytes): The magic value for the TCTI, may aid in debugging. Max length is 8, defaults to b"PYTCTI\x00\x00"

    Returns:
        An instance of the PyTCTI class. It's unusable as is, users should extend it.
    """

    def __init__(
        self,
        max_size: int = TPM2_MAX.COMMAND_SIZE,
        timeout: Optional[float] = None,
        magic: bytes = b"PYTCTI\x00\x00",
    ):
        super().__init__(timeout=timeout, magic=magic)
        self._max_size = max_size

    @property
    def max_size(self) -> int:
        return self._max_size

    def transmit(self, command: bytes) -> None:
        if len(command) > self._max_size:
            raise TransportError(
                f"command of {len(command)} bytes exceeds the maximum of {self._max_size}"
            )
        super().transmit(command)

    def receive(self, timeout: Optional[float] = None) -> bytes:
        resp = super().receive(timeout)
        if len(resp) > self._max_size:
            raise TransportError(
                f"response of {len(resp)} bytes exceeds the maximum of {self._max_size}"
            )
        return resp


class DeviceTCTI(PyTCTI):
    """A TCTI for a TPM character device, like /dev/tpm0 or /dev/tpmrm0.

    Args:
        path (str): The device path, defaults to /dev/tpmrm0.
        timeout (float): Default seconds to wait for a response.
    """

    def __init__(self, path: str = "/dev/tpmrm0", timeout: Optional[float] = None):
        super().__init__(timeout=timeout, magic=b"DEVICE\x00\x00")
        self._path = path
        try:
            self._fd = os.open(path, os.O_RDWR | os.O_CLOEXEC)
        except OSError as e:
            raise TransportError(f"could not open {path}: {e}") from e

    def do_transmit(self, command):
        written = os.write(self._fd, command)
        if written != len(command):
            raise TransportError(
                f"short write to {self._path}, {written} of {len(command)} bytes"
            )

    def do_receive(self, timeout):
        r, _, _ = select.select([self._fd], [], [], timeout)
        if not r:
            raise TimeoutError(f"{self._path} did not respond")
        return os.read(self._fd, self._max_size)

    def do_finalize(self):
        os.close(self._fd)


# commands of the simulator platform protocol used by swtpm and mssim
_TPM_SIGNAL_POWER_ON = 1
_TPM_SEND_COMMAND = 8
_TPM_SIGNAL_NV_ON = 11
_TPM_SESSION_END = 20


class SocketTCTI(PyTCTI):
    """A TCTI for the TCP interface of swtpm or the Microsoft/IBM simulator.

    Args:
        host (str): The simulator host, defaults to localhost.
        port (int): The command port, the platform port is the next one. Defaults to 2321.
        timeout (float): Default seconds to wait for a response.
        power_on (bool): Send power on and NV on over the platform port first.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 2321,
        timeout: Optional[float] = None,
        power_on: bool = True,
    ):
        super().__init__(timeout=timeout, magic=b"SOCKET\x00\x00")
        self._host = host
        self._port = port
        try:
            if power_on:
                self._platform_signal(_TPM_SIGNAL_POWER_ON)
                self._platform_signal(_TPM_SIGNAL_NV_ON)
            self._sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise TransportError(f"could not connect to {host}:{port}: {e}") from e

    def _platform_signal(self, signal: int):
        with socket.create_connection(
            (self._host, self._port + 1), timeout=self._timeout
        ) as sock:
            sock.sendall(signal.to_bytes(4, "big"))
            ack = self._recv_exact(sock, 4)
            if int.from_bytes(ack, "big") != 0:
                raise TransportError(f"platform signal {signal} failed")

    @staticmethod
    def _recv_exact(sock, size: int) -> bytes:
        buf = b""
        while len(buf) < size:
            chunk = sock.recv(size - len(buf))
            if not chunk:
                raise TransportError("connection closed by the simulator")
            buf += chunk
        return buf

    def do_transmit(self, command):
        header = (
            _TPM_SEND_COMMAND.to_bytes(4, "big")
            + b"\x00"  # locality
            + len(command).to_bytes(4, "big")
        )
        self._sock.sendall(header + command)

    def do_receive(self, timeout):
        self._sock.settimeout(timeout)
        size = int.from_bytes(self._recv_exact(self._sock, 4), "big")
        resp = self._recv_exact(self._sock, size)
        ack = self._recv_exact(self._sock, 4)
        if int.from_bytes(ack, "big") != 0:
            raise TransportError("simulator reported a failed command exchange")
        return resp

    def do_finalize(self):
        try:
            self._sock.sendall(_TPM_SESSION_END.to_bytes(4, "big"))
        finally:
            self._sock.close()


def _parse_conf(conf: str) -> dict:
    opts = dict()
    for item in filter(None, conf.split(",")):
        if "=" not in item:
            raise ValueError(f"expected key=value in TCTI config, got: {item}")
        k, v = item.split("=", 1)
        opts[k.strip()] = v.strip()
    return opts


def open_tcti(path: str = "simulator", timeout: Optional[float] = None) -> TCTI:
    """Open a TCTI by name.

    Accepted forms:
        - "simulator", the in-process software TPM.
        - "/dev/tpm0", "/dev/tpmrm0" or "device:/dev/tpmrm0", a TPM character device.
        - "host:port", "swtpm" or "mssim", optionally with a "host=...,port=..." config
          after a colon, like "swtpm:port=2321".

    Args:
        path (str): The TCTI to open.
        timeout (float): Default seconds to wait for responses.

    Returns:
        An open TCTI.

    Raises:
        ValueError: for an unknown TCTI.
        TransportError: if the TPM cannot be reached.
    """
    name, _, conf = path.partition(":")
    if name == "simulator":
        from .simulator import SimulatorTCTI

        return SimulatorTCTI(timeout=timeout)
    if path.startswith("/dev/"):
        return DeviceTCTI(path, timeout=timeout)
    if name == "device":
        return DeviceTCTI(conf or "/dev/tpmrm0", timeout=timeout)
    if name in ("swtpm", "mssim"):
        opts = _parse_conf(conf)
        return SocketTCTI(
            host=opts.get("host", "localhost"),
            port=int(opts.get("port", "2321"), base=0),
            timeout=timeout,
        )
    if conf.isdigit():
        return SocketTCTI(host=name or "localhost", port=int(conf), timeout=timeout)
    raise ValueError(f"unknown TCTI: {path}")
