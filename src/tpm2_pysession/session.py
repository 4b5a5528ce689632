# SPDX-License-Identifier: BSD-2
"""
Session lifecycle and the session API used by command issuing code.

Ephemeral sessions are built with :func:`build_session` and started by the command engine
for every exchange they take part in. Persistent sessions are started with
:func:`start_session` or :meth:`SessionManager.start_session`, occupy one of a bounded
number of slots and must be released exactly once.

Sessions are not synchronized, a session must only be used by one thread at a time.
The slot pool of a :class:`SessionManager` is safe to use from several threads.
"""
import threading
import weakref
from typing import Callable, NamedTuple, Optional, Tuple, Union

from .config import SessionConfig
from .constants import TPM_FRIENDLY_INT, TPM2_RH, TPMA_SESSION
from .derivation import check_response_hmac, command_hmac, hmac_key, new_nonce
from .descriptor import Direction, HMACSession, PasswordSession, SessionDescriptor
from .exceptions import (
    AlreadyReleased,
    ConfigurationError,
    NonceMismatch,
    ProtocolViolation,
    SessionError,
    SlotExhausted,
)
from .log import session_loggers
from . import parameter
from .types import TPMS_AUTH_COMMAND, TPMS_AUTH_RESPONSE
from .internal.utils import _to_bytes

logger = session_loggers["session"]


class SessionState(TPM_FRIENDLY_INT):
    UNSTARTED = 0
    ACTIVE = 1
    RELEASED = 2
    DISCARDED = 3


Ephemeral = NamedTuple("Ephemeral", [])


class Persistent(NamedTuple):
    device_handle: int
    slot_index: int


SessionHandle = Union[Ephemeral, Persistent]


class NonceState(object):
    """The nonces of a session.

    ``nonce_caller`` is the last nonce the caller used in a completed exchange and
    ``nonce_tpm`` the last nonce the TPM returned. A new caller nonce is drawn for every
    exchange and only committed together with the TPM nonce of a verified response.
    """

    def __init__(self, nonce_caller: bytes = b"", nonce_tpm: bytes = b""):
        self.nonce_caller = nonce_caller
        self.nonce_tpm = nonce_tpm
        self._issued = None

    @property
    def pending(self) -> Optional[bytes]:
        """The caller nonce of the exchange in flight, if any."""
        return self._issued

    def issue(self, size: int) -> bytes:
        previous = (self.nonce_caller, self._issued)
        nonce = new_nonce(size, self.nonce_caller)
        while nonce in previous:
            nonce = new_nonce(size, self.nonce_caller)
        self._issued = nonce
        return nonce

    def abandon(self):
        self._issued = None

    def commit(self, nonce_tpm: bytes):
        """Accept the TPM nonce of a response to the pending exchange.

        Raises:
            NonceMismatch: if no exchange is pending, or the TPM nonce is empty or replayed.
        """
        if self._issued is None:
            raise NonceMismatch("response received without a pending caller nonce")
        nonce_tpm = bytes(nonce_tpm)
        if not nonce_tpm:
            raise NonceMismatch("TPM returned an empty nonce")
        if nonce_tpm == self.nonce_tpm:
            raise NonceMismatch("TPM nonce was replayed")
        self.nonce_caller = self._issued
        self.nonce_tpm = nonce_tpm
        self._issued = None


class Session(object):
    """A session described by a descriptor, ephemeral or backed by a device handle.

    Args:
        descriptor (SessionDescriptor): How the session authorizes and encrypts.
        handle (SessionHandle): Ephemeral() or Persistent(device_handle, slot_index).
        config (SessionConfig): Limits, defaults to SessionConfig.default().
    """

    def __init__(
        self,
        descriptor: SessionDescriptor,
        handle: Optional[SessionHandle] = None,
        config: Optional[SessionConfig] = None,
    ):
        if not isinstance(descriptor, (PasswordSession, HMACSession)):
            raise ConfigurationError(
                f"expected a session descriptor, got {descriptor.__class__.__name__}"
            )
        self._descriptor = descriptor
        self._handle = handle if handle is not None else Ephemeral()
        self._config = config if config is not None else SessionConfig.default()
        if (
            isinstance(descriptor, HMACSession)
            and descriptor.hash_alg not in self._config.session_hash_algs
        ):
            raise ConfigurationError(
                f"hash algorithm {descriptor.hash_alg} is not supported for sessions"
            )
        self._state = SessionState.UNSTARTED
        self._device_handle = None
        self._session_key = b""
        self._include_auth = True
        self._release = None
        self.nonces = NonceState()

    def __repr__(self):
        return f"Session({self._descriptor.__class__.__name__}, {self._handle!r}, {self._state})"

    @property
    def descriptor(self) -> SessionDescriptor:
        return self._descriptor

    @property
    def handle(self) -> SessionHandle:
        return self._handle

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def device_handle(self) -> Optional[int]:
        """The session handle on the TPM, TPM2_RH.PW for password sessions."""
        if self.is_password:
            return TPM2_RH.PW
        return self._device_handle

    @property
    def is_password(self) -> bool:
        return isinstance(self._descriptor, PasswordSession)

    @property
    def is_persistent(self) -> bool:
        return isinstance(self._handle, Persistent)

    @property
    def hash_alg(self) -> Optional[int]:
        if self.is_password:
            return None
        return self._descriptor.hash_alg

    @property
    def encryption(self):
        if self.is_password:
            return None
        return self._descriptor.encryption

    def bound_to(self, name: bytes) -> bool:
        """True if the session is bound to the entity with this name."""
        if self.is_password or not self._descriptor.is_bound:
            return False
        return bytes(self._descriptor.key_material.bind_name) == bytes(name)

    def _activate(self, device_handle: int, nonce_caller: bytes, nonce_tpm: bytes, skey: bytes):
        self._device_handle = device_handle
        self._session_key = skey
        self.nonces = NonceState(nonce_caller, nonce_tpm)
        self._state = SessionState.ACTIVE

    def _reset(self):
        # an ephemeral session forgets its device state after each exchange
        self._device_handle = None
        self._session_key = b""
        self.nonces = NonceState()
        self._state = SessionState.UNSTARTED

    def discard(self):
        """Mark the session as untrustworthy, it can't be used for further exchanges."""
        if self._state != SessionState.RELEASED:
            logger.debug(f"discarding session {self._device_handle}")
            self._state = SessionState.DISCARDED

    def _check_usable(self):
        if self._state == SessionState.RELEASED:
            raise SessionError("session was released")
        if self._state == SessionState.DISCARDED:
            raise ProtocolViolation("session was discarded and can't be reused")

    def _check_active(self):
        self._check_usable()
        if self.is_password:
            return
        if self._state != SessionState.ACTIVE:
            raise SessionError("session is not started on the TPM")

    def _hmac_key(self, include_auth: Optional[bool] = None) -> bytes:
        if include_auth is None:
            include_auth = self._include_auth
        return hmac_key(self._session_key, self._descriptor.auth_value, include_auth)

    def release(self):
        """Flush the session from the TPM and free its slot.

        Raises:
            AlreadyReleased: if the session was already released.
            SessionError: for sessions that are not persistent.
        """
        if self._release is None:
            raise SessionError("only persistent sessions are released")
        self._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if self._release is not None and self._state != SessionState.RELEASED:
            self._release()


class SlotPool(object):
    """A fixed number of session slots, acquired and released explicitly.

    Args:
        capacity (int): The number of slots.
    """

    def __init__(self, capacity: int = 4):
        if capacity < 1:
            raise ConfigurationError(f"slot pool capacity must be positive, got {capacity}")
        self._lock = threading.Lock()
        self._used = [False] * capacity

    @property
    def capacity(self) -> int:
        return len(self._used)

    @property
    def available(self) -> int:
        with self._lock:
            return self._used.count(False)

    def acquire(self) -> int:
        """Take a free slot.

        Returns:
            The index of the slot.

        Raises:
            SlotExhausted: if every slot is taken.
        """
        with self._lock:
            for i, used in enumerate(self._used):
                if not used:
                    self._used[i] = True
                    return i
        raise SlotExhausted(f"all {self.capacity} session slots are in use")

    def release(self, index: int):
        """Give back a slot.

        Raises:
            AlreadyReleased: if the slot is not taken.
        """
        with self._lock:
            if not self._used[index]:
                raise AlreadyReleased(f"session slot {index} is not in use")
            self._used[index] = False


class SessionManager(object):
    """Owns the persistent sessions started over one TCTI.

    Args:
        tcti (TCTI): The connection to the TPM.
        config (SessionConfig): Defaults to SessionConfig.default().
    """

    def __init__(self, tcti, config: Optional[SessionConfig] = None):
        self._tcti = tcti
        self._config = config if config is not None else SessionConfig.default()
        self._pool = SlotPool(self._config.max_sessions)
        self._active = dict()

    @property
    def tcti(self):
        return self._tcti

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def pool(self) -> SlotPool:
        return self._pool

    def build_session(self, descriptor: SessionDescriptor) -> Session:
        return Session(descriptor, Ephemeral(), self._config)

    def start_session(
        self, descriptor: SessionDescriptor, timeout: Optional[float] = None
    ) -> Tuple[Session, Callable[[], None]]:
        """Start a persistent session on the TPM.

        Args:
            descriptor (HMACSession): The session to start.
            timeout (float): Seconds to wait for the TPM.

        Returns:
            The session and its release function, which must be called exactly once.

        Raises:
            ConfigurationError: for password descriptors.
            SlotExhausted: if no slot is free here or on the TPM.
            TransportError: on I/O failures, no slot is consumed.
        """
        from .command import start_auth_session

        if isinstance(descriptor, PasswordSession):
            raise ConfigurationError("password sessions have no state on the TPM")
        slot = self._pool.acquire()
        try:
            session = Session(descriptor, None, self._config)
            handle, nonce_caller, nonce_tpm, skey = start_auth_session(
                self._tcti, descriptor, timeout=self._timeout(timeout)
            )
        except BaseException:
            self._pool.release(slot)
            raise
        session._handle = Persistent(handle, slot)
        session._activate(handle, nonce_caller, nonce_tpm, skey)
        session._release = lambda: self._release(session)
        self._active[slot] = session
        logger.debug(f"started session 0x{handle:08X} in slot {slot}")
        return session, session.release

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self._config.timeout if timeout is None else timeout

    def _release(self, session: Session, timeout: Optional[float] = None):
        from .command import flush_context

        if session.state == SessionState.RELEASED:
            raise AlreadyReleased(
                f"session 0x{session.handle.device_handle:08X} was already released"
            )
        slot = session.handle.slot_index
        try:
            flush_context(self._tcti, session.handle.device_handle, self._timeout(timeout))
        finally:
            session._state = SessionState.RELEASED
            self._active.pop(slot, None)
            self._pool.release(slot)
            logger.debug(f"released session slot {slot}")

    def close(self):
        """Release every session still held by the manager."""
        errors = []
        for session in list(self._active.values()):
            try:
                self._release(session)
            except SessionError as e:
                errors.append(e)
        if errors:
            raise errors[0]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


_managers = weakref.WeakKeyDictionary()


def manager_for(tcti, config: Optional[SessionConfig] = None) -> SessionManager:
    """The session manager of a TCTI, created on first use.

    Args:
        tcti (TCTI): The connection to the TPM.
        config (SessionConfig): The configuration of the manager, None accepts the
            configuration of an existing manager.

    Raises:
        ConfigurationError: if the TCTI already has a manager with another configuration.
    """
    manager = _managers.get(tcti)
    if manager is None:
        manager = SessionManager(tcti, config)
        _managers[tcti] = manager
    elif config is not None and config != manager.config:
        raise ConfigurationError(
            f"TCTI already has a session manager with configuration {manager.config.export()}"
        )
    return manager


def build_session(
    descriptor: SessionDescriptor, config: Optional[SessionConfig] = None
) -> Session:
    """Build an ephemeral session, started inline by each exchange that uses it."""
    return Session(descriptor, Ephemeral(), config)


def start_session(
    tcti, descriptor: SessionDescriptor, timeout: Optional[float] = None
) -> Tuple[Session, Callable[[], None]]:
    """Start a persistent session with the session manager of the TCTI.

    Returns:
        The session and its release function, which must be called exactly once.
    """
    return manager_for(tcti).start_session(descriptor, timeout)


def _auth_command(
    session: Session,
    cphash: bytes,
    attributes: int,
    include_auth: bool = True,
    nonce_decrypt: bytes = b"",
    nonce_encrypt: bytes = b"",
) -> TPMS_AUTH_COMMAND:
    session._check_active()
    if session.is_password:
        return TPMS_AUTH_COMMAND(
            sessionHandle=TPM2_RH.PW,
            nonce=b"",
            sessionAttributes=attributes & TPMA_SESSION.CONTINUESESSION,
            hmac=session.descriptor.value,
        )
    d = session.descriptor
    # a command parameter may already be encrypted with the pending nonce
    nonce_caller = session.nonces.pending
    if nonce_caller is None:
        nonce_caller = session.nonces.issue(d.nonce_size)
    session._include_auth = include_auth
    digest = command_hmac(
        d.hash_alg,
        session._hmac_key(include_auth),
        cphash,
        nonce_caller,
        session.nonces.nonce_tpm,
        attributes,
        nonce_decrypt,
        nonce_encrypt,
    )
    return TPMS_AUTH_COMMAND(
        sessionHandle=session.device_handle,
        nonce=nonce_caller,
        sessionAttributes=attributes,
        hmac=digest,
    )


def authorize(
    session: Session,
    cp_hash: bytes,
    nonces: Optional[Tuple[bytes, bytes]] = None,
    attributes: Optional[int] = None,
    include_auth: bool = True,
) -> bytes:
    """Compute the authorization of a command for a session.

    The caller nonce is the one a command parameter was encrypted with by
    :func:`encrypt_parameter`, or a fresh one. It stays pending until
    :func:`verify_response` accepts the response.

    Args:
        session (Session): An active session or a password session.
        cp_hash (bytes): The command parameter hash.
        nonces (tuple of bytes): The TPM nonces of other sessions of the command that
            decrypt and encrypt parameters, (nonce_decrypt, nonce_encrypt).
        attributes (int): The session attributes, defaults to continueSession plus the
            encryption direction of the session.
        include_auth (bool): False if the session is bound to the authorized entity or
            authorizes nothing.

    Returns:
        The marshaled TPMS_AUTH_COMMAND.
    """
    if attributes is None:
        attributes = TPMA_SESSION.CONTINUESESSION
        if session.encryption is not None:
            attributes |= session.encryption.direction
    nonce_decrypt, nonce_encrypt = nonces if nonces is not None else (b"", b"")
    return _auth_command(
        session, cp_hash, attributes, include_auth, nonce_decrypt, nonce_encrypt
    ).marshal()


def verify_response(
    session: Session,
    rp_hash: bytes,
    auth_response: Union[bytes, TPMS_AUTH_RESPONSE],
    auth_value: Optional[bytes] = None,
) -> None:
    """Verify the response authorization of a session and commit the nonces.

    Args:
        session (Session): The session that authorized the command.
        rp_hash (bytes): The response parameter hash.
        auth_response (Union[bytes, TPMS_AUTH_RESPONSE]): The response authorization
            of the session.
        auth_value (bytes): The auth value the TPM used for the response when the
            command changed it, defaults to the auth value of the descriptor.

    Raises:
        NonceMismatch: if the response HMAC does not verify or the TPM nonce is
            replayed, the session is discarded.
        ProtocolViolation: if a password session response carries a nonce or HMAC.
    """
    session._check_active()
    if not isinstance(auth_response, TPMS_AUTH_RESPONSE):
        auth_response, _ = TPMS_AUTH_RESPONSE.unmarshal(bytes(auth_response))
    if session.is_password:
        if len(auth_response.nonce) or len(auth_response.hmac):
            raise ProtocolViolation("password session response carries a nonce or HMAC")
        return
    nonces = session.nonces
    if nonces.pending is None:
        raise NonceMismatch("response received without a pending caller nonce")
    if auth_value is None:
        auth_value = session.descriptor.auth_value
    key = hmac_key(session._session_key, _to_bytes(auth_value), session._include_auth)
    try:
        if not check_response_hmac(
            session.hash_alg,
            key,
            auth_response.hmac,
            rp_hash,
            bytes(auth_response.nonce),
            nonces.pending,
            auth_response.sessionAttributes,
        ):
            raise NonceMismatch(
                f"response HMAC of session 0x{session.device_handle:08X} does not verify"
            )
        nonces.commit(auth_response.nonce)
    except NonceMismatch:
        nonces.abandon()
        session.discard()
        raise


def _check_encrypts(session: Session, direction: Optional[int]) -> Direction:
    if session.encryption is None:
        raise ConfigurationError("session does not encrypt parameters")
    if direction is None:
        # command parameters first, so both directions of the codec agree
        if session.encryption.command:
            direction = Direction.IN
        else:
            direction = Direction.OUT
    if not session.encryption.direction & direction:
        raise ConfigurationError(
            f"session encrypts {session.encryption.direction}, not {Direction(direction)}"
        )
    session._check_active()
    return Direction(direction)


def _codec_nonces(session: Session, direction: int) -> Tuple[bytes, bytes]:
    nonces = session.nonces
    if direction == Direction.IN:
        return nonces.pending, nonces.nonce_tpm
    return nonces.nonce_tpm, nonces.nonce_caller


def _codec_key(session: Session, include_auth: Optional[bool]) -> bytes:
    if include_auth is not None:
        session._include_auth = include_auth
    return session._hmac_key()


def encrypt_parameter(
    session: Session,
    plaintext: bytes,
    direction: Optional[int] = None,
    include_auth: Optional[bool] = None,
) -> bytes:
    """Encrypt the contents of the first parameter.

    A command parameter (Direction.IN) is encrypted with a fresh caller nonce, which
    stays pending for :func:`authorize`. A response parameter (Direction.OUT) is
    encrypted with the latest TPM nonce. The direction defaults to IN if the session
    encrypts command parameters, OUT otherwise.

    Args:
        session (Session): An active session with parameter encryption.
        plaintext (bytes): The contents of the parameter, without the size.
        direction (Direction): IN or OUT.
        include_auth (bool): Whether the session value includes the auth value, False
            for a session bound to the authorized entity. Defaults to the setting of
            the last authorization.

    Raises:
        ConfigurationError: if the session does not encrypt in this direction or the
            plaintext exceeds the configured maximum parameter size.
    """
    direction = _check_encrypts(session, direction)
    if direction == Direction.IN:
        session.nonces.issue(session.descriptor.nonce_size)
    newer, older = _codec_nonces(session, direction)
    return parameter.encrypt(
        session.hash_alg,
        _codec_key(session, include_auth),
        newer,
        older,
        session.encryption.key_bits,
        plaintext,
        session.config.max_parameter_size,
    )


def decrypt_parameter(
    session: Session,
    ciphertext: bytes,
    direction: Optional[int] = None,
    include_auth: Optional[bool] = None,
) -> bytes:
    """Decrypt the contents of the first parameter, the inverse of encrypt_parameter.

    The direction defaults the same way, pass Direction.OUT to decrypt a response
    parameter of a session that encrypts both ways.

    Raises:
        ConfigurationError: if the session does not encrypt in this direction or the
            ciphertext exceeds the configured maximum parameter size.
        SessionError: if a command parameter is decrypted while no exchange is pending.
    """
    direction = _check_encrypts(session, direction)
    if direction == Direction.IN and session.nonces.pending is None:
        raise SessionError("no command parameter of this session is pending")
    newer, older = _codec_nonces(session, direction)
    return parameter.decrypt(
        session.hash_alg,
        _codec_key(session, include_auth),
        newer,
        older,
        session.encryption.key_bits,
        ciphertext,
        session.config.max_parameter_size,
    )
