# SPDX-License-Identifier: BSD-2
"""
The command execution engine.

Frames commands with their authorization area, starts ephemeral sessions inline,
encrypts and decrypts the first parameter, verifies the response authorizations and
commits the session nonces.
"""
from typing import List, NamedTuple, Optional, Sequence, Tuple

from .constants import (
    TPM2_ALG,
    TPM2_CC,
    TPM2_RH,
    TPM2_SE,
    TPM2_ST,
    TPMA_SESSION,
)
from .derivation import (
    check_response_hmac,
    cp_hash,
    hmac_key,
    new_nonce,
    rp_hash,
    session_key,
)
from .descriptor import HMACSession
from .exceptions import (
    ConfigurationError,
    NonceMismatch,
    ProtocolViolation,
    SessionError,
    TransportError,
    _error_from_rc,
)
from .internal.crypto import SALT_LABEL, _generate_seed
from .internal.utils import _unpack_int
from .log import session_loggers
from . import parameter
from .session import Session, SessionState, _auth_command
from .TSS2_Exception import TSS2_Exception
from .types import (
    TPM2B_ENCRYPTED_SECRET,
    TPM2B_NONCE,
    TPMS_AUTH_RESPONSE,
    TPMT_SYM_DEF,
)

logger = session_loggers["session"]

_HEADER_SIZE = 10


class Response(NamedTuple):
    """A successful response, its handles and its parameters in the clear."""

    handles: Tuple[int, ...]
    parameters: bytes


def _cc_name(cc: int) -> str:
    try:
        return TPM2_CC.to_string(cc)
    except ValueError:
        return f"0x{cc:X}"


def marshal_command(
    command_code: int, handles: Sequence[int], parameters: bytes, auth_area: Optional[bytes] = None
) -> bytes:
    """Frame a command.

    Args:
        command_code (int): The command code.
        handles (sequence of int): The handle area.
        parameters (bytes): The marshaled parameters.
        auth_area (bytes): The marshaled authorizations, None for a command without sessions.

    Returns:
        The command buffer.
    """
    body = int(command_code).to_bytes(4, "big")
    body += b"".join(int(h).to_bytes(4, "big") for h in handles)
    if auth_area is None:
        tag = TPM2_ST.NO_SESSIONS
    else:
        tag = TPM2_ST.SESSIONS
        body += len(auth_area).to_bytes(4, "big") + auth_area
    body += parameters
    return tag.marshal() + (len(body) + 6).to_bytes(4, "big") + body


def parse_header(resp: bytes) -> Tuple[int, int]:
    """Returns the tag and the response code of a response.

    Raises:
        ProtocolViolation: if the response is shorter than its header or its size field
            does not match.
    """
    if len(resp) < _HEADER_SIZE:
        raise ProtocolViolation(f"response of {len(resp)} bytes is too short")
    tag = int.from_bytes(resp[0:2], "big")
    size = int.from_bytes(resp[2:6], "big")
    rc = int.from_bytes(resp[6:10], "big")
    if size != len(resp):
        raise ProtocolViolation(
            f"response size field {size} does not match the {len(resp)} bytes received"
        )
    return tag, rc


def _exchange(tcti, command: bytes, timeout: Optional[float]) -> Tuple[int, int, bytes]:
    resp = tcti.exchange(command, timeout)
    tag, rc = parse_header(resp)
    return tag, rc, resp


def execute_no_sessions(
    tcti,
    command_code: int,
    handles: Sequence[int] = (),
    parameters: bytes = b"",
    response_handles: int = 0,
    timeout: Optional[float] = None,
) -> Response:
    """Execute a command that carries no authorization area.

    Raises:
        TSS2_Exception: for TPM errors, or one of its mapped subclasses.
        TransportError: on I/O failures.
    """
    cmd = marshal_command(command_code, handles, parameters)
    logger.debug(f"executing {_cc_name(command_code)} without sessions")
    tag, rc, resp = _exchange(tcti, cmd, timeout)
    if rc != 0:
        raise _error_from_rc(rc)
    offset = _HEADER_SIZE
    rhandles = []
    for _ in range(response_handles):
        h, offset = _unpack_int(resp, offset, 4)
        rhandles.append(h)
    if tag == TPM2_ST.SESSIONS:
        _, offset = _unpack_int(resp, offset, 4)
    return Response(tuple(rhandles), bytes(resp[offset:]))


def start_auth_session(
    tcti, descriptor: HMACSession, timeout: Optional[float] = None
) -> Tuple[int, bytes, bytes, bytes]:
    """Start an HMAC session on the TPM.

    Returns:
        A tuple of the session handle, the caller nonce, the TPM nonce and the session key.

    Raises:
        SlotExhausted: if the TPM has no free session slot.
        TSS2_Exception: for other TPM errors.
        TransportError: on I/O failures.
    """
    km = descriptor.key_material
    tpm_key = TPM2_RH.NULL
    bind = TPM2_RH.NULL
    salt = None
    encrypted_salt = b""
    bind_auth = None
    if descriptor.is_salted:
        tpm_key = km.salt_key_handle
        salt, encrypted_salt = _generate_seed(km.salt_key_public, SALT_LABEL)
    elif descriptor.is_bound:
        bind = km.bind_handle
        bind_auth = km.bind_auth
    if descriptor.encryption is not None:
        symmetric = TPMT_SYM_DEF(
            algorithm=TPM2_ALG.AES,
            keyBits=descriptor.encryption.key_bits,
            mode=TPM2_ALG.CFB,
        )
    else:
        symmetric = TPMT_SYM_DEF(algorithm=TPM2_ALG.NULL)
    nonce_caller = new_nonce(descriptor.nonce_size)
    params = (
        TPM2B_NONCE(nonce_caller).marshal()
        + TPM2B_ENCRYPTED_SECRET(encrypted_salt).marshal()
        + TPM2_SE.HMAC.marshal()
        + symmetric.marshal()
        + TPM2_ALG(descriptor.hash_alg).marshal()
    )
    resp = execute_no_sessions(
        tcti,
        TPM2_CC.StartAuthSession,
        handles=(tpm_key, bind),
        parameters=params,
        response_handles=1,
        timeout=timeout,
    )
    handle = resp.handles[0]
    nonce_tpm, _ = TPM2B_NONCE.unmarshal(resp.parameters)
    nonce_tpm = bytes(nonce_tpm)
    skey = session_key(descriptor.hash_alg, nonce_tpm, nonce_caller, bind_auth, salt)
    logger.debug(
        f"started session 0x{handle:08X}, salted={descriptor.is_salted} bound={descriptor.is_bound}"
    )
    return handle, nonce_caller, nonce_tpm, skey


def flush_context(tcti, handle: int, timeout: Optional[float] = None) -> None:
    """Flush a session or a transient object from the TPM."""
    execute_no_sessions(
        tcti,
        TPM2_CC.FlushContext,
        parameters=int(handle).to_bytes(4, "big"),
        timeout=timeout,
    )


def _flush_quietly(tcti, session: Session, timeout: Optional[float]):
    handle = session.device_handle
    session._reset()
    if handle is None:
        return
    try:
        flush_context(tcti, handle, timeout)
    except (SessionError, TSS2_Exception) as e:
        logger.warning(f"failed to flush ephemeral session 0x{handle:08X}: {e}")


def _pick(sessions: List[Session], flag: str, wanted: bool) -> Optional[Session]:
    if not wanted:
        return None
    picked = [
        s for s in sessions if s.encryption is not None and getattr(s.encryption, flag)
    ]
    if len(picked) > 1:
        what = "decrypt command" if flag == "command" else "encrypt response"
        raise ConfigurationError(f"only one session may {what} parameters")
    return picked[0] if picked else None


def _check_sessions(sessions: List[Session], auth_count: int):
    if len(sessions) > 3:
        raise ConfigurationError(f"at most 3 sessions per command, got {len(sessions)}")
    if len(sessions) < auth_count:
        raise ConfigurationError(
            f"command needs {auth_count} authorization sessions, got {len(sessions)}"
        )
    if len(set(id(s) for s in sessions)) != len(sessions):
        raise ConfigurationError("a session can only be used once per command")
    for i, s in enumerate(sessions):
        if not isinstance(s, Session):
            raise ConfigurationError(
                f"expected session{i + 1} to be a Session, got {s.__class__.__name__}"
            )
        s._check_usable()
        if i >= auth_count and s.is_password:
            raise ConfigurationError(f"password session{i + 1} does not authorize a handle")
        if i >= auth_count and s.encryption is None:
            raise ConfigurationError(
                f"session{i + 1} neither authorizes a handle nor encrypts parameters"
            )


def execute(
    tcti,
    command_code: int,
    handles: Sequence[int] = (),
    names: Sequence[bytes] = (),
    parameters: bytes = b"",
    sessions: Sequence[Optional[Session]] = (),
    auth_count: int = 0,
    response_handles: int = 0,
    command_marked: Sequence[int] = (),
    response_marked: Sequence[int] = (),
    response_auth: Optional[bytes] = None,
    timeout: Optional[float] = None,
) -> Response:
    """Execute a command with up to three sessions.

    The first auth_count sessions authorize the first auth_count handles, further
    sessions only encrypt.

    Args:
        tcti (TCTI): The connection to the TPM.
        command_code (int): The command code.
        handles (sequence of int): The handle area.
        names (sequence of bytes): The names of the handles, in the same order.
        parameters (bytes): The marshaled parameters.
        sessions (sequence of Session): The sessions, None entries are skipped.
        auth_count (int): How many handles need authorization.
        response_handles (int): Number of handles in the response.
        command_marked (sequence of int): The indices of the command parameters to
            encrypt, at most the first one, which must be a sized buffer.
        response_marked (sequence of int): The indices of the response parameters to
            encrypt, at most the first one, which must be a sized buffer.
        response_auth (bytes): The auth value the TPM uses for the first response
            authorization when the command changes it.
        timeout (float): Seconds to wait for the response.

    Returns:
        The response handles and the response parameters in the clear.

    Raises:
        ConfigurationError: for invalid session combinations or parameter markings,
            before anything is sent.
        WrongSecret: if the TPM rejected an authorization.
        SlotExhausted: if an ephemeral session could not be started.
        NonceMismatch: if a response authorization does not verify.
        TransportError: on I/O failures, the sessions of the exchange are discarded.
        TSS2_Exception: for other TPM errors.
    """
    sessions = [s for s in sessions if s is not None]
    if len(names) != len(handles):
        raise ConfigurationError(
            f"expected a name for each of the {len(handles)} handles, got {len(names)}"
        )
    encrypt_command = parameter.check_marked(command_marked) == 0
    encrypt_response = parameter.check_marked(response_marked) == 0
    _check_sessions(sessions, auth_count)
    if not sessions:
        return execute_no_sessions(
            tcti, command_code, handles, parameters, response_handles, timeout
        )
    decrypt_session = _pick(sessions, "command", encrypt_command and len(parameters) >= 2)
    encrypt_session = _pick(sessions, "response", encrypt_response)
    extra = sessions[auth_count:]
    sessions = sessions[:auth_count] + [
        s for s in extra if s is decrypt_session or s is encrypt_session
    ]
    if len(sessions) != auth_count + len(extra):
        logger.debug(f"{_cc_name(command_code)} has no parameter to encrypt, skipping sessions")
    if not sessions:
        return execute_no_sessions(
            tcti, command_code, handles, parameters, response_handles, timeout
        )
    hmac_sessions = [s for s in sessions if not s.is_password]
    started = []
    try:
        for s in hmac_sessions:
            if s.state == SessionState.UNSTARTED:
                s._activate(*start_auth_session(tcti, s.descriptor, timeout))
                started.append(s)
        attrs = []
        include = []
        for i, s in enumerate(sessions):
            a = TPMA_SESSION(0)
            if s.is_password or s.is_persistent:
                a |= TPMA_SESSION.CONTINUESESSION
            if s is decrypt_session:
                a |= TPMA_SESSION.DECRYPT
            if s is encrypt_session:
                a |= TPMA_SESSION.ENCRYPT
            attrs.append(a)
            include.append(i < auth_count and not s.bound_to(names[i]))
            s._include_auth = include[-1]
        for s in hmac_sessions:
            s.nonces.issue(s.descriptor.nonce_size)

        if decrypt_session is not None:
            s = decrypt_session
            parameters = parameter.transform_first(
                parameters,
                lambda c: parameter.encrypt(
                    s.hash_alg,
                    s._hmac_key(),
                    s.nonces.pending,
                    s.nonces.nonce_tpm,
                    s.encryption.key_bits,
                    c,
                    s.config.max_parameter_size,
                ),
            )

        cphashes = dict()
        auths = []
        for i, s in enumerate(sessions):
            if s.is_password:
                auths.append(_auth_command(s, b"", attrs[i]))
                continue
            if s.hash_alg not in cphashes:
                cphashes[s.hash_alg] = cp_hash(s.hash_alg, command_code, names, parameters)
            nonce_decrypt = nonce_encrypt = b""
            if i == 0:
                if decrypt_session is not None and decrypt_session is not s:
                    nonce_decrypt = decrypt_session.nonces.nonce_tpm
                if encrypt_session is not None and encrypt_session is not s:
                    nonce_encrypt = encrypt_session.nonces.nonce_tpm
            auths.append(
                _auth_command(
                    s,
                    cphashes[s.hash_alg],
                    attrs[i],
                    include[i],
                    nonce_decrypt,
                    nonce_encrypt,
                )
            )
    except BaseException:
        for s in hmac_sessions:
            s.nonces.abandon()
        for s in started:
            _flush_quietly(tcti, s, timeout)
        raise

    auth_area = b"".join(a.marshal() for a in auths)
    cmd = marshal_command(command_code, handles, parameters, auth_area)
    logger.debug(
        f"executing {_cc_name(command_code)} with {len(sessions)} sessions, "
        f"decrypt={decrypt_session is not None} encrypt={encrypt_session is not None}"
    )
    try:
        tag, rc, resp = _exchange(tcti, cmd, timeout)
    except (TransportError, ProtocolViolation):
        for s in hmac_sessions:
            s.nonces.abandon()
            s.discard()
        raise

    if rc != 0:
        for s in hmac_sessions:
            s.nonces.abandon()
        # the TPM keeps sessions of failed commands, even without continueSession
        for s in started:
            _flush_quietly(tcti, s, timeout)
        raise _error_from_rc(rc)

    try:
        rhandles, rparams, rauths = _parse_response(resp, tag, response_handles, len(sessions))
        _verify(sessions, rauths, command_code, rparams, include, response_auth)
    except ProtocolViolation:
        for s in hmac_sessions:
            s.nonces.abandon()
            s.discard()
        raise

    for s, r in zip(sessions, rauths):
        if not s.is_password:
            s.nonces.commit(r.nonce)

    if encrypt_session is not None:
        s = encrypt_session
        rparams = parameter.transform_first(
            rparams,
            lambda c: parameter.decrypt(
                s.hash_alg,
                s._hmac_key(),
                s.nonces.nonce_tpm,
                s.nonces.nonce_caller,
                s.encryption.key_bits,
                c,
                s.config.max_parameter_size,
            ),
        )

    # continueSession was clear, the TPM flushed the ephemeral sessions
    for s in hmac_sessions:
        if not s.is_persistent:
            s._reset()

    return Response(rhandles, rparams)


def _parse_response(
    resp: bytes, tag: int, response_handles: int, session_count: int
) -> Tuple[Tuple[int, ...], bytes, List[TPMS_AUTH_RESPONSE]]:
    if tag != TPM2_ST.SESSIONS:
        raise ProtocolViolation(f"expected a response with sessions, got tag 0x{tag:04X}")
    try:
        offset = _HEADER_SIZE
        rhandles = []
        for _ in range(response_handles):
            h, offset = _unpack_int(resp, offset, 4)
            rhandles.append(h)
        psize, offset = _unpack_int(resp, offset, 4)
        if offset + psize > len(resp):
            raise ValueError(f"parameter size {psize} exceeds the response")
        rparams = bytes(resp[offset : offset + psize])
        offset += psize
        rauths = []
        for _ in range(session_count):
            auth, consumed = TPMS_AUTH_RESPONSE.unmarshal(resp[offset:])
            rauths.append(auth)
            offset += consumed
    except ValueError as e:
        raise ProtocolViolation(f"malformed response: {e}") from e
    if offset != len(resp):
        raise ProtocolViolation(f"{len(resp) - offset} unexpected bytes after the response")
    return tuple(rhandles), rparams, rauths


def _verify(
    sessions: List[Session],
    rauths: List[TPMS_AUTH_RESPONSE],
    command_code: int,
    rparams: bytes,
    include: List[bool],
    response_auth: Optional[bytes],
):
    rphashes = dict()
    for i, (s, r) in enumerate(zip(sessions, rauths)):
        if s.is_password:
            if len(r.nonce) or len(r.hmac):
                raise ProtocolViolation("password session response carries a nonce or HMAC")
            continue
        nonce_tpm = bytes(r.nonce)
        if not nonce_tpm or nonce_tpm == s.nonces.nonce_tpm:
            raise NonceMismatch(
                f"session 0x{s.device_handle:08X} received a missing or replayed TPM nonce"
            )
        if s.hash_alg not in rphashes:
            rphashes[s.hash_alg] = rp_hash(s.hash_alg, 0, command_code, rparams)
        auth = s.descriptor.auth_value
        if i == 0 and response_auth is not None:
            auth = response_auth
        key = hmac_key(s._session_key, auth, include[i])
        if not check_response_hmac(
            s.hash_alg,
            key,
            r.hmac,
            rphashes[s.hash_alg],
            nonce_tpm,
            s.nonces.pending,
            r.sessionAttributes,
        ):
            raise NonceMismatch(
                f"response HMAC of session 0x{s.device_handle:08X} does not verify"
            )
