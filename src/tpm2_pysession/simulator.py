# SPDX-License-Identifier: BSD-2
"""
An in-process TPM for tests and examples.

:class:`SoftwareTPM` implements the command subset used by the session layer, with
password and HMAC authorizations, bound and salted sessions and AES-CFB parameter
encryption. It checks authorizations the way a TPM does and answers with real response
codes. :class:`SimulatorTCTI` connects it to the command engine.

The simulator is not a TPM: keys live in process memory, there is no dictionary attack
protection and nothing survives the process.
"""
import hmac
import threading
from typing import Dict, List, NamedTuple, Optional, Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    load_der_private_key,
)

from .constants import (
    TPM2_ALG,
    TPM2_CC,
    TPM2_HR,
    TPM2_MAX,
    TPM2_RC,
    TPM2_RH,
    TPM2_SE,
    TPM2_ST,
    TPM2_SU,
    TPMA_NV,
    TPMA_OBJECT,
    TPMA_SESSION,
)
from .derivation import (
    command_hmac,
    cp_hash,
    hmac_key,
    response_hmac,
    rp_hash,
    session_key,
    trim_auth,
)
from .exceptions import TransportError
from .internal.crypto import (
    SALT_LABEL,
    _decrypt,
    _encrypt,
    _get_curve,
    _get_digest,
    _hash,
    _hmac,
    _secret_to_seed,
    random_bytes,
)
from .internal.utils import _pack_sized, _unpack_int, _unpack_sized
from .log import session_loggers
from .parameter import cfb_key_iv, split_first, join_first
from .TCTI import PyTCTI
from .types import (
    TPM2B_DIGEST,
    TPM2B_NAME,
    TPM2B_NV_PUBLIC,
    TPM2B_PUBLIC,
    TPM2B_PUBLIC_KEY_RSA,
    TPM2B_SENSITIVE_CREATE,
    TPMS_AUTH_COMMAND,
    TPMS_AUTH_RESPONSE,
    TPMS_ECC_POINT,
    TPMT_SYM_DEF,
)

logger = session_loggers["simulator"]

SESSION_HANDLE_BASE = TPM2_HR.HMAC_SESSION
TRANSIENT_HANDLE_BASE = TPM2_HR.TRANSIENT
MAX_SYM_DATA = TPM2_MAX.SYM_DATA
MAX_NV_SIZE = TPM2_MAX.NV_BUFFER_SIZE
_HIERARCHIES = (TPM2_RH.OWNER, TPM2_RH.ENDORSEMENT, TPM2_RH.PLATFORM, TPM2_RH.LOCKOUT)


class TPMError(Exception):
    """A command failed with a TPM response code."""

    def __init__(self, rc: int):
        super().__init__(f"TPM error 0x{rc:X}")
        self.rc = rc


def _param_error(rc: int, n: int) -> TPMError:
    return TPMError(rc | TPM2_RC.P | (n << 8))


def _handle_error(rc: int, n: int) -> TPMError:
    return TPMError(rc | (n << 8))


def _session_error(rc: int, n: int) -> TPMError:
    return TPMError(rc | TPM2_RC.S | (n << 8))


class _Reader(object):
    """Reads the parameter area of a command, short buffers fail with INSUFFICIENT."""

    def __init__(self, buf: bytes):
        self._buf = buf
        self._offset = 0
        self._n = 0

    def _fail(self):
        return _param_error(TPM2_RC.INSUFFICIENT, max(self._n, 1))

    def int(self, size: int) -> int:
        self._n += 1
        try:
            value, self._offset = _unpack_int(self._buf, self._offset, size)
        except ValueError:
            raise self._fail()
        return value

    def sized(self) -> bytes:
        self._n += 1
        try:
            value, self._offset = _unpack_sized(self._buf, self._offset)
        except ValueError:
            raise self._fail()
        return value

    def object(self, tipe):
        self._n += 1
        try:
            value, consumed = tipe.unmarshal(self._buf[self._offset :])
        except ValueError:
            raise self._fail()
        self._offset += consumed
        return value

    def skip_pcr_selection(self):
        count = self.int(4)
        for _ in range(count):
            self.int(2)
            size = self.int(1)
            if self._offset + size > len(self._buf):
                raise self._fail()
            self._offset += size


class _Object(object):
    def __init__(self, public, auth: bytes, data: bytes, key, seed: bytes):
        self.public = public
        self.auth = auth
        self.data = data
        self.key = key
        self.seed = seed

    @property
    def name(self) -> bytes:
        return bytes(self.public.get_name())


class _NVIndex(object):
    def __init__(self, public, auth: bytes):
        self.public = public
        self.auth = auth
        self.data = bytearray(public.dataSize)

    @property
    def name(self) -> bytes:
        return bytes(self.public.get_name())


class _AuthSession(object):
    def __init__(self, handle, hash_alg, nonce_tpm, skey, key_bits, bind_name):
        self.handle = handle
        self.hash_alg = hash_alg
        self.nonce_tpm = nonce_tpm
        self.nonce_caller = b""
        self.session_key = skey
        self.key_bits = key_bits
        self.bind_name = bind_name


class _CommandInfo(NamedTuple):
    handles: int
    auths: int
    handler: str
    decrypt: bool
    encrypt: bool


_commands = {
    TPM2_CC.Startup: _CommandInfo(0, 0, "startup", False, False),
    TPM2_CC.StartAuthSession: _CommandInfo(2, 0, "start_auth_session", True, True),
    TPM2_CC.FlushContext: _CommandInfo(0, 0, "flush_context", False, False),
    TPM2_CC.GetRandom: _CommandInfo(0, 0, "get_random", False, True),
    TPM2_CC.HierarchyChangeAuth: _CommandInfo(1, 1, "hierarchy_change_auth", True, False),
    TPM2_CC.CreatePrimary: _CommandInfo(1, 1, "create_primary", True, True),
    TPM2_CC.Create: _CommandInfo(1, 1, "create", True, True),
    TPM2_CC.Load: _CommandInfo(1, 1, "load", True, True),
    TPM2_CC.ReadPublic: _CommandInfo(1, 0, "read_public", False, True),
    TPM2_CC.Unseal: _CommandInfo(1, 1, "unseal", False, True),
    TPM2_CC.NV_DefineSpace: _CommandInfo(1, 1, "nv_define_space", True, False),
    TPM2_CC.NV_UndefineSpace: _CommandInfo(2, 1, "nv_undefine_space", False, False),
    TPM2_CC.NV_ReadPublic: _CommandInfo(1, 0, "nv_read_public", False, True),
    TPM2_CC.NV_Write: _CommandInfo(2, 1, "nv_write", True, False),
    TPM2_CC.NV_Read: _CommandInfo(2, 1, "nv_read", False, True),
}


def _error_response(rc: int) -> bytes:
    return (
        TPM2_ST.NO_SESSIONS.marshal() + (10).to_bytes(4, "big") + int(rc).to_bytes(4, "big")
    )


def _creation_outputs(hierarchy: int, name_alg: int) -> bytes:
    # empty creation data, its hash and a ticket without a digest
    return (
        _pack_sized(b"")
        + TPM2B_DIGEST(_hash(name_alg, b"")).marshal()
        + TPM2_ST.CREATION.marshal()
        + int(hierarchy).to_bytes(4, "big")
        + TPM2B_DIGEST(b"").marshal()
    )


class SoftwareTPM(object):
    """A software TPM executing marshaled commands.

    Args:
        max_sessions (int): Number of session slots, StartAuthSession fails with
            TPM2_RC.SESSION_HANDLES when all are in use.
    """

    def __init__(self, max_sessions: int = 8):
        self._lock = threading.Lock()
        self._started = False
        self._hierarchy_auth = {h: b"" for h in _HIERARCHIES}
        self._objects = dict()  # type: Dict[int, _Object]
        self._nv = dict()  # type: Dict[int, _NVIndex]
        self._sessions = [None] * max_sessions  # type: List[Optional[_AuthSession]]
        self._primaries = dict()
        self._next_transient = TRANSIENT_HANDLE_BASE
        self._storage_key = random_bytes(32)
        self._integrity_key = random_bytes(32)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def max_sessions(self) -> int:
        return len(self._sessions)

    @property
    def active_sessions(self) -> int:
        """Number of session slots in use."""
        return sum(1 for s in self._sessions if s is not None)

    @property
    def loaded_objects(self) -> int:
        return len(self._objects)

    def hierarchy_auth(self, hierarchy: int) -> bytes:
        return self._hierarchy_auth[hierarchy]

    def execute(self, command: bytes) -> bytes:
        """Execute a marshaled command and return the marshaled response."""
        with self._lock:
            try:
                return self._execute(bytes(command))
            except TPMError as e:
                logger.debug(f"command failed with 0x{e.rc:X}")
                return _error_response(e.rc)

    def _execute(self, cmd: bytes) -> bytes:
        if len(cmd) < 10:
            raise TPMError(TPM2_RC.COMMAND_SIZE)
        tag = int.from_bytes(cmd[0:2], "big")
        size = int.from_bytes(cmd[2:6], "big")
        cc = int.from_bytes(cmd[6:10], "big")
        if size != len(cmd):
            raise TPMError(TPM2_RC.COMMAND_SIZE)
        if tag not in (TPM2_ST.NO_SESSIONS, TPM2_ST.SESSIONS):
            raise TPMError(TPM2_RC.BAD_TAG)
        info = _commands.get(cc)
        if info is None:
            raise TPMError(TPM2_RC.COMMAND_CODE)
        if not self._started and cc != TPM2_CC.Startup:
            raise TPMError(TPM2_RC.INITIALIZE)
        logger.debug(f"executing {TPM2_CC.to_string(cc)}")

        offset = 10
        handles = []
        for i in range(info.handles):
            try:
                h, offset = _unpack_int(cmd, offset, 4)
            except ValueError:
                raise TPMError(TPM2_RC.COMMAND_SIZE)
            self._check_handle(cc, h, i + 1)
            handles.append(h)

        auths = []
        if tag == TPM2_ST.SESSIONS:
            try:
                auth_size, offset = _unpack_int(cmd, offset, 4)
            except ValueError:
                raise TPMError(TPM2_RC.AUTHSIZE)
            end = offset + auth_size
            if auth_size == 0 or end > len(cmd):
                raise TPMError(TPM2_RC.AUTHSIZE)
            while offset < end:
                try:
                    auth, consumed = TPMS_AUTH_COMMAND.unmarshal(cmd[offset:end])
                except ValueError:
                    raise TPMError(TPM2_RC.AUTHSIZE)
                auths.append(auth)
                offset += consumed
            if len(auths) > 3:
                raise TPMError(TPM2_RC.AUTHSIZE)
        if len(auths) < info.auths:
            raise TPMError(TPM2_RC.AUTH_MISSING)
        params = cmd[offset:]

        if not auths:
            rhandles, rparams = getattr(self, info.handler)(handles, params)
            return self._response(TPM2_ST.NO_SESSIONS, rhandles, rparams)

        names = [self._name_of(h) for h in handles]
        sessions, include, decrypt_index, encrypt_index = self._check_sessions(
            info, handles, names, auths
        )
        self._check_authorizations(
            cc, handles, names, params, auths, sessions, include, info.auths,
            decrypt_index, encrypt_index,
        )
        if decrypt_index is not None:
            params = self._crypt_first(
                params, sessions[decrypt_index], bytes(auths[decrypt_index].nonce),
                handles, include, decrypt_index, encrypt=False,
            )
        rhandles, rparams = getattr(self, info.handler)(handles, params)
        return self._authorized_response(
            cc, handles, auths, sessions, include, encrypt_index, rhandles, rparams
        )

    def _response(self, tag, rhandles, rparams, rauths=b"") -> bytes:
        body = TPM2_RC.SUCCESS.to_bytes(4, "big")
        body += b"".join(int(h).to_bytes(4, "big") for h in rhandles)
        if tag == TPM2_ST.SESSIONS:
            body += len(rparams).to_bytes(4, "big")
        body += rparams + rauths
        return TPM2_ST(tag).marshal() + (len(body) + 6).to_bytes(4, "big") + body

    def _check_handle(self, cc: int, handle: int, n: int):
        if cc == TPM2_CC.StartAuthSession and handle == TPM2_RH.NULL:
            return
        top = handle & TPM2_HR.RANGE_MASK
        if top == TPM2_HR.PERMANENT:
            if handle not in _HIERARCHIES and handle != TPM2_RH.NULL:
                raise _handle_error(TPM2_RC.HANDLE, n)
        elif top == TPM2_HR.TRANSIENT:
            if handle not in self._objects:
                raise TPMError(TPM2_RC.REFERENCE_H0 + n - 1)
        elif top == TPM2_HR.NV_INDEX:
            if handle not in self._nv and cc != TPM2_CC.NV_DefineSpace:
                raise _handle_error(TPM2_RC.HANDLE, n)
        else:
            raise _handle_error(TPM2_RC.HANDLE, n)

    def _name_of(self, handle: int) -> bytes:
        if handle in self._objects:
            return self._objects[handle].name
        if handle in self._nv:
            return self._nv[handle].name
        return int(handle).to_bytes(4, "big")

    def _auth_of(self, handle: int) -> bytes:
        if handle in self._hierarchy_auth:
            return self._hierarchy_auth[handle]
        if handle in self._objects:
            return self._objects[handle].auth
        if handle in self._nv:
            return self._nv[handle].auth
        return b""

    def _is_noda(self, handle: int) -> bool:
        if handle == TPM2_RH.LOCKOUT:
            return False
        if handle in self._objects:
            return bool(self._objects[handle].public.objectAttributes & TPMA_OBJECT.NODA)
        if handle in self._nv:
            return bool(self._nv[handle].public.attributes & TPMA_NV.NO_DA)
        return True

    def _session(self, handle: int) -> Optional[_AuthSession]:
        index = handle - SESSION_HANDLE_BASE
        if 0 <= index < len(self._sessions):
            return self._sessions[index]
        return None

    def _check_sessions(self, info, handles, names, auths):
        sessions = []
        include = []
        decrypt_index = encrypt_index = None
        seen = set()
        for i, auth in enumerate(auths):
            n = i + 1
            h = auth.sessionHandle
            attrs = auth.sessionAttributes
            if h in seen:
                raise _session_error(TPM2_RC.VALUE, n)
            seen.add(h)
            if h == TPM2_RH.PW:
                if i >= info.auths or len(auth.nonce):
                    raise _session_error(TPM2_RC.VALUE, n)
                if attrs & (TPMA_SESSION.DECRYPT | TPMA_SESSION.ENCRYPT):
                    raise _session_error(TPM2_RC.ATTRIBUTES, n)
                sessions.append(None)
                include.append(True)
                continue
            s = self._session(h)
            if s is None:
                raise TPMError(TPM2_RC.REFERENCE_S0 + i)
            if not 16 <= len(auth.nonce) <= _get_digest(s.hash_alg).digest_size:
                raise _session_error(TPM2_RC.NONCE, n)
            if attrs & TPMA_SESSION.DECRYPT:
                if s.key_bits is None or not info.decrypt or decrypt_index is not None:
                    raise _session_error(TPM2_RC.ATTRIBUTES, n)
                decrypt_index = i
            if attrs & TPMA_SESSION.ENCRYPT:
                if s.key_bits is None or not info.encrypt or encrypt_index is not None:
                    raise _session_error(TPM2_RC.ATTRIBUTES, n)
                encrypt_index = i
            if i >= info.auths and not attrs & (TPMA_SESSION.DECRYPT | TPMA_SESSION.ENCRYPT):
                raise _session_error(TPM2_RC.ATTRIBUTES, n)
            sessions.append(s)
            include.append(i < info.auths and s.bind_name != names[i])
        return sessions, include, decrypt_index, encrypt_index

    def _session_value(self, s, handles, include, i) -> bytes:
        auth = self._auth_of(handles[i]) if i < len(handles) else b""
        return hmac_key(s.session_key, auth, include[i])

    def _check_authorizations(
        self, cc, handles, names, params, auths, sessions, include, auth_count,
        decrypt_index, encrypt_index,
    ):
        cphashes = dict()
        for i, (auth, s) in enumerate(zip(auths, sessions)):
            n = i + 1
            if s is None:
                expected = trim_auth(self._auth_of(handles[i]))
                if not hmac.compare_digest(trim_auth(bytes(auth.hmac)), expected):
                    raise self._auth_failure(handles[i], n)
                continue
            if s.hash_alg not in cphashes:
                cphashes[s.hash_alg] = cp_hash(s.hash_alg, cc, names, params)
            nonce_decrypt = nonce_encrypt = b""
            if i == 0:
                if decrypt_index not in (None, 0):
                    nonce_decrypt = sessions[decrypt_index].nonce_tpm
                if encrypt_index not in (None, 0):
                    nonce_encrypt = sessions[encrypt_index].nonce_tpm
            key = self._session_value(s, handles[:auth_count], include, i)
            expected = command_hmac(
                s.hash_alg,
                key,
                cphashes[s.hash_alg],
                bytes(auth.nonce),
                s.nonce_tpm,
                auth.sessionAttributes,
                nonce_decrypt,
                nonce_encrypt,
            )
            if not hmac.compare_digest(expected, bytes(auth.hmac)):
                if i < auth_count:
                    raise self._auth_failure(handles[i], n)
                raise _session_error(TPM2_RC.AUTH_FAIL, n)

    def _auth_failure(self, handle: int, n: int) -> TPMError:
        rc = TPM2_RC.BAD_AUTH if self._is_noda(handle) else TPM2_RC.AUTH_FAIL
        logger.debug(f"authorization of handle 0x{handle:08X} failed")
        return _session_error(rc, n)

    def _crypt_first(self, params, s, nonce_caller, handles, include, i, encrypt):
        try:
            contents, rest = split_first(params)
        except ValueError:
            raise _param_error(TPM2_RC.INSUFFICIENT, 1)
        value = self._session_value(s, handles, include, i)
        if encrypt:
            key, iv = cfb_key_iv(s.hash_alg, value, s.nonce_tpm, nonce_caller, s.key_bits)
            return join_first(_encrypt(key, iv, contents), rest)
        key, iv = cfb_key_iv(s.hash_alg, value, nonce_caller, s.nonce_tpm, s.key_bits)
        return join_first(_decrypt(key, iv, contents), rest)

    def _authorized_response(
        self, cc, handles, auths, sessions, include, encrypt_index, rhandles, rparams
    ) -> bytes:
        for auth, s in zip(auths, sessions):
            if s is not None:
                s.nonce_caller = bytes(auth.nonce)
                s.nonce_tpm = random_bytes(_get_digest(s.hash_alg).digest_size)
        if encrypt_index is not None:
            rparams = self._crypt_first(
                rparams, sessions[encrypt_index], sessions[encrypt_index].nonce_caller,
                handles, include, encrypt_index, encrypt=True,
            )
        rphashes = dict()
        rauths = b""
        for i, (auth, s) in enumerate(zip(auths, sessions)):
            attrs = auth.sessionAttributes
            if s is None:
                rauths += TPMS_AUTH_RESPONSE(
                    nonce=b"", sessionAttributes=attrs & TPMA_SESSION.CONTINUESESSION, hmac=b""
                ).marshal()
                continue
            if s.hash_alg not in rphashes:
                rphashes[s.hash_alg] = rp_hash(s.hash_alg, TPM2_RC.SUCCESS, cc, rparams)
            # the auth value is looked up again, commands may have changed it
            key = self._session_value(s, handles, include, i)
            digest = response_hmac(
                s.hash_alg, key, rphashes[s.hash_alg], s.nonce_tpm, s.nonce_caller, attrs
            )
            rauths += TPMS_AUTH_RESPONSE(
                nonce=s.nonce_tpm, sessionAttributes=attrs, hmac=digest
            ).marshal()
        for auth, s in zip(auths, sessions):
            if s is not None and not auth.sessionAttributes & TPMA_SESSION.CONTINUESESSION:
                self._free_session(s.handle)
        return self._response(TPM2_ST.SESSIONS, rhandles, rparams, rauths)

    def _free_session(self, handle: int):
        self._sessions[handle - SESSION_HANDLE_BASE] = None

    def _new_transient(self, obj: _Object) -> int:
        handle = self._next_transient
        self._next_transient += 1
        self._objects[handle] = obj
        return handle

    def startup(self, handles, params):
        r = _Reader(params)
        su = r.int(2)
        if su not in (TPM2_SU.CLEAR, TPM2_SU.STATE):
            raise _param_error(TPM2_RC.VALUE, 1)
        if self._started:
            raise TPMError(TPM2_RC.INITIALIZE)
        self._started = True
        return [], b""

    def start_auth_session(self, handles, params):
        tpm_key, bind = handles
        r = _Reader(params)
        nonce_caller = r.sized()
        encrypted_salt = r.sized()
        session_type = r.int(1)
        symmetric = r.object(TPMT_SYM_DEF)
        hash_alg = r.int(2)
        if _get_digest(hash_alg) is None:
            raise _param_error(TPM2_RC.HASH, 5)
        digest_size = _get_digest(hash_alg).digest_size
        if not 16 <= len(nonce_caller) <= digest_size:
            raise _param_error(TPM2_RC.SIZE, 1)
        if session_type != TPM2_SE.HMAC:
            raise _param_error(TPM2_RC.VALUE, 3)
        if symmetric.algorithm == TPM2_ALG.NULL:
            key_bits = None
        elif (
            symmetric.algorithm == TPM2_ALG.AES
            and symmetric.keyBits in (128, 192, 256)
            and symmetric.mode == TPM2_ALG.CFB
        ):
            key_bits = int(symmetric.keyBits)
        else:
            raise _param_error(TPM2_RC.SYMMETRIC, 4)

        salt = None
        if tpm_key != TPM2_RH.NULL:
            obj = self._objects.get(tpm_key)
            if (
                obj is None
                or obj.key is None
                or not obj.public.objectAttributes & TPMA_OBJECT.DECRYPT
            ):
                raise _handle_error(TPM2_RC.KEY, 1)
            if not encrypted_salt:
                raise _param_error(TPM2_RC.VALUE, 2)
            try:
                salt = _secret_to_seed(
                    obj.key, obj.public.nameAlg, SALT_LABEL, encrypted_salt
                )
            except ValueError:
                raise _param_error(TPM2_RC.VALUE, 2)
        elif encrypted_salt:
            raise _param_error(TPM2_RC.VALUE, 2)

        bind_auth = None
        bind_name = None
        if bind != TPM2_RH.NULL:
            bind_auth = self._auth_of(bind)
            bind_name = self._name_of(bind)

        try:
            slot = self._sessions.index(None)
        except ValueError:
            raise TPMError(TPM2_RC.SESSION_HANDLES)
        nonce_tpm = random_bytes(digest_size)
        skey = session_key(hash_alg, nonce_tpm, nonce_caller, bind_auth, salt)
        handle = SESSION_HANDLE_BASE + slot
        self._sessions[slot] = _AuthSession(
            handle, TPM2_ALG(hash_alg), nonce_tpm, skey, key_bits, bind_name
        )
        logger.debug(f"started session 0x{handle:08X}")
        return [handle], _pack_sized(nonce_tpm)

    def flush_context(self, handles, params):
        handle = _Reader(params).int(4)
        if handle in self._objects:
            del self._objects[handle]
        elif self._session(handle) is not None:
            self._free_session(handle)
        else:
            raise _param_error(TPM2_RC.HANDLE, 1)
        return [], b""

    def get_random(self, handles, params):
        requested = _Reader(params).int(2)
        return [], _pack_sized(random_bytes(min(requested, 64)))

    def hierarchy_change_auth(self, handles, params):
        if handles[0] not in _HIERARCHIES:
            raise _handle_error(TPM2_RC.HIERARCHY, 1)
        new_auth = _Reader(params).sized()
        if len(new_auth) > 64:
            raise _param_error(TPM2_RC.SIZE, 1)
        self._hierarchy_auth[handles[0]] = trim_auth(new_auth)
        return [], b""

    def _read_create(self, params):
        r = _Reader(params)
        sensitive = r.object(TPM2B_SENSITIVE_CREATE).sensitive
        public = r.object(TPM2B_PUBLIC).publicArea
        r.sized()
        r.skip_pcr_selection()
        if len(sensitive.data) > MAX_SYM_DATA:
            raise _param_error(TPM2_RC.SIZE, 1)
        digest = _get_digest(public.nameAlg)
        if digest is None:
            raise _param_error(TPM2_RC.HASH, 2)
        if len(sensitive.userAuth) > digest.digest_size:
            raise _param_error(TPM2_RC.SIZE, 1)
        return sensitive, public

    def _generate(self, sensitive, public) -> _Object:
        seed = random_bytes(32)
        data = bytes(sensitive.data)
        key = None
        if public.type == TPM2_ALG.RSA:
            bits = int(public.parameters.keyBits)
            if bits not in (1024, 2048, 3072, 4096):
                raise _param_error(TPM2_RC.KEY_SIZE, 2)
            exponent = int(public.parameters.exponent) or 65537
            key = rsa.generate_private_key(exponent, bits, backend=default_backend())
            n = key.public_key().public_numbers().n
            public.unique = TPM2B_PUBLIC_KEY_RSA(n.to_bytes(bits // 8, "big"))
        elif public.type == TPM2_ALG.ECC:
            curve = _get_curve(public.parameters.curveID)
            if curve is None:
                raise _param_error(TPM2_RC.CURVE, 2)
            key = ec.generate_private_key(curve(), backend=default_backend())
            nums = key.public_key().public_numbers()
            plength = (key.curve.key_size + 7) // 8
            public.unique = TPMS_ECC_POINT(
                x=nums.x.to_bytes(plength, "big"), y=nums.y.to_bytes(plength, "big")
            )
        else:
            if data and public.objectAttributes & TPMA_OBJECT.SENSITIVEDATAORIGIN:
                raise _param_error(TPM2_RC.ATTRIBUTES, 2)
            public.unique = TPM2B_DIGEST(_hash(public.nameAlg, seed, data))
        return _Object(public, trim_auth(bytes(sensitive.userAuth)), data, key, seed)

    def create_primary(self, handles, params):
        hierarchy = handles[0]
        if hierarchy not in (TPM2_RH.OWNER, TPM2_RH.ENDORSEMENT, TPM2_RH.PLATFORM, TPM2_RH.NULL):
            raise _handle_error(TPM2_RC.HIERARCHY, 1)
        sensitive, public = self._read_create(params)
        # primary keys derive from the hierarchy seed, the same template gives the same key
        cache_key = (hierarchy, sensitive.marshal(), public.marshal())
        obj = self._primaries.get(cache_key)
        if obj is None:
            obj = self._generate(sensitive, public)
            self._primaries[cache_key] = obj
        else:
            obj = _Object(obj.public, obj.auth, obj.data, obj.key, obj.seed)
        handle = self._new_transient(obj)
        rparams = (
            TPM2B_PUBLIC(publicArea=obj.public).marshal()
            + _creation_outputs(hierarchy, obj.public.nameAlg)
            + TPM2B_NAME(obj.name).marshal()
        )
        return [handle], rparams

    def _wrap(self, parent_name: bytes, obj: _Object) -> bytes:
        der = b""
        if obj.key is not None:
            der = obj.key.private_bytes(Encoding.DER, PrivateFormat.PKCS8, NoEncryption())
        plain = (
            _pack_sized(obj.auth) + _pack_sized(obj.data) + _pack_sized(obj.seed) + _pack_sized(der)
        )
        iv = random_bytes(16)
        ct = _encrypt(self._storage_key, iv, plain)
        integrity = _hmac(TPM2_ALG.SHA256, self._integrity_key, parent_name, iv, ct)
        return integrity + iv + ct

    def _unwrap(self, parent_name: bytes, blob: bytes, public) -> _Object:
        integrity, iv, ct = blob[:32], blob[32:48], blob[48:]
        expected = _hmac(TPM2_ALG.SHA256, self._integrity_key, parent_name, iv, ct)
        if len(iv) != 16 or not hmac.compare_digest(integrity, expected):
            raise _param_error(TPM2_RC.INTEGRITY, 1)
        plain = _decrypt(self._storage_key, iv, ct)
        try:
            auth, offset = _unpack_sized(plain, 0)
            data, offset = _unpack_sized(plain, offset)
            seed, offset = _unpack_sized(plain, offset)
            der, offset = _unpack_sized(plain, offset)
        except ValueError:
            raise _param_error(TPM2_RC.INTEGRITY, 1)
        key = load_der_private_key(der, None, default_backend()) if der else None
        return _Object(public, auth, data, key, seed)

    def _parent(self, handle: int) -> _Object:
        parent = self._objects[handle]
        attrs = parent.public.objectAttributes
        if not (attrs & TPMA_OBJECT.RESTRICTED and attrs & TPMA_OBJECT.DECRYPT):
            raise _handle_error(TPM2_RC.TYPE, 1)
        return parent

    def create(self, handles, params):
        parent = self._parent(handles[0])
        sensitive, public = self._read_create(params)
        obj = self._generate(sensitive, public)
        rparams = (
            _pack_sized(self._wrap(parent.name, obj))
            + TPM2B_PUBLIC(publicArea=obj.public).marshal()
            + _creation_outputs(TPM2_RH.OWNER, obj.public.nameAlg)
        )
        return [], rparams

    def load(self, handles, params):
        parent = self._parent(handles[0])
        r = _Reader(params)
        blob = r.sized()
        public = r.object(TPM2B_PUBLIC).publicArea
        obj = self._unwrap(parent.name, blob, public)
        handle = self._new_transient(obj)
        return [handle], TPM2B_NAME(obj.name).marshal()

    def read_public(self, handles, params):
        obj = self._objects.get(handles[0])
        if obj is None:
            raise _handle_error(TPM2_RC.HANDLE, 1)
        name = TPM2B_NAME(obj.name).marshal()
        return [], TPM2B_PUBLIC(publicArea=obj.public).marshal() + name + name

    def unseal(self, handles, params):
        obj = self._objects.get(handles[0])
        if obj is None or obj.public.type != TPM2_ALG.KEYEDHASH:
            raise _handle_error(TPM2_RC.TYPE, 1)
        attrs = obj.public.objectAttributes
        if attrs & (TPMA_OBJECT.DECRYPT | TPMA_OBJECT.SIGN_ENCRYPT):
            raise _handle_error(TPM2_RC.ATTRIBUTES, 1)
        return [], _pack_sized(obj.data)

    def nv_define_space(self, handles, params):
        if handles[0] not in (TPM2_RH.OWNER, TPM2_RH.PLATFORM):
            raise _handle_error(TPM2_RC.HIERARCHY, 1)
        r = _Reader(params)
        auth = r.sized()
        public = r.object(TPM2B_NV_PUBLIC).nvPublic
        if public.nvIndex & TPM2_HR.RANGE_MASK != TPM2_HR.NV_INDEX:
            raise _param_error(TPM2_RC.VALUE, 2)
        if public.nvIndex in self._nv:
            raise TPMError(TPM2_RC.NV_DEFINED)
        digest = _get_digest(public.nameAlg)
        if digest is None:
            raise _param_error(TPM2_RC.HASH, 2)
        if len(auth) > digest.digest_size:
            raise _param_error(TPM2_RC.SIZE, 1)
        if public.dataSize > MAX_NV_SIZE:
            raise TPMError(TPM2_RC.NV_SIZE)
        if public.attributes & TPMA_NV.WRITTEN:
            raise _param_error(TPM2_RC.ATTRIBUTES, 2)
        self._nv[public.nvIndex] = _NVIndex(public, trim_auth(auth))
        return [], b""

    def nv_undefine_space(self, handles, params):
        auth_handle, index = handles
        if auth_handle not in (TPM2_RH.OWNER, TPM2_RH.PLATFORM):
            raise _handle_error(TPM2_RC.HIERARCHY, 1)
        del self._nv[index]
        return [], b""

    def nv_read_public(self, handles, params):
        nv = self._nv[handles[0]]
        return [], TPM2B_NV_PUBLIC(nvPublic=nv.public).marshal() + TPM2B_NAME(nv.name).marshal()

    def _nv_access(self, auth_handle: int, index: int, owner: int, auth: int) -> _NVIndex:
        nv = self._nv[index]
        attrs = nv.public.attributes
        if auth_handle == TPM2_RH.OWNER and attrs & owner:
            return nv
        if auth_handle == index and attrs & auth:
            return nv
        raise TPMError(TPM2_RC.NV_AUTHORIZATION)

    def nv_write(self, handles, params):
        nv = self._nv_access(handles[0], handles[1], TPMA_NV.OWNERWRITE, TPMA_NV.AUTHWRITE)
        r = _Reader(params)
        data = r.sized()
        offset = r.int(2)
        if offset + len(data) > nv.public.dataSize:
            raise TPMError(TPM2_RC.NV_RANGE)
        nv.data[offset : offset + len(data)] = data
        nv.public.attributes = nv.public.attributes | TPMA_NV.WRITTEN
        return [], b""

    def nv_read(self, handles, params):
        nv = self._nv_access(handles[0], handles[1], TPMA_NV.OWNERREAD, TPMA_NV.AUTHREAD)
        r = _Reader(params)
        size = r.int(2)
        offset = r.int(2)
        if not nv.public.attributes & TPMA_NV.WRITTEN:
            raise TPMError(TPM2_RC.NV_UNINITIALIZED)
        if offset + size > nv.public.dataSize:
            raise TPMError(TPM2_RC.NV_RANGE)
        return [], _pack_sized(bytes(nv.data[offset : offset + size]))


def _startup_command() -> bytes:
    body = int(TPM2_CC.Startup).to_bytes(4, "big") + TPM2_SU.CLEAR.marshal()
    return TPM2_ST.NO_SESSIONS.marshal() + (len(body) + 6).to_bytes(4, "big") + body


class SimulatorTCTI(PyTCTI):
    """A TCTI executing commands on a :class:`SoftwareTPM` in the same process.

    Args:
        tpm (SoftwareTPM): The TPM to talk to, defaults to a new one.
        timeout (float): Default response timeout, unused by the simulator.
        startup (bool): Send TPM2_Startup(CLEAR) if the TPM is not started yet.
        record (bool): Keep every command and response in ``wire``.
        max_sessions (int): Session slots of a new TPM.
    """

    def __init__(
        self,
        tpm: Optional[SoftwareTPM] = None,
        timeout: Optional[float] = None,
        startup: bool = True,
        record: bool = False,
        max_sessions: int = 8,
    ):
        super().__init__(timeout=timeout, magic=b"PYSIM\x00\x00\x00")
        self._tpm = tpm if tpm is not None else SoftwareTPM(max_sessions)
        self._pending = None
        self._record = record
        self.wire = []  # type: List[Tuple[str, bytes]]
        if startup and not self._tpm.started:
            self._tpm.execute(_startup_command())

    @property
    def tpm(self) -> SoftwareTPM:
        return self._tpm

    def do_transmit(self, command: bytes) -> None:
        if self._pending is not None:
            raise TransportError("previous response was not received")
        if self._record:
            self.wire.append(("command", command))
        self._pending = self._tpm.execute(command)

    def do_receive(self, timeout: Optional[float]) -> bytes:
        if self._pending is None:
            raise TransportError("no command was transmitted")
        resp, self._pending = self._pending, None
        if self._record:
            self.wire.append(("response", resp))
        return resp
