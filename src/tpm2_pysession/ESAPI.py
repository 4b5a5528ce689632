# SPDX-License-Identifier: BSD-2
from .command import Response, execute, execute_no_sessions, flush_context
from .config import SessionConfig
from .constants import TPM2_CC, TPM2_HR, TPM2_RH, TPM2_SU, TPMA_NV
from .descriptor import SessionDescriptor, password
from .internal.templates import seal_template, storage_template
from .internal.utils import _unpack_sized, _to_bytes
from .log import session_loggers
from .session import Session, SessionManager, manager_for
from .TCTI import TCTI, open_tcti
from .types import (
    TPM2B_AUTH,
    TPM2B_DATA,
    TPM2B_MAX_NV_BUFFER,
    TPM2B_NAME,
    TPM2B_NV_PUBLIC,
    TPM2B_PRIVATE,
    TPM2B_PUBLIC,
    TPM2B_SENSITIVE_CREATE,
    TPM2B_SENSITIVE_DATA,
    TPMS_SENSITIVE_CREATE,
    EntityReference,
    NVIndexInfo,
)

from typing import Callable, Optional, Sequence, Tuple, Union

logger = session_loggers["esys"]

# empty TPML_PCR_SELECTION
_NO_PCRS = b"\x00\x00\x00\x00"


def _check_session(session, varname):
    if session is not None and not isinstance(session, Session):
        raise TypeError(f"expected {varname} to be type Session, got {type(session)}")


def _get_public(value, varname) -> TPM2B_PUBLIC:
    if isinstance(value, TPM2B_PUBLIC):
        return value
    if isinstance(value, str):
        if value in ("rsa2048", "ecc256"):
            return storage_template(value)
        if value == "seal":
            return seal_template()
        raise ValueError(f"unknown template {value} for {varname}")
    raise TypeError(f"expected {varname} to be TPM2B_PUBLIC or str, got {type(value)}")


def _get_sensitive(value, varname) -> TPM2B_SENSITIVE_CREATE:
    if value is None:
        return TPM2B_SENSITIVE_CREATE()
    if isinstance(value, TPM2B_SENSITIVE_CREATE):
        return value
    if isinstance(value, TPMS_SENSITIVE_CREATE):
        return TPM2B_SENSITIVE_CREATE(sensitive=value)
    raise TypeError(
        f"expected {varname} to be TPM2B_SENSITIVE_CREATE or None, got {type(value)}"
    )


def _skip_creation_outputs(buf: bytes, offset: int) -> int:
    # creationData, creationHash and creationTicket
    _, offset = _unpack_sized(buf, offset)
    _, offset = _unpack_sized(buf, offset)
    offset += 6
    _, offset = _unpack_sized(buf, offset)
    return offset


class ESAPI:
    """Issue TPM commands authorized and encrypted by sessions.

    Each command takes up to three sessions. session1 authorizes the first handle
    that needs authorization, it defaults to a password session with the auth value
    known for that handle (see :meth:`tr_set_auth`). Further sessions only encrypt.

    Names of handles are looked up once and tracked, NV index names are updated when
    a write sets the WRITTEN attribute.

    Args:
        tcti (Union[TCTI, str]): The connection to the TPM, or a TCTI string for
            :func:`open_tcti`. Defaults to the TCTI of the configuration.
        config (SessionConfig): Defaults to the configuration of the session manager
            of the TCTI, or SessionConfig.default() for a new one.

    Raises:
        TypeError: If the TCTI is an invalid type.
        TransportError: If the TCTI can't be opened.
        ConfigurationError: If the TCTI is used with another configuration already.
    """

    def __init__(
        self, tcti: Union[TCTI, str, None] = None, config: Optional[SessionConfig] = None
    ):
        if not isinstance(tcti, (TCTI, type(None), str)):
            raise TypeError(
                f"Expected tcti to be type TCTI, str or None, got {type(tcti)}"
            )
        defaults = config if config is not None else SessionConfig.default()
        self._did_load_tcti = False
        if tcti is None:
            tcti = defaults.tcti
        if isinstance(tcti, str):
            self._did_load_tcti = True
            tcti = open_tcti(tcti, timeout=defaults.timeout)
        self._tcti = tcti
        self._manager = manager_for(tcti, config)
        self._config = self._manager.config
        self._names = dict()
        self._auths = dict()
        self._nv_publics = dict()

    def __enter__(self):
        return self

    def __exit__(self, _type, value, traceback) -> None:
        self.close()

    def close(self) -> None:
        """Release the persistent sessions and close a TCTI opened by this instance."""
        try:
            self._manager.close()
        finally:
            if self._did_load_tcti:
                self._tcti.finalize()

    @property
    def tcti(self) -> TCTI:
        return self._tcti

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def manager(self) -> SessionManager:
        return self._manager

    def tr_set_auth(self, handle: int, auth: Union[bytes, str, None]) -> None:
        """Set the auth value used for password authorization of handle."""
        self._auths[handle] = _to_bytes(auth, "auth")

    def tr_get_auth(self, handle: int) -> bytes:
        return self._auths.get(handle, b"")

    def tr_get_name(self, handle: int) -> TPM2B_NAME:
        """Get the name of a handle, reading it from the TPM if it is not known yet."""
        top = handle & TPM2_HR.RANGE_MASK
        if top in (TPM2_HR.PERMANENT, TPM2_HR.HMAC_SESSION, TPM2_HR.POLICY_SESSION):
            return TPM2B_NAME(int(handle).to_bytes(4, "big"))
        if handle not in self._names:
            if top == TPM2_HR.NV_INDEX:
                self.nv_read_public(handle)
            else:
                self.read_public(handle)
        return self._names[handle]

    def entity(self, handle: int) -> EntityReference:
        """The handle and the name of an entity, for binding sessions to it."""
        return EntityReference(handle, bytes(self.tr_get_name(handle)))

    def build_session(self, descriptor: SessionDescriptor) -> Session:
        """Build an ephemeral session, started inline by every command using it."""
        return self._manager.build_session(descriptor)

    def start_session(
        self, descriptor: SessionDescriptor
    ) -> Tuple[Session, Callable[[], None]]:
        """Start a persistent session.

        Returns:
            The session and its release function.

        Raises:
            SlotExhausted: If no session slot is free.
        """
        return self._manager.start_session(descriptor)

    def start_auth_session(self, descriptor: SessionDescriptor) -> Session:
        """Start a persistent session, released with session.release() or by close()."""
        session, _ = self._manager.start_session(descriptor)
        return session

    def _password(self, handle: int) -> Session:
        return Session(password(self.tr_get_auth(handle)), config=self._config)

    def _execute(
        self,
        cc: int,
        handles=(),
        parameters: bytes = b"",
        auth_count: int = 0,
        sessions=(),
        response_handles: int = 0,
        command_marked: Sequence[int] = (),
        response_marked: Sequence[int] = (),
        response_auth: Optional[bytes] = None,
    ) -> Response:
        for i, s in enumerate(sessions):
            _check_session(s, f"session{i + 1}")
        sessions = list(sessions)
        if auth_count and sessions[0] is None:
            sessions[0] = self._password(handles[0])
        names = [bytes(self.tr_get_name(h)) for h in handles]
        return execute(
            self._tcti,
            cc,
            handles=handles,
            names=names,
            parameters=parameters,
            sessions=sessions,
            auth_count=auth_count,
            response_handles=response_handles,
            command_marked=command_marked,
            response_marked=response_marked,
            response_auth=response_auth,
            timeout=self._config.timeout,
        )

    def startup(self, startup_type: int = TPM2_SU.CLEAR) -> None:
        """Invoke the TPM2_Startup command.

        Raises:
            TSS2_Exception: TPM2_RC.INITIALIZE if the TPM is already started.
        """
        execute_no_sessions(
            self._tcti,
            TPM2_CC.Startup,
            parameters=TPM2_SU(startup_type).marshal(),
            timeout=self._config.timeout,
        )

    def flush_context(self, flush_handle: int) -> None:
        """Invoke the TPM2_FlushContext command for a transient object.

        Persistent sessions are flushed by releasing them.
        """
        flush_context(self._tcti, flush_handle, self._config.timeout)
        self._names.pop(flush_handle, None)
        self._auths.pop(flush_handle, None)

    def get_random(
        self,
        bytes_requested: int,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> bytes:
        """Invoke the TPM2_GetRandom command.

        The TPM returns at most one digest worth of random bytes per call.

        Args:
            bytes_requested (int): The number of bytes requested.
            session1 (Session): A session encrypting the response (optional).
            session2 (Session): A session encrypting the response (optional).
            session3 (Session): A session encrypting the response (optional).

        Returns:
            The random bytes.
        """
        resp = self._execute(
            TPM2_CC.GetRandom,
            parameters=int(bytes_requested).to_bytes(2, "big"),
            sessions=(session1, session2, session3),
            response_marked=(0,),
        )
        data, _ = _unpack_sized(resp.parameters, 0)
        return data

    def hierarchy_change_auth(
        self,
        auth_handle: int,
        new_auth: Union[TPM2B_AUTH, bytes, str],
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> None:
        """Invoke the TPM2_HierarchyChangeAuth command.

        Args:
            auth_handle (int): TPM2_RH.OWNER, ENDORSEMENT, PLATFORM or LOCKOUT.
            new_auth (Union[TPM2B_AUTH, bytes, str]): The new auth value.
            session1 (Session): Authorizes auth_handle with its current auth value.
                Defaults to a password session.
            session2 (Session): A session encrypting new_auth (optional).
            session3 (Session): A session encrypting new_auth (optional).

        Raises:
            WrongSecret: If session1 does not know the current auth value.
        """
        new_auth = TPM2B_AUTH(new_auth)
        self._execute(
            TPM2_CC.HierarchyChangeAuth,
            handles=(auth_handle,),
            parameters=new_auth.marshal(),
            auth_count=1,
            sessions=(session1, session2, session3),
            command_marked=(0,),
            response_auth=bytes(new_auth),
        )
        self._auths[auth_handle] = bytes(new_auth)

    def create_primary(
        self,
        in_sensitive: Optional[TPM2B_SENSITIVE_CREATE],
        in_public: Union[TPM2B_PUBLIC, str] = "rsa2048",
        primary_handle: int = TPM2_RH.OWNER,
        outside_info: Union[TPM2B_DATA, bytes, str] = b"",
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> Tuple[int, TPM2B_PUBLIC, TPM2B_NAME]:
        """Invoke the TPM2_CreatePrimary command.

        Args:
            in_sensitive (TPM2B_SENSITIVE_CREATE): The auth value and data of the key.
            in_public (Union[TPM2B_PUBLIC, str]): The public template, or "rsa2048",
                "ecc256" for a storage key or "seal". Defaults to "rsa2048".
            primary_handle (int): The hierarchy. Defaults to TPM2_RH.OWNER.
            outside_info (Union[TPM2B_DATA, bytes, str]): Data for the creation data.
            session1 (Session): Authorizes the hierarchy. Defaults to a password session.
            session2 (Session): A session for encryption (optional).
            session3 (Session): A session for encryption (optional).

        Returns:
            A tuple of the object handle, its public area and its name.

        Raises:
            WrongSecret: If session1 does not know the hierarchy auth value.
        """
        in_sensitive = _get_sensitive(in_sensitive, "in_sensitive")
        in_public = _get_public(in_public, "in_public")
        params = (
            in_sensitive.marshal()
            + in_public.marshal()
            + TPM2B_DATA(outside_info).marshal()
            + _NO_PCRS
        )
        resp = self._execute(
            TPM2_CC.CreatePrimary,
            handles=(primary_handle,),
            parameters=params,
            auth_count=1,
            sessions=(session1, session2, session3),
            response_handles=1,
            command_marked=(0,),
            response_marked=(0,),
        )
        handle = resp.handles[0]
        out_public, offset = TPM2B_PUBLIC.unmarshal(resp.parameters)
        offset = _skip_creation_outputs(resp.parameters, offset)
        name, _ = TPM2B_NAME.unmarshal(resp.parameters[offset:])
        self._names[handle] = name
        self._auths[handle] = bytes(in_sensitive.sensitive.userAuth)
        logger.debug(f"created primary 0x{handle:08X}")
        return handle, out_public, name

    def create(
        self,
        parent_handle: int,
        in_sensitive: Optional[TPM2B_SENSITIVE_CREATE],
        in_public: Union[TPM2B_PUBLIC, str] = "rsa2048",
        outside_info: Union[TPM2B_DATA, bytes, str] = b"",
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> Tuple[TPM2B_PRIVATE, TPM2B_PUBLIC]:
        """Invoke the TPM2_Create command.

        Args:
            parent_handle (int): A loaded storage key.
            in_sensitive (TPM2B_SENSITIVE_CREATE): The auth value and data of the object.
            in_public (Union[TPM2B_PUBLIC, str]): The public template, or "rsa2048",
                "ecc256" or "seal". Defaults to "rsa2048".
            outside_info (Union[TPM2B_DATA, bytes, str]): Data for the creation data.
            session1 (Session): Authorizes the parent. Defaults to a password session.
            session2 (Session): A session for encryption (optional).
            session3 (Session): A session for encryption (optional).

        Returns:
            A tuple of the private and the public part of the object.
        """
        in_sensitive = _get_sensitive(in_sensitive, "in_sensitive")
        in_public = _get_public(in_public, "in_public")
        params = (
            in_sensitive.marshal()
            + in_public.marshal()
            + TPM2B_DATA(outside_info).marshal()
            + _NO_PCRS
        )
        resp = self._execute(
            TPM2_CC.Create,
            handles=(parent_handle,),
            parameters=params,
            auth_count=1,
            sessions=(session1, session2, session3),
            command_marked=(0,),
            response_marked=(0,),
        )
        out_private, offset = TPM2B_PRIVATE.unmarshal(resp.parameters)
        out_public, _ = TPM2B_PUBLIC.unmarshal(resp.parameters[offset:])
        return out_private, out_public

    def load(
        self,
        parent_handle: int,
        in_private: TPM2B_PRIVATE,
        in_public: TPM2B_PUBLIC,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> int:
        """Invoke the TPM2_Load command.

        The auth value of the loaded object is not known, set it with
        :meth:`tr_set_auth` before using password authorization.

        Returns:
            The handle of the loaded object.
        """
        if not isinstance(in_public, TPM2B_PUBLIC):
            raise TypeError(f"expected in_public to be TPM2B_PUBLIC, got {type(in_public)}")
        params = TPM2B_PRIVATE(in_private).marshal() + in_public.marshal()
        resp = self._execute(
            TPM2_CC.Load,
            handles=(parent_handle,),
            parameters=params,
            auth_count=1,
            sessions=(session1, session2, session3),
            response_handles=1,
            command_marked=(0,),
            response_marked=(0,),
        )
        handle = resp.handles[0]
        name, _ = TPM2B_NAME.unmarshal(resp.parameters)
        if bytes(name) != bytes(in_public.get_name()):
            logger.warning(f"name of loaded object 0x{handle:08X} does not match its public area")
        self._names[handle] = name
        return handle

    def _read_name(self, handle: int, sessions, read) -> TPM2B_NAME:
        # the name enters the cpHash of sessions, learn it without sessions first
        if handle not in self._names and any(s is not None for s in sessions):
            read(handle)
        return self._names.get(handle, TPM2B_NAME(int(handle).to_bytes(4, "big")))

    def read_public(
        self,
        object_handle: int,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> Tuple[TPM2B_PUBLIC, TPM2B_NAME]:
        """Invoke the TPM2_ReadPublic command.

        Returns:
            A tuple of the public area and the name of the object.
        """
        sessions = (session1, session2, session3)
        for i, s in enumerate(sessions):
            _check_session(s, f"session{i + 1}")
        name = self._read_name(object_handle, sessions, self.read_public)
        resp = execute(
            self._tcti,
            TPM2_CC.ReadPublic,
            handles=(object_handle,),
            names=(bytes(name),),
            sessions=sessions,
            response_marked=(0,),
            timeout=self._config.timeout,
        )
        out_public, offset = TPM2B_PUBLIC.unmarshal(resp.parameters)
        name, _ = TPM2B_NAME.unmarshal(resp.parameters[offset:])
        self._names[object_handle] = name
        return out_public, name

    def unseal(
        self,
        item_handle: int,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> TPM2B_SENSITIVE_DATA:
        """Invoke the TPM2_Unseal command.

        Args:
            item_handle (int): A loaded sealed data object.
            session1 (Session): Authorizes the object. Defaults to a password session.
            session2 (Session): A session encrypting the response (optional).
            session3 (Session): A session encrypting the response (optional).

        Returns:
            The unsealed data.

        Raises:
            WrongSecret: If session1 does not know the auth value of the object.
        """
        resp = self._execute(
            TPM2_CC.Unseal,
            handles=(item_handle,),
            auth_count=1,
            sessions=(session1, session2, session3),
            response_marked=(0,),
        )
        data, _ = TPM2B_SENSITIVE_DATA.unmarshal(resp.parameters)
        return data

    def nv_define_space(
        self,
        auth: Union[TPM2B_AUTH, bytes, str, None],
        public_info: TPM2B_NV_PUBLIC,
        auth_handle: int = TPM2_RH.OWNER,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> int:
        """Invoke the TPM2_NV_DefineSpace command.

        Args:
            auth (Union[TPM2B_AUTH, bytes, str]): The auth value of the index.
            public_info (TPM2B_NV_PUBLIC): The public area of the index.
            auth_handle (int): TPM2_RH.OWNER or TPM2_RH.PLATFORM. Defaults to the owner.
            session1 (Session): Authorizes auth_handle. Defaults to a password session.
            session2 (Session): A session encrypting auth (optional).
            session3 (Session): A session encrypting auth (optional).

        Returns:
            The handle of the NV index.
        """
        if not isinstance(public_info, TPM2B_NV_PUBLIC):
            raise TypeError(
                f"expected public_info to be TPM2B_NV_PUBLIC, got {type(public_info)}"
            )
        auth = TPM2B_AUTH(_to_bytes(auth, "auth"))
        self._execute(
            TPM2_CC.NV_DefineSpace,
            handles=(auth_handle,),
            parameters=auth.marshal() + public_info.marshal(),
            auth_count=1,
            sessions=(session1, session2, session3),
            command_marked=(0,),
        )
        public = public_info.nvPublic
        handle = int(public.nvIndex)
        self._nv_publics[handle] = public
        self._names[handle] = public.get_name()
        self._auths[handle] = bytes(auth)
        return handle

    def nv_undefine_space(
        self,
        nv_index: int,
        auth_handle: int = TPM2_RH.OWNER,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> None:
        """Invoke the TPM2_NV_UndefineSpace command."""
        self._execute(
            TPM2_CC.NV_UndefineSpace,
            handles=(auth_handle, nv_index),
            auth_count=1,
            sessions=(session1, session2, session3),
        )
        self._nv_publics.pop(nv_index, None)
        self._names.pop(nv_index, None)
        self._auths.pop(nv_index, None)

    def nv_read_public(
        self,
        nv_index: int,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> Tuple[TPM2B_NV_PUBLIC, TPM2B_NAME]:
        """Invoke the TPM2_NV_ReadPublic command.

        Returns:
            A tuple of the public area and the name of the index.
        """
        sessions = (session1, session2, session3)
        for i, s in enumerate(sessions):
            _check_session(s, f"session{i + 1}")
        name = self._read_name(nv_index, sessions, self.nv_read_public)
        resp = execute(
            self._tcti,
            TPM2_CC.NV_ReadPublic,
            handles=(nv_index,),
            names=(bytes(name),),
            sessions=sessions,
            response_marked=(0,),
            timeout=self._config.timeout,
        )
        nv_public, offset = TPM2B_NV_PUBLIC.unmarshal(resp.parameters)
        name, _ = TPM2B_NAME.unmarshal(resp.parameters[offset:])
        self._nv_publics[nv_index] = nv_public.nvPublic
        self._names[nv_index] = name
        return nv_public, name

    def nv_write(
        self,
        nv_index: int,
        data: Union[TPM2B_MAX_NV_BUFFER, bytes, str],
        offset: int = 0,
        auth_handle: Optional[int] = None,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> None:
        """Invoke the TPM2_NV_Write command.

        Args:
            nv_index (int): The NV index to write.
            data (Union[TPM2B_MAX_NV_BUFFER, bytes, str]): The data to write.
            offset (int): The offset into the NV area. Defaults to 0.
            auth_handle (int): The source of the authorization. Defaults to the nv_index.
            session1 (Session): Authorizes auth_handle. Defaults to a password session.
            session2 (Session): A session encrypting data (optional).
            session3 (Session): A session encrypting data (optional).
        """
        if auth_handle is None:
            auth_handle = nv_index
        data = TPM2B_MAX_NV_BUFFER(data)
        self._execute(
            TPM2_CC.NV_Write,
            handles=(auth_handle, nv_index),
            parameters=data.marshal() + int(offset).to_bytes(2, "big"),
            auth_count=1,
            sessions=(session1, session2, session3),
            command_marked=(0,),
        )
        public = self._nv_publics.get(nv_index)
        if public is not None and not public.attributes & TPMA_NV.WRITTEN:
            # the name of an index changes with its first write
            public.attributes = public.attributes | TPMA_NV.WRITTEN
            self._names[nv_index] = public.get_name()

    def nv_read(
        self,
        nv_index: int,
        size: int,
        offset: int = 0,
        auth_handle: Optional[int] = None,
        session1: Optional[Session] = None,
        session2: Optional[Session] = None,
        session3: Optional[Session] = None,
    ) -> bytes:
        """Invoke the TPM2_NV_Read command.

        Args:
            nv_index (int): The NV index to read.
            size (int): The number of bytes to read.
            offset (int): The offset into the NV area. Defaults to 0.
            auth_handle (int): The source of the authorization. Defaults to the nv_index.
            session1 (Session): Authorizes auth_handle. Defaults to a password session.
            session2 (Session): A session encrypting the data (optional).
            session3 (Session): A session encrypting the data (optional).

        Returns:
            The data read.
        """
        if auth_handle is None:
            auth_handle = nv_index
        resp = self._execute(
            TPM2_CC.NV_Read,
            handles=(auth_handle, nv_index),
            parameters=int(size).to_bytes(2, "big") + int(offset).to_bytes(2, "big"),
            auth_count=1,
            sessions=(session1, session2, session3),
            response_marked=(0,),
        )
        data, _ = _unpack_sized(resp.parameters, 0)
        return data

    def nv_info(self, nv_index: int) -> NVIndexInfo:
        return NVIndexInfo(nv_index, bytes(self.tr_get_name(nv_index)))
