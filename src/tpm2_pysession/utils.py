# SPDX-License-Identifier: BSD-2
"""
Helpers composing sessions with the commands of :class:`ESAPI`.

The session builders return ephemeral sessions by default, or persistent ones started
on the TPM, which the caller releases.
"""
from typing import Optional, Tuple, Union

from .constants import TPM2_ALG, TPM2_RH, TPMA_NV
from .descriptor import AESCFB, bound, salted, unbound
from .exceptions import ConfigurationError, ProtocolViolation
from .session import Session
from .types import (
    TPM2B_NV_PUBLIC,
    TPM2B_PRIVATE,
    TPM2B_PUBLIC,
    TPM2B_SENSITIVE_CREATE,
    TPMS_NV_PUBLIC,
    TPMS_SENSITIVE_CREATE,
    NVIndexInfo,
)
from .internal.utils import _to_bytes

DEFAULT_NV_ATTRS = (
    TPMA_NV.OWNERWRITE | TPMA_NV.OWNERREAD | TPMA_NV.AUTHWRITE | TPMA_NV.AUTHREAD
)


def sensitive_create(
    auth: Union[bytes, str, None] = b"", data: Union[bytes, str, None] = b""
) -> TPM2B_SENSITIVE_CREATE:
    """The sensitive area of a new object, its auth value and its data."""
    return TPM2B_SENSITIVE_CREATE(
        sensitive=TPMS_SENSITIVE_CREATE(
            userAuth=_to_bytes(auth, "auth"), data=_to_bytes(data, "data")
        )
    )


def _start(ectx, descriptor, persistent: bool) -> Session:
    if persistent:
        return ectx.start_auth_session(descriptor)
    return ectx.build_session(descriptor)


def unbound_session(
    ectx,
    auth: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    persistent: bool = False,
) -> Session:
    """An unbound, unsalted HMAC session knowing the auth value of the entity it authorizes."""
    return _start(
        ectx, unbound(auth, encryption=encryption, config=ectx.config), persistent
    )


def bound_session(
    ectx,
    bind_handle: int,
    bind_auth: Union[bytes, str, None] = b"",
    auth: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    persistent: bool = False,
) -> Session:
    """An HMAC session bound to bind_handle.

    Args:
        ectx (ESAPI): The ESAPI instance, used to look up the name of bind_handle.
        bind_handle (int): The entity to bind to.
        bind_auth (Union[bytes, str]): The auth value of the bind entity.
        auth (Union[bytes, str]): The auth value of the entity the session authorizes.
        encryption (AESCFB): Parameter encryption, None for none.
        persistent (bool): Start the session on the TPM instead of per command.
    """
    handle, name = ectx.entity(bind_handle)
    return _start(
        ectx,
        bound(handle, name, bind_auth, auth, encryption=encryption, config=ectx.config),
        persistent,
    )


def salted_session(
    ectx,
    salt_key_handle: int,
    auth: Union[bytes, str, None] = b"",
    encryption: Optional[AESCFB] = AESCFB(),
    persistent: bool = False,
) -> Session:
    """An HMAC session salted to a loaded RSA or ECC decryption key.

    The public area of the key is read from the TPM.
    """
    public, _ = ectx.read_public(salt_key_handle)
    return _start(
        ectx,
        salted(salt_key_handle, public, auth, encryption=encryption, config=ectx.config),
        persistent,
    )


def create_nv_index(
    ectx,
    nv_index: int,
    size: int,
    auth: Union[bytes, str, None] = b"",
    attributes: int = DEFAULT_NV_ATTRS,
    name_alg: int = TPM2_ALG.SHA256,
    auth_handle: int = TPM2_RH.OWNER,
    session: Optional[Session] = None,
    encrypt_session: Optional[Session] = None,
) -> NVIndexInfo:
    """Define an ordinary NV index.

    Args:
        ectx (ESAPI): The ESAPI instance.
        nv_index (int): The handle of the index.
        size (int): The size of the index in bytes.
        auth (Union[bytes, str]): The auth value of the index.
        attributes (int): The TPMA_NV attributes.
        name_alg (int): The name algorithm of the index.
        auth_handle (int): The hierarchy authorizing the definition.
        session (Session): Authorizes auth_handle, defaults to a password session.
        encrypt_session (Session): Encrypts the auth value of the index.

    Returns:
        The handle and the name of the index.
    """
    public = TPM2B_NV_PUBLIC(
        nvPublic=TPMS_NV_PUBLIC(
            nvIndex=nv_index, nameAlg=name_alg, attributes=attributes, dataSize=size
        )
    )
    handle = ectx.nv_define_space(
        auth, public, auth_handle=auth_handle, session1=session, session2=encrypt_session
    )
    return ectx.nv_info(handle)


def delete_nv_index(
    ectx,
    nv_index: Union[NVIndexInfo, int],
    auth_handle: int = TPM2_RH.OWNER,
    session: Optional[Session] = None,
) -> None:
    """Undefine an NV index under the hierarchy that defined it."""
    if isinstance(nv_index, NVIndexInfo):
        nv_index = nv_index.handle
    ectx.nv_undefine_space(nv_index, auth_handle=auth_handle, session1=session)


def seal(
    ectx,
    parent_handle: int,
    data: Union[bytes, str],
    auth: Union[bytes, str, None] = b"",
    session: Optional[Session] = None,
    encrypt_session: Optional[Session] = None,
) -> Tuple[TPM2B_PRIVATE, TPM2B_PUBLIC]:
    """Seal data under a storage key.

    Args:
        ectx (ESAPI): The ESAPI instance.
        parent_handle (int): The storage key.
        data (Union[bytes, str]): The data to seal.
        auth (Union[bytes, str]): The auth value of the sealed object.
        session (Session): Authorizes the parent, defaults to a password session.
        encrypt_session (Session): Encrypts the sensitive area on the way to the TPM.

    Returns:
        A tuple of the private and the public part of the sealed object.

    Raises:
        ConfigurationError: If data is larger than the maximum sealed data size, nothing
            is sent to the TPM.
    """
    data = _to_bytes(data, "data")
    if len(data) > ectx.config.max_sym_data:
        raise ConfigurationError(
            f"sealed data is limited to {ectx.config.max_sym_data} bytes, got {len(data)}"
        )
    return ectx.create(
        parent_handle,
        sensitive_create(auth, data),
        "seal",
        session1=session,
        session2=encrypt_session,
    )


def unseal(
    ectx,
    parent_handle: int,
    private: TPM2B_PRIVATE,
    public: TPM2B_PUBLIC,
    auth: Union[bytes, str, None] = b"",
    session: Optional[Session] = None,
    encrypt_session: Optional[Session] = None,
) -> bytes:
    """Load a sealed object, unseal it and flush it.

    Args:
        ectx (ESAPI): The ESAPI instance.
        parent_handle (int): The storage key the object was sealed under.
        private (TPM2B_PRIVATE): The private part from :func:`seal`.
        public (TPM2B_PUBLIC): The public part from :func:`seal`.
        auth (Union[bytes, str]): The auth value for password authorization of the object.
        session (Session): Authorizes the object instead of a password session.
        encrypt_session (Session): Encrypts the unsealed data on the way back.

    Raises:
        WrongSecret: If the auth value of the object is wrong.
    """
    handle = ectx.load(parent_handle, private, public)
    try:
        ectx.tr_set_auth(handle, auth)
        data = ectx.unseal(handle, session1=session, session2=encrypt_session)
    finally:
        ectx.flush_context(handle)
    return bytes(data)


def generate_random_data(
    ectx, size: int, session: Optional[Session] = None
) -> bytes:
    """Get size random bytes from the TPM, in as many calls as needed."""
    data = b""
    while len(data) < size:
        chunk = ectx.get_random(size - len(data), session1=session)
        if not chunk:
            raise ProtocolViolation(
                f"TPM returned no random bytes, {len(data)} of {size} received"
            )
        data += chunk
    return data
