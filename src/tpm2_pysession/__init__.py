# SPDX-License-Identifier: BSD-2
from .ESAPI import ESAPI
from .TCTI import TCTI, PyTCTI, DeviceTCTI, SocketTCTI, open_tcti
from .simulator import SimulatorTCTI, SoftwareTPM
from .types import *
from .constants import *
from .TSS2_Exception import TSS2_Exception
from .exceptions import (
    SessionError,
    ConfigurationError,
    WrongSecret,
    SlotExhausted,
    ProtocolViolation,
    NonceMismatch,
    TransportError,
    AlreadyReleased,
)
from .config import SessionConfig
from .descriptor import (
    AESCFB,
    Direction,
    PlainAuth,
    Bound,
    Salted,
    PasswordSession,
    HMACSession,
    SessionDescriptor,
    build_descriptor,
    bound,
    hmac_auth,
    password,
    salted,
    unbound,
)
from .session import (
    Ephemeral,
    NonceState,
    Persistent,
    Session,
    SessionManager,
    SessionState,
    SlotPool,
    authorize,
    build_session,
    decrypt_parameter,
    encrypt_parameter,
    manager_for,
    start_session,
    verify_response,
)
from .command import Response, execute, execute_no_sessions, flush_context
from . import derivation
from . import parameter
from .log import set_level
