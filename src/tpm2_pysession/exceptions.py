# SPDX-License-Identifier: BSD-2
"""
Errors raised by the session layer.

Device return codes surface as :class:`TSS2_Exception` (or its :class:`WrongSecret`
subclass); everything detected locally derives from :class:`SessionError`.
"""
from typing import Optional

from .constants import TPM2_RC
from .TSS2_Exception import TSS2_Exception


class SessionError(Exception):
    """Base class for errors detected by the session layer itself."""


class ConfigurationError(SessionError, ValueError):
    """An invalid session descriptor or parameter, never sent to the TPM."""


class WrongSecret(TSS2_Exception):
    """The TPM rejected the authorization.

    Raised for ``TPM2_RC.AUTH_FAIL`` and ``TPM2_RC.BAD_AUTH``. The caller may retry
    with the correct secret, it is never retried automatically.
    """


class SlotExhausted(SessionError):
    """No session slot is free, locally or on the TPM.

    Release another persistent session or fall back to an ephemeral one.
    """

    def __init__(self, message: str, rc: Optional[int] = None):
        super().__init__(message)
        self.rc = rc


class ProtocolViolation(SessionError):
    """The session state can no longer be trusted and the session was discarded."""


class NonceMismatch(ProtocolViolation):
    """The TPM response does not match the nonces issued for the exchange."""


class TransportError(SessionError):
    """I/O failure or timeout talking to the TPM.

    Sessions taking part in the failed exchange are discarded.
    """


class AlreadyReleased(SessionError):
    """A persistent session was released more than once."""


_wrong_secret_codes = (TPM2_RC.AUTH_FAIL, TPM2_RC.BAD_AUTH)
_slot_codes = (TPM2_RC.SESSION_HANDLES, TPM2_RC.SESSION_MEMORY)


def _error_from_rc(rc: int) -> Exception:
    """Map a non zero TPM response code to the exception raised to callers."""
    tss_error = TSS2_Exception(rc)
    if tss_error.error in _wrong_secret_codes:
        return WrongSecret(rc)
    if tss_error.error in _slot_codes:
        return SlotExhausted(str(tss_error), rc=rc)
    return tss_error
