# SPDX-License-Identifier: BSD-2
from .constants import TPM2_RC
from typing import Union

# descriptions follow the TPM 2.0 library specification, Part 2, table 16
_rc_descriptions = {
    TPM2_RC.BAD_TAG: "defined for compatibility with TPM 1.2",
    TPM2_RC.INITIALIZE: "TPM not initialized by TPM2_Startup or already initialized",
    TPM2_RC.FAILURE: "commands not being accepted because of a TPM failure",
    TPM2_RC.PRIVATE: "this handle is not correct for the command",
    TPM2_RC.HMAC: "HMAC session data is not valid",
    TPM2_RC.DISABLED: "the command is disabled",
    TPM2_RC.AUTH_TYPE: "authorization handle is not correct for command",
    TPM2_RC.AUTH_MISSING: "command requires an authorization session for handle and it is not present",
    TPM2_RC.AUTH_UNAVAILABLE: "authValue or authPolicy is not available for selected entity",
    TPM2_RC.COMMAND_SIZE: "command commandSize value is inconsistent with contents of the command buffer",
    TPM2_RC.COMMAND_CODE: "command code not supported",
    TPM2_RC.AUTHSIZE: "the value of authorizationSize is out of range or the number of octets in the Authorization Area is greater than required",
    TPM2_RC.AUTH_CONTEXT: "use of an authorization session with a context command or another command that cannot have an authorization session",
    TPM2_RC.NV_RANGE: "NV offset+size is out of range",
    TPM2_RC.NV_SIZE: "Requested allocation size is larger than allowed",
    TPM2_RC.NV_AUTHORIZATION: "NV access authorization fails in command actions",
    TPM2_RC.NV_UNINITIALIZED: "an NV Index is used before being initialized or the state saved by TPM2_Shutdown(STATE) could not be restored",
    TPM2_RC.NV_SPACE: "insufficient space for NV allocation",
    TPM2_RC.NV_DEFINED: "NV Index or persistent object already defined",
    TPM2_RC.SENSITIVE: "the sensitive area did not unmarshal correctly after decryption",
    TPM2_RC.ASYMMETRIC: "asymmetric algorithm not supported or not correct",
    TPM2_RC.ATTRIBUTES: "inconsistent attributes",
    TPM2_RC.HASH: "hash algorithm not supported or not appropriate",
    TPM2_RC.VALUE: "value is out of range or is not correct for the context",
    TPM2_RC.HIERARCHY: "hierarchy is not enabled or is not correct for the use",
    TPM2_RC.KEY_SIZE: "key size is not supported",
    TPM2_RC.MODE: "mode of operation not supported",
    TPM2_RC.TYPE: "the type of the value is not appropriate for the use",
    TPM2_RC.HANDLE: "the handle is not correct for the use",
    TPM2_RC.KDF: "unsupported key derivation function or function not appropriate for use",
    TPM2_RC.RANGE: "value was out of allowed range",
    TPM2_RC.AUTH_FAIL: "the authorization HMAC check failed and DA counter incremented",
    TPM2_RC.NONCE: "invalid nonce size or nonce value mismatch",
    TPM2_RC.SCHEME: "unsupported or incompatible scheme",
    TPM2_RC.SIZE: "structure is the wrong size",
    TPM2_RC.SYMMETRIC: "unsupported symmetric algorithm or key size, or not appropriate for instance",
    TPM2_RC.TAG: "incorrect structure tag",
    TPM2_RC.INSUFFICIENT: "the TPM was unable to unmarshal a value because there were not enough octets in the input buffer",
    TPM2_RC.KEY: "key fields are not compatible with the selected use",
    TPM2_RC.INTEGRITY: "integrity check failed",
    TPM2_RC.BAD_AUTH: "authorization failure without DA implications",
    TPM2_RC.CURVE: "curve not supported",
    TPM2_RC.OBJECT_MEMORY: "out of memory for object contexts",
    TPM2_RC.SESSION_MEMORY: "out of memory for session contexts",
    TPM2_RC.MEMORY: "out of shared object/session memory or need space for internal operations",
    TPM2_RC.SESSION_HANDLES: "out of session handles - a session must be flushed before a new session may be created",
    TPM2_RC.OBJECT_HANDLES: "out of object handles - the handle space for objects is depleted and a reboot is required",
    TPM2_RC.REFERENCE_H0: "the 1st handle in the handle area references a transient object or session that is not loaded",
    TPM2_RC.REFERENCE_S0: "the 1st authorization session handle references a session that is not loaded",
    TPM2_RC.LOCKOUT: "authorizations for objects subject to DA protection are not allowed at this time because the TPM is in DA lockout mode",
    TPM2_RC.RETRY: "the TPM was not able to start the command",
}


def _decode_rc(rc: int) -> str:
    if rc & TPM2_RC.FMT1:
        base = TPM2_RC.FMT1 + (rc & 0x3F)
        n = (rc & TPM2_RC.N_MASK) >> 8
        if rc & TPM2_RC.P:
            where = f"parameter({n})"
        elif rc & TPM2_RC.S:
            where = f"session({(rc - TPM2_RC.S) >> 8 & 0x7})"
        else:
            where = f"handle({n})"
        desc = _rc_descriptions.get(base, f"unknown error 0x{base:X}")
        return f"tpm:{where}:{desc}"
    desc = _rc_descriptions.get(rc, f"unknown error 0x{rc:X}")
    return f"tpm:error({2 if rc & TPM2_RC.VER1 else 1}.0):{desc}"


class TSS2_Exception(RuntimeError):
    """TSS2_Exception represents an error code returned by the TPM."""

    def __init__(self, rc: Union[TPM2_RC, int]):
        if not isinstance(rc, TPM2_RC):
            rc = TPM2_RC(rc)
        errmsg = _decode_rc(rc)
        super(TSS2_Exception, self).__init__(f"{errmsg}")

        self._rc = rc
        self._handle = 0
        self._parameter = 0
        self._session = 0
        self._error = 0
        if self._rc & TPM2_RC.FMT1:
            self._parse_fmt1()
        else:
            self._error = self._rc

    def _parse_fmt1(self):
        self._error = TPM2_RC.FMT1 + (self.rc & 0x3F)

        if self.rc & TPM2_RC.P:
            self._parameter = (self.rc & TPM2_RC.N_MASK) >> 8
        elif self.rc & TPM2_RC.S:
            self._session = ((self.rc - TPM2_RC.S) & TPM2_RC.N_MASK) >> 8
        else:
            self._handle = (self.rc & TPM2_RC.N_MASK) >> 8

    @property
    def rc(self):
        """int: The return code from the TPM."""
        return self._rc

    @property
    def handle(self):
        """int: The handle related to the error, 0 if not related to any handle."""
        return self._handle

    @property
    def parameter(self):
        """int: The parameter related to the error, 0 if not related to any parameter."""
        return self._parameter

    @property
    def session(self):
        """int: The session related to the error, 0 if not related to any session."""
        return self._session

    @property
    def error(self):
        """int: The error with handle, parameter and session stripped."""
        return self._error

    @property
    def fmt1(self):
        """bool: True if the error is related to a handle, parameter or session """
        return bool(self._rc & TPM2_RC.FMT1)
