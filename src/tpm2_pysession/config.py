# SPDX-License-Identifier: BSD-2
import os
from typing import NamedTuple, Tuple

from .constants import TPM2_ALG, TPM2_MAX
from .descriptor import DEFAULT_HASH_ALG, DEFAULT_NONCE_SIZE, SESSION_HASH_ALGS

# Environment variables overriding the defaults
ENV_TCTI = "TPM2_PYSESSION_TCTI"
ENV_TIMEOUT = "TPM2_PYSESSION_TIMEOUT"


SessionConfig = NamedTuple(
    "SessionConfig",
    [
        ("tcti", str),
        ("timeout", float),
        ("max_sessions", int),
        ("nonce_size", int),
        ("hash_alg", int),
        ("max_parameter_size", int),
        ("max_sym_data", int),
        ("session_hash_algs", Tuple[int, ...]),
    ],
)
SessionConfig.__doc__ = """Configuration of a session manager and its connection.

Attributes:
    tcti (str): Where the TPM is, "simulator", a device path or "host:port".
    timeout (float): Seconds to wait for each device round trip.
    max_sessions (int): Number of persistent sessions a manager may hold at once.
    nonce_size (int): Default size of caller nonces in bytes.
    hash_alg (int): Default session hash algorithm.
    max_parameter_size (int): Largest parameter the encryption codec accepts.
    max_sym_data (int): Largest payload that can be sealed.
    session_hash_algs (tuple of int): Hash algorithms accepted for sessions.
"""


def export(self):
    exported = self._asdict()
    remove = [key for key, value in exported.items() if value is None]
    for key in remove:
        del exported[key]
    exported["hash_alg"] = str(TPM2_ALG(exported["hash_alg"]))
    exported["session_hash_algs"] = [
        str(TPM2_ALG(a)) for a in exported["session_hash_algs"]
    ]
    return exported


@classmethod
def default(cls, **kwargs):
    config = cls(
        tcti=os.environ.get(ENV_TCTI, "simulator"),
        timeout=float(os.environ.get(ENV_TIMEOUT, "5.0")),
        max_sessions=4,
        nonce_size=DEFAULT_NONCE_SIZE,
        hash_alg=DEFAULT_HASH_ALG,
        max_parameter_size=TPM2_MAX.DIGEST_BUFFER,
        max_sym_data=TPM2_MAX.SYM_DATA,
        session_hash_algs=SESSION_HASH_ALGS,
    )
    return config._replace(**kwargs)


SessionConfig.export = export
SessionConfig.default = default
