import logging

from test.TSS2_BaseTest import TpmSimulator

from tpm2_pysession import ESAPI, WrongSecret, TPM2_RH, TPM2_SU, hmac_auth, unbound
from tpm2_pysession.log import session_loggers

# highlight using ANSI color codes
green = "\x1b[32m"
yellow = "\x1b[93m"
red = "\x1b[31"
blue = "\x1b[34m"
cyan = "\x1b[96m"
light_grey = "\x1b[37m"
reset = "\x1b[0m"

# setup logging
root_logger = logging.getLogger()
root_logger.setLevel(logging.NOTSET)
handler = logging.StreamHandler()
formatter = logging.Formatter(
    f"{light_grey}[%(levelname)s]{reset} {blue}%(pathname)s:%(lineno)d{reset} - {cyan}%(name)s {yellow}%(message)s{reset}",
    "%Y-%m-%d %H:%M:%S",
)
handler.setFormatter(formatter)
root_logger.addHandler(handler)

# set some session layer log levels as an example
for _module, logger in session_loggers.items():
    logger.setLevel(logging.WARNING)
logging.getLogger("TSS.session").setLevel(logging.DEBUG)

if __name__ == "__main__":
    tpm = TpmSimulator.getSimulator()
    tpm.start()

    with ESAPI(tpm.get_tcti()) as ectx:
        ectx.startup(TPM2_SU.CLEAR)
        with ectx.start_auth_session(unbound()) as session:
            ectx.get_random(16, session1=session)

        ectx.hierarchy_change_auth(TPM2_RH.OWNER, "owner-secret")
        try:
            # provoke an authorization failure
            ectx.create_primary(
                None, "rsa2048", session1=ectx.build_session(hmac_auth("wrong"))
            )
        except WrongSecret as e:
            root_logger.error(f"owner authorization failed: {e}")
        ectx.hierarchy_change_auth(
            TPM2_RH.OWNER, "", session1=ectx.build_session(hmac_auth("owner-secret"))
        )

    tpm.close()
