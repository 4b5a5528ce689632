import site
import sys
from setuptools import setup, find_packages

# workaround bug https://github.com/pypa/pip/issues/7953
site.ENABLE_USER_SITE = "--user" in sys.argv[1:]

setup(
    name="tpm2-pysession",
    version="0.1.0",
    description="TPM 2.0 HMAC, bound and salted sessions with parameter encryption",
    license="BSD-2-Clause",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.7",
    install_requires=["cryptography>=3.1,<47"],
    extras_require={"test": ["pytest"]},
    classifiers=[
        "License :: OSI Approved :: BSD License",
        "Programming Language :: Python :: 3",
        "Topic :: Security :: Cryptography",
    ],
)
