# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Bootstrap certificate bundles from the system trust store.
"""
from __future__ import annotations

import logging
import os
import pathlib
import re
import tempfile
from typing import Callable, List, Optional, Sequence

from .common import BrewkitException, PathLike
from .profile import SYSTEM_ROOT_KEYCHAIN
from .sandbox import Sandbox

log = logging.getLogger(__name__)

PEM_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL
)

SYSTEM_KEYCHAINS = (SYSTEM_ROOT_KEYCHAIN,)


def split_pem(text: str) -> List[str]:
    """
    Return every PEM encoded certificate in ``text``.
    """
    return PEM_RE.findall(text)


class SystemTrustStore:
    """
    The macOS keychains queried through ``security find-certificate``.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        keychains: Sequence[str] = SYSTEM_KEYCHAINS,
        security: str = "security",
    ) -> None:
        self.sandbox = sandbox
        self.keychains = list(keychains)
        self.security = security

    def list_certificates(self) -> List[str]:
        """
        List the PEM blocks of every certificate in the keychains.

        :raises BrewkitException: If the keychain query fails
        """
        result = self.sandbox.run(
            [self.security, "find-certificate", "-a", "-p"] + self.keychains
        )
        if result.returncode != 0:
            raise BrewkitException(
                f"security find-certificate failed ({result.returncode}): {result.stderr.strip()}"
            )
        return split_pem(result.stdout)


class OpensslVerifier:
    """
    Ask an ``openssl`` binary whether a certificate is currently valid.
    """

    def __init__(self, sandbox: Sandbox, openssl: PathLike) -> None:
        self.sandbox = sandbox
        self.openssl = os.fspath(openssl)

    def __call__(self, cert: str) -> bool:
        result = self.sandbox.run(
            [self.openssl, "x509", "-inform", "pem", "-checkend", "0", "-noout"],
            input=cert,
        )
        return result.returncode == 0


def atomic_write(
    path: PathLike,
    content: str,
    verify: Optional[Callable[[pathlib.Path], bool]] = None,
    mode: int = 0o644,
) -> pathlib.Path:
    """
    Replace ``path`` with ``content`` without it ever being partially written.

    The content goes to a temporary file next to ``path``, is optionally
    verified, then renamed over the target.

    :raises BrewkitException: If verification of the temporary file fails
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    tmp_path = pathlib.Path(tmp)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        if verify is not None and not verify(tmp_path):
            raise BrewkitException(f"Verification of new {path} failed")
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except OSError:
            pass
        raise
    return path


def write_bundle(
    path: PathLike,
    certs: Sequence[str],
    is_valid: Callable[[str], bool],
) -> int:
    """
    Write the currently valid certificates to a bundle.

    :return: The number of certificates written
    :rtype: int
    """
    valid = [cert for cert in certs if is_valid(cert)]
    log.info("%d of %d certificates are valid", len(valid), len(certs))
    expected = len(valid)

    def _verify(tmp: pathlib.Path) -> bool:
        return len(split_pem(tmp.read_text(encoding="utf-8"))) == expected

    atomic_write(path, "\n".join(valid) + ("\n" if valid else ""), verify=_verify)
    return expected
