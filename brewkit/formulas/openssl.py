# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
OpenSSL 1.1, the cryptography and SSL/TLS toolkit.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

from ..common import PlatformError, TestFailed, Version
from ..context import Context
from ..formula import (
    BUILD,
    BottleEntry,
    BottleSet,
    Command,
    FormulaDescriptor,
    Option,
    Resource,
    Step,
    depends_on,
    formulas,
)
from ..profile import PlatformProfile
from ..trust import OpensslVerifier, SystemTrustStore, atomic_write, write_bundle

log = logging.getLogger(__name__)

NAME = "openssl@1.1"
VERSION = "1.1.0h"

# sha256 of "This is a test file"
TEST_CONTENT = "This is a test file"
TEST_CHECKSUM = "e2d0fe1585a63ec6009c8016ff8dda8b17719a637405a4e23c0ff81339148249"

CAVEATS = """
A CA file has been bootstrapped using certificates from the system
keychain. To add additional certificates, place .pem files in
  {pkgetc}/certs

and run
  {opt_bin}/c_rehash
"""


def configure_target(profile: PlatformProfile) -> List[str]:
    """
    The ``Configure`` target for a platform.

    :raises PlatformError: If OpenSSL has no target for the platform
    """
    if profile.prefer_64_bit and profile.is_macos:
        if profile.arch == "arm64":
            return ["darwin64-arm64-cc"]
        return ["darwin64-x86_64-cc", "enable-ec_nistp_64_gcc_128"]
    elif profile.prefer_64_bit and profile.is_linux:
        if profile.arch == "aarch64":
            return ["linux-aarch64"]
        return ["linux-x86_64"]
    elif profile.is_macos:
        return ["darwin-i386-cc"]
    elif profile.is_linux:
        return ["linux-generic32"]
    raise PlatformError(f"OpenSSL can not be configured for {profile.os_family}")


def _escape(value: str) -> str:
    return value.replace("{", "{{").replace("}", "}}")


def configure_args(ctx: Context) -> List[str]:
    """
    Arguments passed to ``Configure`` on every platform.

    SSLv3 and zlib are off by default but are disabled explicitly.
    """
    args = [
        "--prefix={prefix}",
        "--openssldir={pkgetc}",
        "no-ssl3",
        "no-ssl3-method",
        "no-zlib",
    ]
    if not ctx.profile.is_macos:
        env = ctx.sandbox.environment(ctx.env)
        flags = " ".join(
            env.get(_, "") for _ in ("CPPFLAGS", "CFLAGS", "LDFLAGS")
        ).strip()
        if flags:
            args.append(_escape(flags))
    return args


def install(ctx: Context) -> Sequence[Step]:
    # This could interfere with how OpenSSL expects to be built.
    ctx.unsetenv("OPENSSL_LOCAL_CONFIG_DIR")

    # Keep the versioned perl path out of OpenSSL's scripts.
    perl = ctx.deps.get("perl")
    if perl is not None and ctx.which("perl") == perl / "bin" / "perl":
        ctx.setenv("PERL", perl / "bin" / "perl")

    ctx.deparallelize()
    steps: List[Step] = [
        Command(["perl", "./Configure"] + configure_args(ctx) + configure_target(ctx.profile)),
        Command(["make"]),
    ]
    if ctx.build_with("test"):
        steps.append(Command(["make", "test"]))
    steps.append(Command(["make", "install", "MANDIR={man}", "MANSUFFIX=ssl"]))
    return steps


def post_install(ctx: Context) -> None:
    """
    Bootstrap ``cert.pem`` from the system keychain, or the bundled cacert.
    """
    openssldir = ctx.pkgetc
    openssldir.mkdir(parents=True, exist_ok=True)
    cert = openssldir / "cert.pem"
    if not ctx.profile.has_system_trust_store:
        cacert = ctx.resource_path("cacert")
        log.info("Installing %s as %s", cacert, cert)
        atomic_write(cert, cacert.read_text(encoding="utf-8"))
        return
    certs = SystemTrustStore(ctx.sandbox).list_certificates()
    write_bundle(cert, certs, OpensslVerifier(ctx.sandbox, ctx.bin / "openssl"))


def test(ctx: Context) -> None:
    # OpenSSL needs the .cnf file for some functionality.
    cnf = ctx.etc / NAME / "openssl.cnf"
    if not cnf.exists():
        raise TestFailed(f"OpenSSL requires the .cnf file for some functionality: {cnf}")

    assert ctx.testpath is not None
    (ctx.testpath / "testfile.txt").write_text(TEST_CONTENT)
    ctx.run(
        [ctx.bin / "openssl", "dgst", "-sha256", "-out", "checksum.txt", "testfile.txt"]
    )
    with open(ctx.testpath / "checksum.txt", encoding="utf-8") as fp:
        checksum = fp.read(100).split("=")[-1].strip()
    if checksum != TEST_CHECKSUM:
        raise TestFailed(f"Expected checksum {TEST_CHECKSUM} got {checksum}")


def needs_perl(profile: PlatformProfile) -> bool:
    """
    The test suite needs a newer perl than macOS 10.8 and older ship.
    """
    return profile.is_macos and profile.version_tier <= Version("10.8")


formula = formulas.add(
    FormulaDescriptor(
        name=NAME,
        version=VERSION,
        desc="Cryptography and SSL/TLS Toolkit",
        homepage="https://openssl.org/",
        source=Resource(
            NAME,
            "https://www.openssl.org/source/openssl-{version}.tar.gz",
            "5835626cde9e99656585fc7aaa2302a73a7e1340bf8c14fd635a62c66802a517",
            mirrors=[
                "https://dl.bintray.com/homebrew/mirror/openssl@1.1-{version}.tar.gz",
                "https://www.mirrorservice.org/sites/ftp.openssl.org/source/openssl-{version}.tar.gz",
            ],
            version=VERSION,
        ),
        version_scheme=1,
        bottle=BottleSet(
            {
                "high_sierra": "bbd397eec4b1eccc2da9da7b546c07913339fdb475e46ddfeb034f628e17b2d9",
                "sierra": "b9626f5fa02f1dd1087fe97fc801be03e531c200bf46eb86be0deba1a6d7cb18",
                "el_capitan": "aefb8af514d06dcf80d50855bc5ca64ab128602a2ca6bf2dfe66844b94b462d8",
                "x86_64_linux": BottleEntry(
                    "ce891ff2d8673febb3a197bc43468269db34e163c4bcf3f18301220b39862571",
                    "https://linuxbrew.bintray.com/bottles/openssl@1.1-1.1.0h.x86_64_linux.bottle.tar.gz",
                ),
            },
            root_url="https://homebrew.bintray.com/bottles",
        ),
        devel=Resource(
            NAME,
            "https://www.openssl.org/source/openssl-{version}.tar.gz",
            "b541d574d8d099b0bc74ebc8174cec1dc9f426d8901d04be7874046ad72116b0",
            version="1.1.1-pre3",
        ),
        keg_only="versioned_formula",
        options=[Option("without-test", "Skip build-time tests (not recommended)")],
        resources=[
            Resource(
                "cacert",
                "https://curl.haxx.se/ca/cacert-2017-01-18.pem",
                "e62a07e61e5870effa81b430e1900778943c228bd7da1259dd6a955ee2262b47",
            ),
        ],
        dependencies=[depends_on("perl", BUILD, when=needs_perl, option="test")],
        install=install,
        post_install=post_install,
        test=test,
        caveats=CAVEATS,
    )
)
