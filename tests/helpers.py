import hashlib
import io
import os
import pathlib
import sys
import tarfile

from brewkit.formula import BottleSet, Command, FormulaDescriptor, Resource


def sha256(path):
    return hashlib.sha256(pathlib.Path(path).read_bytes()).hexdigest()


def make_tarball(path, files, modes=None):
    """
    Write a tar.gz holding ``files`` and return it with its sha256.
    """
    modes = modes or {}
    added = set()
    with tarfile.open(path, "w:gz") as tar:
        for name in sorted(files):
            parents = list(pathlib.PurePosixPath(name).parents)[:-1]
            for parent in reversed(parents):
                if str(parent) in added:
                    continue
                info = tarfile.TarInfo(str(parent))
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
                added.add(str(parent))
            data = files[name].encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = modes.get(name, 0o644)
            tar.addfile(info, io.BytesIO(data))
    return path, sha256(path)


def python_step(code, *args):
    """
    A recipe step running ``code`` with the interpreter running the tests.
    """
    return Command([sys.executable, "-c", code] + list(args))


def write_file_step(dest, content):
    code = (
        "import pathlib, sys\n"
        "p = pathlib.Path(sys.argv[1])\n"
        "p.parent.mkdir(parents=True, exist_ok=True)\n"
        "p.write_text(sys.argv[2])\n"
    )
    return python_step(code, dest, content)


def failing_step(message="boom", code=2):
    return python_step(
        f"import sys; print('about to fail'); sys.stderr.write({message!r}); sys.exit({code})"
    )


class SourceProject:
    """
    A source tarball and the formula building it, served from ``file://`` urls.
    """

    def __init__(self, root, name="hello", version="1.0"):
        self.root = pathlib.Path(root)
        self.name = name
        self.version = version
        self.calls = []

    @property
    def tarball(self):
        return self.root / f"{self.name}-{self.version}.tar.gz"

    def make_source(self, files=None):
        self.root.mkdir(parents=True, exist_ok=True)
        if files is None:
            files = {"README": f"{self.name} {self.version}\n"}
        top = f"{self.name}-{self.version}"
        return make_tarball(self.tarball, {f"{top}/{k}": v for k, v in files.items()})

    def make_bottle(self, tag, files=None):
        self.root.mkdir(parents=True, exist_ok=True)
        if files is None:
            files = {"bin/" + self.name: "#!/bin/sh\necho poured\n"}
        path = self.root / f"{self.name}-{self.version}.{tag}.bottle.tar.gz"
        prefix = f"{self.name}/{self.version}"
        return make_tarball(
            path,
            {f"{prefix}/{k}": v for k, v in files.items()},
            modes={f"{prefix}/{k}": 0o755 for k in files if k.startswith("bin/")},
        )

    def formula(self, steps=None, checksum=None, bottle=None, **kwargs):
        if checksum is None:
            _, checksum = self.make_source()
        if steps is None:
            steps = [
                write_file_step("{bin}/" + self.name, "#!/bin/sh\necho built\n"),
            ]

        def install(ctx):
            self.calls.append(ctx.name)
            return steps

        return FormulaDescriptor(
            name=self.name,
            version=self.version,
            source=Resource(self.name, self.tarball.as_uri(), checksum, version=self.version),
            install=install,
            bottle=bottle,
            **kwargs,
        )

    def bottle_set(self, tag, checksum):
        return BottleSet({tag: checksum}, root_url=self.root.as_uri())


def pem(label):
    return f"-----BEGIN CERTIFICATE-----\n{label}\n-----END CERTIFICATE-----"


class FakeSandbox:
    """
    Records commands and answers them from a callable.
    """

    def __init__(self, answer):
        self.answer = answer
        self.calls = []

    def environment(self, overlay=None):
        return {}

    def run(self, args, env=None, cwd=None, input=None, check=False, step=0):
        self.calls.append(([os.fspath(_) for _ in args], input))
        return self.answer(args, input)
