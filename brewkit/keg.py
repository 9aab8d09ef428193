# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Kegs: the per version install trees, and the bottles they are poured from.
"""
from __future__ import annotations

import io
import logging
import os
import pathlib
import posixpath
import shutil
import tarfile
from typing import List, Optional

from .common import BottleError, PathLike, WorkDirs, extract_archive

log = logging.getLogger(__name__)

PREFIX_PLACEHOLDER = "@@BREWKIT_PREFIX@@"
CELLAR_PLACEHOLDER = "@@BREWKIT_CELLAR@@"

# Directories of a keg that are linked into the shared prefix.
LINKED_DIRS = ("bin", "sbin")


def bottle_filename(name: str, version: str, tag: str) -> str:
    return f"{name}-{version}.{tag}.bottle.tar.gz"


class Keg:
    """
    The install tree of one version of a formula, ``<cellar>/<name>/<version>``.

    :param dirs: The brewkit directories
    :type dirs: ``brewkit.common.WorkDirs``
    :param name: The formula name
    :type name: str
    :param version: The installed version
    :type version: str
    """

    def __init__(self, dirs: WorkDirs, name: str, version: str) -> None:
        self.dirs = dirs
        self.name = name
        self.version = version

    def __repr__(self) -> str:
        return f"Keg({os.fspath(self.path)!r})"

    @property
    def path(self) -> pathlib.Path:
        return self.dirs.cellar / self.name / self.version

    @property
    def opt_link(self) -> pathlib.Path:
        return self.dirs.opt / self.name

    def exists(self) -> bool:
        return self.path.is_dir()

    def _within(self, name: str) -> bool:
        prefix = f"{self.name}/{self.version}"
        return name == prefix or name.startswith(prefix + "/")

    def check_members(self, tar: tarfile.TarFile) -> None:
        """
        Make sure every member, and every link target, stays inside ``<name>/<version>``.

        :raises BottleError: If a member would land outside of this keg
        """
        for member in tar.getmembers():
            name = posixpath.normpath(member.name)
            if posixpath.isabs(member.name) or not (
                name == self.name or self._within(name)
            ):
                raise BottleError(
                    f"Bottle member {member.name} is outside of {self.name}/{self.version}"
                )
            if member.issym():
                if posixpath.isabs(member.linkname):
                    target = member.linkname
                else:
                    target = posixpath.normpath(
                        posixpath.join(posixpath.dirname(name), member.linkname)
                    )
            elif member.islnk():
                target = posixpath.normpath(member.linkname)
            else:
                continue
            if posixpath.isabs(target) or not self._within(target):
                raise BottleError(
                    f"Bottle member {member.name} links to {member.linkname} outside of the keg"
                )

    def pour(self, archive: PathLike, relocate: bool = True) -> pathlib.Path:
        """
        Extract a bottle into the cellar.

        Bottles hold ``<name>/<version>/...`` so they extract straight into
        the cellar.

        :raises BottleError: If the archive does not contain this keg
        """
        self.dirs.cellar.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(os.fspath(archive)) as tar:
                self.check_members(tar)
            extract_archive(self.dirs.cellar, archive)
        except (tarfile.TarError, OSError) as exc:
            raise BottleError(f"Unable to pour {archive}: {exc}")
        if not self.exists():
            raise BottleError(f"Bottle {archive} did not produce {self.path}")
        if relocate:
            self.relocate()
        log.info("Poured %s", self.path)
        return self.path

    def relocate(self) -> List[pathlib.Path]:
        """
        Replace the placeholders bottles are built with by this installation's paths.
        """
        changed = []
        replacements = {
            CELLAR_PLACEHOLDER: os.fspath(self.dirs.cellar),
            PREFIX_PLACEHOLDER: os.fspath(self.dirs.root),
        }
        for root, _dirs, files in os.walk(self.path):
            for f in files:
                path = pathlib.Path(root) / f
                if path.is_symlink():
                    continue
                try:
                    data = path.read_bytes()
                except OSError:
                    continue
                if b"\0" in data:
                    continue
                try:
                    text = data.decode("utf-8")
                except UnicodeDecodeError:
                    continue
                new_text = text
                for old, new in replacements.items():
                    new_text = new_text.replace(old, new)
                if new_text != text:
                    log.debug("Relocating %s", path)
                    mode = path.stat().st_mode
                    path.write_text(new_text, encoding="utf-8")
                    os.chmod(path, mode)
                    changed.append(path)
        return changed

    def optlink(self) -> None:
        """
        Point ``opt/<name>`` at this keg.
        """
        self.dirs.opt.mkdir(parents=True, exist_ok=True)
        link = self.opt_link
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(self.path)

    def link(self) -> List[pathlib.Path]:
        """
        Symlink the keg's executables into the shared ``bin`` directories.

        Existing links belonging to other versions of this formula are
        replaced; anything else is left alone.
        """
        linked = []
        for sub in LINKED_DIRS:
            src_dir = self.path / sub
            if not src_dir.is_dir():
                continue
            dest_dir = self.dirs.root / sub
            dest_dir.mkdir(parents=True, exist_ok=True)
            for src in sorted(src_dir.iterdir()):
                dest = dest_dir / src.name
                if dest.is_symlink():
                    target = pathlib.Path(os.readlink(dest))
                    if self.dirs.cellar / self.name not in target.parents:
                        log.warning("Not overwriting %s, it belongs to %s", dest, target)
                        continue
                    dest.unlink()
                elif dest.exists():
                    log.warning("Not overwriting %s", dest)
                    continue
                dest.symlink_to(src)
                linked.append(dest)
        return linked

    def bottle(self, tag: str, dest: PathLike) -> pathlib.Path:
        """
        Pack this keg into a bottle for ``tag``.

        Text files referring to this installation's paths get placeholders
        written into the archive so the bottle can be poured elsewhere.

        :raises BottleError: If the keg is not installed
        """
        if not self.exists():
            raise BottleError(f"{self.name} {self.version} is not installed")
        dest = pathlib.Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        archive = dest / bottle_filename(self.name, self.version, tag)
        log.info("Archive is %s", archive)
        with tarfile.open(archive, mode="w:gz") as tar:
            self._add_tree(tar)
        return archive

    def _add_tree(self, tar: tarfile.TarFile) -> None:
        cellar = os.fspath(self.dirs.cellar)
        root = os.fspath(self.dirs.root)
        for dirpath, dirnames, files in os.walk(self.path):
            dirnames.sort()
            relroot = pathlib.Path(dirpath).relative_to(self.dirs.cellar)
            tar.add(dirpath, arcname=str(relroot), recursive=False)
            for f in sorted(files):
                path = pathlib.Path(dirpath) / f
                arcname = str(relroot / f)
                data: Optional[bytes] = None
                if not path.is_symlink():
                    raw = path.read_bytes()
                    if b"\0" not in raw:
                        try:
                            text = raw.decode("utf-8")
                        except UnicodeDecodeError:
                            text = None
                        if text is not None and (cellar in text or root in text):
                            text = text.replace(cellar, CELLAR_PLACEHOLDER)
                            text = text.replace(root, PREFIX_PLACEHOLDER)
                            data = text.encode("utf-8")
                if data is None:
                    log.debug("Adding %s", arcname)
                    tar.add(path, arcname=arcname, recursive=False)
                    continue
                log.debug("Adding %s with placeholders", arcname)
                info = tar.gettarinfo(path, arcname=arcname)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))

    def remove(self) -> None:
        """
        Delete the keg tree. Used before pouring over a partial keg.
        """
        if self.exists():
            shutil.rmtree(self.path)
