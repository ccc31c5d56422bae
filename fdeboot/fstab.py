# Copyright 2026 Canonical, Ltd.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import logging
import os
import re
from typing import List, Optional

import attr

from fdecore.file_util import write_file

log = logging.getLogger("fdeboot.fstab")

# overlayfs options naming directories
OVERLAY_DIR_OPTIONS = ("lowerdir", "upperdir", "workdir")
# where the initrd mounts the root filesystem
INITRD_ROOT = "/sysroot"


def _unescape(field: str) -> str:
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), field)


def _escape(field: str) -> str:
    return "".join(f"\\{ord(c):03o}" if c in " \t\n\\" else c for c in field)


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class FstabEntry:
    spec: str
    file: str
    vfstype: str
    mntops: str = "defaults"
    freq: str = "0"
    passno: str = "0"

    @classmethod
    def parse(cls, line: str) -> Optional["FstabEntry"]:
        line = line.strip()
        if not line or line.startswith("#"):
            return None
        fields = line.split()
        if len(fields) < 3:
            raise ValueError(f"malformed fstab line: {line!r}")
        fields = [_unescape(f) for f in fields[:6]]
        entry = cls(spec=fields[0], file=fields[1], vfstype=fields[2])
        names = ("mntops", "freq", "passno")
        return attr.evolve(entry, **dict(zip(names, fields[3:])))

    def options(self) -> List[str]:
        return [o for o in self.mntops.split(",") if o]

    def option(self, key: str) -> Optional[str]:
        for opt in self.options():
            k, sep, v = opt.partition("=")
            if k == key and sep:
                return v
        return None

    def to_line(self) -> str:
        return " ".join(
            _escape(f)
            for f in (
                self.spec,
                self.file,
                self.vfstype,
                self.mntops,
                self.freq,
                self.passno,
            )
        )


def read_fstab(path: str) -> List[FstabEntry]:
    try:
        with open(path) as fp:
            lines = fp.readlines()
    except FileNotFoundError:
        log.warning("%s does not exist", path)
        return []
    return [e for e in map(FstabEntry.parse, lines) if e is not None]


def find_entry(entries: List[FstabEntry], mountpoint: str) -> Optional[FstabEntry]:
    mountpoint = os.path.normpath(mountpoint)
    for entry in entries:
        if os.path.normpath(entry.file) == mountpoint:
            return entry
    return None


def _retarget(path: str, root: str) -> str:
    if path == INITRD_ROOT or path.startswith(INITRD_ROOT + "/"):
        path = path[len(INITRD_ROOT) :]
    return os.path.join(root, path.lstrip("/"))


def overlay_mount_options(entry: FstabEntry, root: str) -> str:
    """Return the mount options for the overlay described by entry, with its
    directories moved under root.

    Options that only mean something to systemd or the initrd (x-*) are
    dropped.
    """
    if entry.vfstype != "overlay":
        raise ValueError(f"{entry.file} is not an overlay mount")
    opts = []
    for opt in entry.options():
        key, sep, value = opt.partition("=")
        if key.startswith("x-") or key == "defaults":
            continue
        if key in OVERLAY_DIR_OPTIONS and sep:
            value = ":".join(_retarget(p, root) for p in value.split(":"))
            opt = f"{key}={value}"
        opts.append(opt)
    for required in ("lowerdir", "upperdir", "workdir"):
        if entry.option(required) is None:
            raise ValueError(f"overlay for {entry.file} has no {required}")
    return ",".join(opts)


def set_entry_spec(path: str, mountpoint: str, spec: str, default: FstabEntry):
    """Point the fstab line for mountpoint at spec, keeping everything else
    in the file as it is. default is appended if there is no such line."""
    try:
        with open(path) as fp:
            lines = fp.readlines()
    except FileNotFoundError:
        lines = []
    found = False
    out = []
    for line in lines:
        entry = FstabEntry.parse(line)
        if entry is not None and os.path.normpath(entry.file) == os.path.normpath(
            mountpoint
        ):
            line = attr.evolve(entry, spec=spec).to_line() + "\n"
            found = True
        out.append(line)
    if not found:
        if out and not out[-1].endswith("\n"):
            out[-1] += "\n"
        out.append(attr.evolve(default, spec=spec, file=mountpoint).to_line() + "\n")
    write_file(path, "".join(out), copy_mode=True)
