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
from typing import Dict

from fdecore.file_util import _DEF_PERMS

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s:%(lineno)d %(message)s"


def _replace_symlink(target: str, link: str) -> None:
    # symlink() refuses to overwrite, rename() replaces atomically.
    tmplink = link + ".link"
    os.symlink(target, tmplink)
    os.rename(tmplink, link)


def _file_handler(path: str, level: int) -> logging.Handler:
    handler = logging.FileHandler(path)
    os.chmod(path, _DEF_PERMS)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logger(dir, base="fde-firstboot") -> Dict[str, str]:
    """Log to <base>-info.log and <base>-debug.log in dir.

    Each run writes files suffixed with its pid; the unsuffixed names are
    symlinks to the files of the latest run. Returns the paths written,
    keyed by level name.
    """
    os.makedirs(dir, exist_ok=True)
    if os.getuid() == 0:
        # the debug log records device layout and tool output
        os.chmod(dir, 0o750)

    root = logging.getLogger("")
    root.setLevel(logging.DEBUG)

    paths = {}
    for level in logging.INFO, logging.DEBUG:
        name = logging.getLevelName(level).lower()
        link = os.path.join(dir, f"{base}-{name}.log")
        path = f"{link}.{os.getpid()}"
        root.addHandler(_file_handler(path, level))
        _replace_symlink(os.path.basename(path), link)
        paths[name] = path
    return paths
