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

import os
import stat
import tempfile

_DEF_PERMS = 0o644


def _fsync_dir(dirname):
    fd = os.open(dirname, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_file(filename, content, mode=None, omode="w", copy_mode=False):
    """Atomically replace filename with content.

    The data is written to a temporary file in the same directory, synced
    and renamed over filename, so a crash leaves either the old or the new
    file. mode defaults to 0644; with copy_mode the mode of an existing
    filename is kept instead.
    """
    if mode is None:
        mode = _DEF_PERMS
    if copy_mode:
        try:
            mode = stat.S_IMODE(os.stat(filename).st_mode)
        except FileNotFoundError:
            pass

    dirname = os.path.dirname(filename) or "."
    tf = tempfile.NamedTemporaryFile(
        dir=dirname, prefix=".tmp-", delete=False, mode=omode
    )
    try:
        with tf:
            tf.write(content)
            tf.flush()
            os.fsync(tf.fileno())
        os.chmod(tf.name, mode)
        os.rename(tf.name, filename)
    except OSError:
        os.unlink(tf.name)
        raise
    _fsync_dir(dirname)
