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
import shutil
import tempfile
from unittest import IsolatedAsyncioTestCase


class FdeTestCase(IsolatedAsyncioTestCase):
    def tmp_dir(self, dir=None, cleanup=True):
        d = tempfile.mkdtemp(dir=dir)
        if cleanup:
            self.addCleanup(shutil.rmtree, d)
        return d

    def tmp_path(self, path, dir=None):
        # Return a full path to a temporary file that will be cleaned up.
        if dir is None:
            tmpd = self.tmp_dir()
        else:
            tmpd = dir
        return os.path.normpath(os.path.abspath(os.path.join(tmpd, path)))

    def assert_contents(self, path, expected_contents):
        with open(path, "r") as fp:
            actual_contents = fp.read()
        self.assertEqual(expected_contents, actual_contents)
