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

import getpass
import logging
import sys

from fdeboot.models import RecoveryKey
from fdecore.async_helpers import run_in_thread

log = logging.getLogger("fdeboot.ui")


class ConsoleInterface:
    """Talks to the operator on the console."""

    def __init__(self, stream=None, getpass=getpass.getpass):
        if stream is None:
            stream = sys.stdout
        self.stream = stream
        self._getpass = getpass

    def _print(self, text: str) -> None:
        self.stream.write(text + "\n")
        self.stream.flush()

    async def ask_passphrase(self, prompt: str) -> str:
        """Return what the operator typed, or "" if they gave up."""
        # start on a fresh line, a gauge may be drawn on the terminal
        try:
            return await run_in_thread(self._getpass, f"\n{prompt}: ")
        except EOFError:
            return ""

    async def warn(self, message: str) -> None:
        self._print(f"\n{message}\n")

    async def show_recovery_key(self, key: RecoveryKey) -> None:
        rule = "=" * 71
        self._print(
            "\n".join(
                [
                    "",
                    rule,
                    "The disk can be unlocked with this recovery key if the",
                    "normal way of unlocking it stops working. Write it down",
                    "and keep it somewhere safe:",
                    "",
                    f"    {key}",
                    "",
                    rule,
                    "",
                ]
            )
        )
