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

import asyncio
import json
import logging
import os
import subprocess
import uuid
from contextlib import suppress
from typing import Dict, List, Optional, Sequence, Set

from fdeboot.errors import SubprocessFailure
from fdecore.utils import arun_command, astart_command, log_process_streams

log = logging.getLogger("fdeboot.runner")


class LoggedCommandRunner:
    """Run privileged tools as transient units so that their output ends
    up in the journal under our syslog identifier."""

    def __init__(self, ident):
        self.ident = ident
        self.env_whitelist = [
            "PATH",
            "PYTHONPATH",
            "PYTHON",
        ]

    def _forge_systemd_cmd(
        self,
        cmd: Sequence[str],
        private_mounts: bool,
        pipe: bool,
        passenv: Sequence[str] = (),
    ) -> List[str]:
        """Return the supplied command prefixed with the systemd-run stuff."""
        prefix = [
            "systemd-run",
            "--wait",
            "--same-dir",
            "--quiet",
            "--property",
            f"SyslogIdentifier={self.ident}",
        ]
        if pipe:
            prefix.append("--pipe")
        if private_mounts:
            prefix.extend(("--property", "PrivateMounts=yes"))
        for key in self.env_whitelist:
            with suppress(KeyError):
                prefix.extend(("--setenv", f"{key}={os.environ[key]}"))
        # Without a value, systemd-run copies the variable from its own
        # environment, which keeps secrets off the command line.
        for key in passenv:
            prefix.extend(("--setenv", key))

        prefix.append("--")

        return prefix + list(cmd)

    async def start(
        self,
        cmd: Sequence[str],
        *,
        private_mounts: bool = False,
        input: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        environ = None
        passenv: List[str] = []
        if env:
            environ = os.environ.copy()
            environ.update(env)
            passenv = sorted(env)
        forged = self._forge_systemd_cmd(
            cmd, private_mounts, input is not None, passenv
        )
        stdin = subprocess.DEVNULL if input is None else subprocess.PIPE
        proc = await astart_command(forged, stdin=stdin, env=environ)
        proc.args = forged
        return proc

    async def wait(self, proc, input: Optional[str] = None):
        if input is not None:
            input = input.encode("utf-8")
        stdout, stderr = await proc.communicate(input)
        stdout = stdout.decode("utf-8", errors="replace") if stdout else ""
        stderr = stderr.decode("utf-8", errors="replace") if stderr else ""
        if proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode, proc.args, stdout, stderr
            )
        else:
            return subprocess.CompletedProcess(
                proc.args, proc.returncode, stdout, stderr
            )

    async def run(self, cmd: Sequence[str], *, input=None, **opts):
        proc = await self.start(cmd, input=input, **opts)
        try:
            return await self.wait(proc, input)
        except subprocess.CalledProcessError as cpe:
            log_process_streams(logging.ERROR, cpe, cmd[0])
            raise SubprocessFailure.from_called_process_error(cpe) from cpe

    async def probe(self, cmd: Sequence[str]) -> str:
        """Run a read-only command directly and return its output."""
        try:
            cp = await arun_command(cmd, check=True)
        except subprocess.CalledProcessError as cpe:
            log_process_streams(logging.ERROR, cpe, cmd[0])
            raise SubprocessFailure.from_called_process_error(cpe) from cpe
        return cp.stdout


class DryRunCommandRunner(LoggedCommandRunner):
    """Echo the commands instead of running them.

    lsblk still looks at the real device. Queries about state that only the
    echoed commands would have created (the opened mapping, new keyslots)
    are answered here instead.
    """

    def __init__(self, ident, delay):
        super().__init__(ident)
        self.delay = delay
        # slot 0 holds the temporary key file
        self.keyslots: Set[int] = {0}

    def _forge_systemd_cmd(
        self,
        cmd: Sequence[str],
        private_mounts: bool,
        pipe: bool,
        passenv: Sequence[str] = (),
    ) -> List[str]:
        # We would like to use systemd-run here but unfortunately it requires
        # root privileges.
        prefix = [
            "systemd-cat",
            "--level-prefix=false",
            f"--identifier={self.ident}",
            "--",
        ]
        return prefix + ["echo", "not running:"] + list(cmd)

    async def start(self, cmd, **opts):
        proc = await super().start(cmd, **opts)
        await asyncio.sleep(self.delay)
        return proc

    def _track_keyslots(self, cmd: Sequence[str]) -> None:
        if list(cmd[:2]) == ["cryptsetup", "luksAddKey"]:
            self.keyslots.add(int(cmd[cmd.index("--new-key-slot") + 1]))
        elif list(cmd[:2]) == ["cryptsetup", "luksRemoveKey"]:
            self.keyslots.discard(0)
        elif cmd[0] == "systemd-cryptenroll":
            self.keyslots.add(min(set(range(32)) - self.keyslots))

    async def run(self, cmd, *, input=None, **opts):
        # nothing reads stdin in dry-run mode
        cp = await super().run(cmd, **opts)
        self._track_keyslots(cmd)
        return cp

    async def probe(self, cmd: Sequence[str]) -> str:
        if cmd[0] == "blkid":
            log.debug("dry run, making up a UUID for %s", cmd[-1])
            return str(uuid.uuid5(uuid.NAMESPACE_URL, cmd[-1])) + "\n"
        if list(cmd[:2]) == ["cryptsetup", "luksDump"]:
            keyslots = {str(n): {"type": "luks2"} for n in sorted(self.keyslots)}
            return json.dumps({"keyslots": keyslots, "tokens": {}})
        return await super().probe(cmd)


def get_command_runner(app):
    if app.opts.dry_run:
        return DryRunCommandRunner(app.log_syslog_id, 0.1)
    else:
        return LoggedCommandRunner(app.log_syslog_id)
