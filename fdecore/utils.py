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
import logging
import os
import shlex
import subprocess
from typing import Mapping, Optional, Sequence

log = logging.getLogger("fdecore.utils")

# Enough of an sdbootutil or dracut failure to see what went wrong.
STREAM_LOG_LINES = 200


def _clean_env(env: Optional[Mapping[str, str]], *, locale=True):
    """Copy env (or our environment), forcing the C locale unless asked
    not to so that tool output can be parsed."""
    env = dict(os.environ if env is None else env)
    if locale:
        env["LC_ALL"] = "C"
    return env


async def astart_command(
    cmd: Sequence[str],
    *,
    stdout=subprocess.PIPE,
    stderr=subprocess.PIPE,
    stdin=subprocess.DEVNULL,
    env=None,
    clean_locale=True,
    **kw,
) -> asyncio.subprocess.Process:
    log.debug("starting %s", shlex.join(cmd))
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdout=stdout,
        stderr=stderr,
        stdin=stdin,
        env=_clean_env(env, locale=clean_locale),
        **kw,
    )


async def arun_command(
    cmd: Sequence[str],
    *,
    input: Optional[str] = None,
    encoding="utf-8",
    check=False,
    **kw,
) -> subprocess.CompletedProcess:
    """Run cmd to completion and return its decoded output.

    input, if given, is fed to stdin and is never logged.
    """
    if input is not None:
        kw["stdin"] = subprocess.PIPE
    proc = await astart_command(cmd, **kw)
    stdout, stderr = await proc.communicate(
        None if input is None else input.encode(encoding)
    )
    if stdout is not None:
        stdout = stdout.decode(encoding, errors="replace")
    if stderr is not None:
        stderr = stderr.decode(encoding, errors="replace")
    log.debug("%s exited with code %s", cmd[0], proc.returncode)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, stdout, stderr)
    return subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)


def _log_stream(level: int, stream: Optional[str], name: str):
    if stream is None:
        log.log(level, "<%s is None>", name)
        return
    lines = stream.splitlines()
    if not lines:
        log.log(level, "<%s is empty>", name)
        return
    log.log(level, "%s: ------------------------------------------", name)
    if len(lines) > STREAM_LOG_LINES:
        log.log(level, "<%d lines omitted>", len(lines) - STREAM_LOG_LINES)
        lines = lines[-STREAM_LOG_LINES:]
    for line in lines:
        log.log(level, "%s", line)


def log_process_streams(
    level: int, cpe: subprocess.CalledProcessError, command_msg: str
):
    log.log(level, "%s exited with result: %s", command_msg, cpe.returncode)
    _log_stream(level, cpe.stdout, "stdout")
    _log_stream(level, cpe.stderr, "stderr")
    log.log(level, "--------------------------------------------------")
