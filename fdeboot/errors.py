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

import subprocess
from typing import List, Optional


class ProvisionError(Exception):
    """Base class for errors that abort the first boot provisioning."""


class ConfigError(ProvisionError):
    pass


class PartitionNotFound(ProvisionError):
    def __init__(self, device: str, what: str) -> None:
        super().__init__(f"no {what} partition found on {device}")
        self.device = device
        self.what = what


class AmbiguousPartitionMatch(ProvisionError):
    def __init__(self, device: str, what: str, matches: List[str]) -> None:
        super().__init__(
            f"{len(matches)} {what} partitions found on {device}: "
            + ", ".join(matches)
        )
        self.device = device
        self.what = what
        self.matches = matches


class MountFailure(ProvisionError):
    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"{target}: {reason}")
        self.target = target
        self.reason = reason


class SubprocessFailure(ProvisionError):
    def __init__(
        self,
        cmd: List[str],
        returncode: int,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(f"{cmd[0]} exited with code {returncode}")
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @classmethod
    def from_called_process_error(cls, cpe: subprocess.CalledProcessError):
        cmd = cpe.cmd
        if isinstance(cmd, str):
            cmd = [cmd]
        return cls(list(cmd), cpe.returncode, cpe.stdout, cpe.stderr)


class CredentialMismatch(ProvisionError):
    """The passphrase and its confirmation differ. The caller re-prompts."""


class PassphraseCancelled(ProvisionError):
    pass


class RandomSourceFailure(ProvisionError):
    pass
