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

import json
import os
import subprocess
from typing import Dict, List, Optional
from unittest import mock

from fdeboot.config import FirstbootConfig
from fdeboot.errors import SubprocessFailure
from fdeboot.models import SlotKind
from fdecore.context import Context

LSBLK_OUTPUT = {
    "blockdevices": [
        {
            "name": "/dev/vda",
            "type": "disk",
            "fstype": None,
            "parttype": None,
            "children": [
                {
                    "name": "/dev/vda1",
                    "type": "part",
                    "fstype": "vfat",
                    "parttype": "c12a7328-f81f-11d2-ba4b-00a0c93ec93b",
                },
                {
                    "name": "/dev/vda2",
                    "type": "part",
                    "fstype": "crypto_LUKS",
                    "parttype": "4f68bce3-e8cd-4db1-96e7-fbcaf984b709",
                },
            ],
        }
    ]
}

UUIDS = {
    "/dev/vda1": "5D6E-1F2A",
    "/dev/vda2": "8b6c4a52-6f1e-4b7e-9d2c-1b0e8f3a4c55",
    "/dev/mapper/cr_root": "c0ffee00-1111-2222-3333-444455556666",
}


class FakeCommandRunner:
    """Stands in for the privileged tools, tracking what they would have
    done to the disk."""

    def __init__(self, lsblk=None, uuids=None):
        if lsblk is None:
            lsblk = LSBLK_OUTPUT
        if uuids is None:
            uuids = UUIDS
        self.lsblk = lsblk
        self.uuids = dict(uuids)
        self.calls: List[List[str]] = []
        self.inputs: Dict[int, Optional[str]] = {}
        self.envs: Dict[int, Optional[dict]] = {}
        self.keyslots: Dict[int, SlotKind] = {0: SlotKind.KEY_FILE}
        self.secrets: Dict[int, str] = {}
        self.tokens: List[dict] = []
        self.mounted: List[str] = []
        self.ever_mounted: List[str] = []
        self.unmounted: List[str] = []
        self.is_open = False
        self.fail_on: List[List[str]] = []

    def _fail(self, cmd):
        for prefix in self.fail_on:
            if cmd[: len(prefix)] == prefix:
                raise SubprocessFailure(cmd, 1, "", "simulated failure")

    def _free_slot(self) -> int:
        return min(n for n in range(32) if n not in self.keyslots)

    def commands(self, name: str) -> List[List[str]]:
        return [c for c in self.calls if c[0] == name]

    async def probe(self, cmd):
        self.calls.append(list(cmd))
        self._fail(cmd)
        if cmd[0] == "lsblk":
            return json.dumps(self.lsblk)
        if cmd[0] == "blkid":
            return self.uuids.get(cmd[-1], "") + "\n"
        if cmd[:2] == ["cryptsetup", "luksDump"]:
            keyslots = {str(n): {"type": "luks2"} for n in self.keyslots}
            return json.dumps({"keyslots": keyslots, "tokens": {}})
        raise AssertionError(f"unexpected probe {cmd}")

    async def run(self, cmd, *, input=None, env=None, **opts):
        cmd = list(cmd)
        self.inputs[len(self.calls)] = input
        self.envs[len(self.calls)] = env
        self.calls.append(cmd)
        self._fail(cmd)
        if cmd[0] == "mount":
            target = cmd[-1]
            assert target not in self.mounted, target
            self.mounted.append(target)
            self.ever_mounted.append(target)
        elif cmd[0] == "umount":
            target = cmd[-1]
            assert target in self.mounted, target
            self.mounted.remove(target)
            self.unmounted.append(target)
        elif cmd[:2] == ["cryptsetup", "open"]:
            self.is_open = True
        elif cmd[:2] == ["cryptsetup", "close"]:
            assert not self.mounted, self.mounted
            self.is_open = False
        elif cmd[:2] == ["cryptsetup", "luksAddKey"]:
            slot = int(cmd[cmd.index("--new-key-slot") + 1])
            assert slot not in self.keyslots
            self.keyslots[slot] = SlotKind.PASSPHRASE
            self.secrets[slot] = input
        elif cmd[:2] == ["cryptsetup", "token"]:
            token = json.loads(input)
            self.tokens.append(token)
            for slot in token["keyslots"]:
                self.keyslots[int(slot)] = SlotKind.RECOVERY
        elif cmd[:2] == ["cryptsetup", "luksRemoveKey"]:
            for n, kind in list(self.keyslots.items()):
                if kind == SlotKind.KEY_FILE:
                    del self.keyslots[n]
        elif cmd[0] == "systemd-cryptenroll":
            self.keyslots[self._free_slot()] = SlotKind.TPM2
        elif cmd[0] == "chroot" and "openssl" in cmd:
            out = os.path.join(cmd[1], cmd[cmd.index("-out") + 1].lstrip("/"))
            with open(out, "w") as fp:
                fp.write("-----BEGIN KEY-----\n")
        return subprocess.CompletedProcess(cmd, 0, "", "")


class FakeInterface:
    def __init__(self, passphrases=()):
        self.passphrases = list(passphrases)
        self.prompts: List[str] = []
        self.warnings: List[str] = []
        self.shown = []

    async def ask_passphrase(self, prompt):
        self.prompts.append(prompt)
        if not self.passphrases:
            return ""
        return self.passphrases.pop(0)

    async def warn(self, message):
        self.warnings.append(message)

    async def show_recovery_key(self, key):
        self.shown.append(key)


class MockedApplication:
    project = "fde-firstboot"
    progress = None


def make_app(config=None, runner=None, ui=None):
    app = MockedApplication()
    if config is None:
        config = FirstbootConfig(device="/dev/vda")
    app.config = config
    app.opts = mock.Mock()
    app.opts.dry_run = False
    if runner is None:
        runner = FakeCommandRunner()
    app.command_runner = runner
    if ui is None:
        ui = FakeInterface()
    app.ui = ui
    app.report_start_event = mock.Mock()
    app.report_finish_event = mock.Mock()
    app.context = Context.new(app)
    return app
