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

import io
import json
import os
from unittest import mock

from fdeboot.bootloader import DRACUT_DROPIN
from fdeboot.config import FirstbootConfig
from fdeboot.errors import ConfigError, PassphraseCancelled, SubprocessFailure
from fdeboot.models import SlotKind, UnlockMode
from fdeboot.progress import LineRenderer
from fdeboot.recovery_key import encode_recovery_key
from fdeboot.runner import DryRunCommandRunner
from fdeboot.tests.mocks import LSBLK_OUTPUT, FakeCommandRunner, FakeInterface
from fdeboot.workflow import ProvisionWorkflow
from fdecore.tests import FdeTestCase


def fixed_bytes(n):
    return bytes(range(n))


class WorkflowTestCase(FdeTestCase):
    unlock_mode = UnlockMode.DEFAULT
    passphrases = ()

    def setUp(self):
        self.root = self.tmp_dir()
        os.makedirs(self.p("etc/kernel"))
        with open(self.p("etc/fstab"), "w") as fp:
            fp.write("UUID=c0ffee00 / btrfs ro 0 0\n")
        self.key_file = self.tmp_path("cr_key")
        with open(self.key_file, "w") as fp:
            fp.write("temporary")
        self.config = FirstbootConfig(
            device="/dev/vda",
            unlock_mode=self.unlock_mode,
            key_file=self.key_file,
            mount_root=self.root,
        )
        self.runner = FakeCommandRunner()
        self.ui = FakeInterface(self.passphrases)
        self.output = io.StringIO()
        self.workflow = ProvisionWorkflow(
            mock.Mock(dry_run=False),
            self.config,
            ui=self.ui,
            command_runner=self.runner,
            renderer=LineRenderer(self.output),
            randbytes=fixed_bytes,
        )

    def p(self, *path):
        return os.path.join(self.root, *path)

    def read(self, path):
        with open(self.p(path)) as fp:
            return fp.read()

    def percentages(self):
        return [
            int(line)
            for line in self.output.getvalue().splitlines()
            if not line.startswith("#")
        ]

    def assert_progress_complete(self):
        values = self.percentages()
        self.assertEqual(values, sorted(values))
        self.assertEqual(0, values[0])
        self.assertEqual([100], [v for v in values if v == 100])
        self.assertEqual(100, values[-1])

    def assert_torn_down(self):
        self.assertEqual([], self.runner.mounted)
        self.assertFalse(self.runner.is_open)
        self.assertEqual(
            sorted(self.runner.ever_mounted), sorted(self.runner.unmounted)
        )


class TestTpmUnlock(WorkflowTestCase):
    async def test_provision(self):
        key = await self.workflow.run()

        self.assertEqual(encode_recovery_key(fixed_bytes(32)), key)
        self.assertEqual([key], self.ui.shown)
        policy = self.read("etc/sysconfig/fde-tools")
        self.assertIn("FDE_SEAL_PCR_LIST=4,5,7,9\n", policy)
        crypttab = self.read("etc/crypttab")
        self.assertIn("tpm2-device=auto", crypttab)
        self.assertTrue(crypttab.startswith("cr_root UUID=8b6c4a52-"))
        self.assertEqual(
            {1: SlotKind.TPM2, 2: SlotKind.RECOVERY}, self.runner.keyslots
        )
        self.assertEqual(str(key), self.runner.secrets[2])
        self.assertEqual([], self.ui.prompts)
        self.assertFalse(os.path.exists(self.key_file))
        self.assertFalse(os.path.exists(self.p(DRACUT_DROPIN)))
        self.assert_torn_down()
        self.assert_progress_complete()

    async def test_status_lines(self):
        await self.workflow.run()
        lines = self.output.getvalue().splitlines()
        self.assertIn("# locating partitions on /dev/vda", lines)
        self.assertIn("# enrolling TPM2", lines)
        self.assertIn("# adding recovery key", lines)
        self.assertIsNone(self.workflow.progress)

    async def test_boot_configured_while_mounted(self):
        await self.workflow.run()
        calls = self.runner.calls
        install = calls.index(
            ["chroot", self.root, "sdbootutil", "--esp-path", "/boot/efi", "install"]
        )
        first_umount = min(i for i, c in enumerate(calls) if c[0] == "umount")
        self.assertLess(install, first_umount)
        self.assertEqual(
            {"PIN": str(encode_recovery_key(fixed_bytes(32)))},
            self.runner.envs[install],
        )

    async def test_failure_tears_down(self):
        self.runner.fail_on = [["systemd-cryptenroll"]]
        with self.assertRaises(SubprocessFailure):
            await self.workflow.run()
        self.assert_torn_down()
        self.assertEqual([], self.runner.tokens)
        self.assertEqual({0: SlotKind.KEY_FILE}, self.runner.keyslots)
        self.assertNotIn(100, self.percentages())
        self.assertEqual([], self.ui.shown)
        self.assertTrue(os.path.exists(self.key_file))
        self.assertIsNone(self.workflow.progress)

    async def test_no_device(self):
        self.config.device = None
        with self.assertRaises(ConfigError):
            await self.workflow.run()
        self.assertEqual([], self.runner.calls)
        self.assertEqual("", self.output.getvalue())


class TestPassphraseUnlock(WorkflowTestCase):
    unlock_mode = UnlockMode.FALLBACK
    passphrases = ["correct-secret", "correct-secret"]

    async def test_provision(self):
        key = await self.workflow.run()

        self.assertEqual(
            {1: SlotKind.PASSPHRASE, 2: SlotKind.RECOVERY}, self.runner.keyslots
        )
        self.assertEqual("correct-secret", self.runner.secrets[1])
        self.assertEqual(str(key), self.runner.secrets[2])
        self.assertFalse(os.path.exists(self.p("etc/sysconfig/fde-tools")))
        self.assertNotIn("tpm2-device", self.read("etc/crypttab"))
        self.assertEqual([], self.runner.commands("systemd-cryptenroll"))
        self.assertEqual([key], self.ui.shown)
        self.assert_torn_down()
        self.assert_progress_complete()

    async def test_keep_key_file(self):
        self.config.retire_key_file = False
        await self.workflow.run()
        self.assertIn(0, self.runner.keyslots)
        self.assertTrue(os.path.exists(self.key_file))


class TestPassphraseMismatch(WorkflowTestCase):
    unlock_mode = UnlockMode.FALLBACK
    passphrases = [
        "correct-secret",
        "correct-secrte",
        "correct-secret",
        "correct-secret",
    ]

    async def test_provision(self):
        await self.workflow.run()
        adds = [c for c in self.runner.calls if c[:2] == ["cryptsetup", "luksAddKey"]]
        self.assertEqual(2, len(adds))
        self.assertEqual("correct-secret", self.runner.secrets[1])
        self.assertNotIn("correct-secrte", self.runner.secrets.values())
        self.assertEqual(1, len(self.ui.warnings))
        self.assertEqual(4, len(self.ui.prompts))
        self.assert_progress_complete()


class TestPassphraseCancelled(WorkflowTestCase):
    unlock_mode = UnlockMode.FALLBACK
    passphrases = []

    async def test_no_recovery_slot(self):
        with self.assertRaises(PassphraseCancelled):
            await self.workflow.run()
        self.assertEqual([], self.runner.tokens)
        self.assertNotIn(100, self.percentages())
        self.assert_torn_down()


class EchoCommandRunner(DryRunCommandRunner):
    # echo without systemd-cat, there is no journal to write to here
    def _forge_systemd_cmd(self, cmd, private_mounts, pipe, passenv=()):
        return ["echo", "not running:"] + list(cmd)

    async def probe(self, cmd):
        if cmd[0] == "lsblk":
            return json.dumps(LSBLK_OUTPUT)
        return await super().probe(cmd)


class TestDryRun(WorkflowTestCase):
    def setUp(self):
        super().setUp()
        self.runner = EchoCommandRunner("fde-firstboot", 0)
        self.workflow = ProvisionWorkflow(
            mock.Mock(dry_run=True),
            self.config,
            ui=self.ui,
            command_runner=self.runner,
            renderer=LineRenderer(self.output),
            randbytes=fixed_bytes,
        )

    async def test_runs_to_completion(self):
        key = await self.workflow.run()

        self.assertEqual([key], self.ui.shown)
        self.assert_progress_complete()
        self.assertTrue(os.path.exists(self.key_file))
        # made up filesystem UUIDs end up in the scratch tree
        self.assertIn("UUID=", self.read("etc/fstab"))
        self.assertIn("root=UUID=", self.read("etc/kernel/cmdline"))
        self.assertEqual({1, 2}, self.runner.keyslots)
