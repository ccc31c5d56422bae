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
import logging
import os
from typing import Dict, Set

from fdeboot.errors import (
    CredentialMismatch,
    PassphraseCancelled,
    ProvisionError,
)
from fdeboot.models import ProvisionContext, SlotKind
from fdecore.context import with_context

log = logging.getLogger("fdeboot.keyslots")

LUKS2_KEYSLOTS = 32
RECOVERY_TOKEN_TYPE = "systemd-recovery"


class KeySlots:
    """Adds the permanent unlock methods to the LUKS volume."""

    def __init__(self, app):
        self.app = app
        self.context = app.context
        self.slots: Dict[SlotKind, str] = {}

    @property
    def runner(self):
        return self.app.command_runner

    async def used_keyslots(self, partition: str) -> Set[int]:
        out = await self.runner.probe(
            ["cryptsetup", "luksDump", "--dump-json-metadata", partition]
        )
        return {int(slot) for slot in json.loads(out).get("keyslots", {})}

    async def _add_key(self, ctx: ProvisionContext, secret: str) -> str:
        partition = ctx.target.crypt_partition
        used = await self.used_keyslots(partition)
        free = [n for n in range(LUKS2_KEYSLOTS) if n not in used]
        if not free:
            raise ProvisionError(f"no free keyslot on {partition}")
        slot = str(free[0])
        # the new key is read from stdin, verbatim
        await self.runner.run(
            [
                "cryptsetup",
                "luksAddKey",
                "--batch-mode",
                "--key-file",
                ctx.key_file,
                "--new-key-slot",
                slot,
                partition,
                "-",
            ],
            input=secret,
        )
        return slot

    async def _read_passphrase(self) -> str:
        first = await self.app.ui.ask_passphrase("Enter disk passphrase")
        if not first:
            raise PassphraseCancelled("no passphrase entered")
        second = await self.app.ui.ask_passphrase("Repeat disk passphrase")
        if first != second:
            raise CredentialMismatch("passphrases do not match")
        return first

    @with_context(description="adding passphrase")
    async def add_passphrase_slot(self, *, context, ctx: ProvisionContext) -> str:
        if ctx.use_tpm:
            raise ProvisionError("passphrase slots are only added in fallback mode")
        while True:
            try:
                passphrase = await self._read_passphrase()
            except CredentialMismatch:
                log.warning("passphrase confirmation did not match")
                await self.app.ui.warn("The passphrases do not match. Try again.")
            else:
                break
        slot = await self._add_key(ctx, passphrase)
        self.slots[SlotKind.PASSPHRASE] = slot
        return slot

    @with_context(description="adding recovery key")
    async def add_recovery_slot(self, *, context, ctx: ProvisionContext) -> str:
        if ctx.recovery_key is None:
            raise ProvisionError("no recovery key generated")
        slot = await self._add_key(ctx, str(ctx.recovery_key))
        token = {"type": RECOVERY_TOKEN_TYPE, "keyslots": [slot]}
        await self.runner.run(
            ["cryptsetup", "token", "import", ctx.target.crypt_partition],
            input=json.dumps(token),
        )
        self.slots[SlotKind.RECOVERY] = slot
        return slot

    @with_context(description="removing temporary key file")
    async def retire_key_file(self, *, context, ctx: ProvisionContext):
        if SlotKind.RECOVERY not in self.slots:
            raise ProvisionError("refusing to remove key file before recovery key")
        await self.runner.run(
            [
                "cryptsetup",
                "luksRemoveKey",
                "--batch-mode",
                ctx.target.crypt_partition,
                ctx.key_file,
            ]
        )
        if not self.app.opts.dry_run:
            os.unlink(ctx.key_file)
