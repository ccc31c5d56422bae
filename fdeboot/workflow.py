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
from typing import Optional

from fdeboot.bootloader import BootProvisioner
from fdeboot.config import FirstbootConfig
from fdeboot.keyslots import KeySlots
from fdeboot.locator import PartitionLocator
from fdeboot.models import ProvisionContext, RecoveryKey
from fdeboot.mounter import Mounter
from fdeboot.progress import ProgressChannel, ProgressObserver, TextGaugeRenderer
from fdeboot.recovery_key import generate_recovery_key
from fdeboot.runner import get_command_runner
from fdeboot.ui import ConsoleInterface
from fdecore.context import Context, Status

log = logging.getLogger("fdeboot.workflow")


class ProvisionWorkflow:
    """Runs the first boot provisioning steps in order.

    The workflow owns the progress channel: it creates it when the run
    starts, feeds it from every step (start events of every context become
    status lines) and discards it once the observer has drained it.
    """

    project = "fde-firstboot"

    def __init__(
        self,
        opts,
        config: FirstbootConfig,
        *,
        ui=None,
        command_runner=None,
        renderer=None,
        randbytes=None,
    ):
        self.opts = opts
        self.config = config
        self.log_syslog_id = "fde-firstboot"
        if command_runner is None:
            command_runner = get_command_runner(self)
        self.command_runner = command_runner
        if ui is None:
            ui = ConsoleInterface()
        self.ui = ui
        self.renderer = renderer
        self.randbytes = randbytes
        self.context = Context.new(self)
        self.progress: Optional[ProgressChannel] = None

        self.locator = PartitionLocator(self)
        self.mounter = Mounter(self)
        self.bootloader = BootProvisioner(self)
        self.keyslots = KeySlots(self)

    def report_start_event(self, name, description, level):
        log.log(getattr(logging, level), "start: %s %s", name, description)
        if self.progress is not None and description and not self.progress.closed:
            self.progress.status(description)

    def report_finish_event(self, name, description, result, level):
        if result == Status.FAIL:
            log.error("failed: %s %s", name, description)
        else:
            log.log(getattr(logging, level), "finish: %s %s", name, result.name)

    def _percent(self, value: int) -> None:
        if self.progress is not None:
            self.progress.percent(value)

    def _generate_recovery_key(self) -> RecoveryKey:
        if self.randbytes is None:
            return generate_recovery_key()
        return generate_recovery_key(self.randbytes)

    async def provision(self) -> ProvisionContext:
        ctx = self.config.make_context()
        log.info(
            "provisioning %s, unlock mode %s", ctx.device, ctx.unlock_mode.value
        )
        self._percent(0)

        ctx = ctx.with_target(await self.locator.discover(ctx=ctx))
        self._percent(10)

        with self.context.child("recovery_key", "generating recovery key"):
            ctx = ctx.with_recovery_key(self._generate_recovery_key())
        self._percent(15)

        async with self.mounter.mounted(ctx=ctx):
            self._percent(40)
            await self.bootloader.provision(ctx=ctx)
            self._percent(75)
        self._percent(80)

        if not ctx.use_tpm:
            await self.keyslots.add_passphrase_slot(ctx=ctx)
        self._percent(85)

        await self.keyslots.add_recovery_slot(ctx=ctx)
        self._percent(95)

        if self.config.retire_key_file:
            await self.keyslots.retire_key_file(ctx=ctx)
        return ctx

    async def run(self) -> RecoveryKey:
        channel = ProgressChannel()
        renderer = self.renderer
        if renderer is None:
            renderer = TextGaugeRenderer()
        observer = ProgressObserver(channel, renderer)
        self.progress = channel
        observer_task = observer.start()
        try:
            ctx = await self.provision()
        except BaseException:
            channel.abort()
            raise
        else:
            channel.close()
        finally:
            await observer_task
            self.progress = None
        await self.ui.show_recovery_key(ctx.recovery_key)
        return ctx.recovery_key
