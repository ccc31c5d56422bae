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

import contextlib
import logging
import os
from typing import Optional

from fdeboot.errors import ProvisionError
from fdeboot.fstab import FstabEntry, set_entry_spec
from fdeboot.models import ProvisionContext
from fdecore.context import with_context
from fdecore.file_util import write_file

log = logging.getLogger("fdeboot.bootloader")

PREDICTIONS_SERVICE = "sdbootutil-update-predictions.service"
PREDICTIONS_UNIT = """\
[Unit]
Description=Update TPM2 PCR predictions after the first boot
After=local-fs.target

[Service]
Type=oneshot
ExecStart=/usr/bin/sdbootutil update-predictions
ExecStartPost=/usr/bin/rm -f /etc/systemd/system/{name} \
/etc/systemd/system/default.target.wants/{name}

[Install]
WantedBy=default.target
"""
DRACUT_DROPIN = "etc/dracut.conf.d/99-fde-firstboot.conf"
# sdbootutil reads the secret to protect the boot entries with from here
INSTALL_SECRET_ENV = "PIN"


class BootProvisioner:
    """Writes the boot and unlock configuration into the mounted target and
    runs the boot manager installer in it."""

    def __init__(self, app):
        self.app = app
        self.context = app.context

    @property
    def dracut_override(self) -> Optional[str]:
        return self.app.config.dracut_override

    async def chroot(self, ctx: ProvisionContext, *cmd: str, **kw):
        return await self.app.command_runner.run(
            ["chroot", ctx.mount_root, *cmd], private_mounts=False, **kw
        )

    async def sdbootutil(self, ctx: ProvisionContext, verb: str, **kw):
        return await self.chroot(
            ctx, "sdbootutil", "--esp-path", ctx.esp_mountpoint, verb, **kw
        )

    async def fs_uuid(self, device: str) -> str:
        out = await self.app.command_runner.probe(
            ["blkid", "--match-tag", "UUID", "--output", "value", device]
        )
        uuid = out.strip()
        if not uuid:
            raise ProvisionError(f"{device} has no filesystem UUID")
        return uuid

    @with_context(description="writing {ctx.esp_mountpoint} to fstab")
    async def write_fstab(self, *, context, ctx: ProvisionContext):
        uuid = await self.fs_uuid(ctx.target.esp_partition)
        path = ctx.tpath("etc/fstab")
        os.makedirs(ctx.tpath("etc"), exist_ok=True)
        try:
            set_entry_spec(
                path,
                ctx.esp_mountpoint,
                f"UUID={uuid}",
                default=FstabEntry(
                    spec="", file=ctx.esp_mountpoint, vfstype="vfat", passno="2"
                ),
            )
        except ValueError as ve:
            raise ProvisionError(f"cannot update {path}: {ve}") from ve

    @with_context(description="adding root device to kernel command line")
    async def write_kernel_cmdline(self, *, context, ctx: ProvisionContext):
        path = ctx.tpath("etc/kernel/cmdline")
        token = "root=UUID={}".format(await self.fs_uuid(ctx.mapped_device))
        try:
            with open(path) as fp:
                cmdline = fp.read().strip()
        except FileNotFoundError:
            cmdline = ""
        if token in cmdline.split():
            log.debug("%s already in %s", token, path)
            return
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_file(path, f"{cmdline} {token}".lstrip() + "\n", copy_mode=True)

    @with_context(description="writing crypttab")
    async def write_crypttab(self, *, context, ctx: ProvisionContext):
        path = ctx.tpath("etc/crypttab")
        uuid = await self.fs_uuid(ctx.target.crypt_partition)
        options = "x-initrd.attach"
        if ctx.use_tpm:
            options += ",tpm2-device=auto"
        line = f"{ctx.mapped_name} UUID={uuid} none {options}\n"
        try:
            with open(path) as fp:
                lines = fp.readlines()
        except FileNotFoundError:
            lines = []
        lines = [x for x in lines if x.split()[:1] != [ctx.mapped_name]]
        lines.append(line)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_file(path, "".join(lines), mode=0o600)

    @with_context(description="creating PCR signing key")
    async def create_signing_key(self, *, context, ctx: ProvisionContext):
        policy = ctx.policy
        private = ctx.tpath(policy.private_key)
        if not os.path.exists(private):
            os.makedirs(os.path.dirname(private), exist_ok=True)
            await self.chroot(
                ctx, "openssl", "genrsa", "-out", "/" + policy.private_key, "4096"
            )
            if os.path.exists(private):
                os.chmod(private, 0o600)
        else:
            log.debug("reusing existing PCR signing key")
        if not os.path.exists(ctx.tpath(policy.public_key)):
            await self.chroot(
                ctx,
                "openssl",
                "rsa",
                "-in",
                "/" + policy.private_key,
                "-pubout",
                "-out",
                "/" + policy.public_key,
            )

    @with_context(description="writing measurement policy")
    async def write_policy(self, *, context, ctx: ProvisionContext):
        path = ctx.tpath(ctx.policy.config)
        setting = f"FDE_SEAL_PCR_LIST={ctx.policy.pcr_list()}\n"
        try:
            with open(path) as fp:
                lines = fp.readlines()
        except FileNotFoundError:
            lines = []
        lines = [x for x in lines if not x.startswith("FDE_SEAL_PCR_LIST=")]
        lines.append(setting)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_file(path, "".join(lines))

    @contextlib.contextmanager
    def _dracut_override(self, ctx: ProvisionContext):
        if not self.dracut_override:
            yield
            return
        path = ctx.tpath(DRACUT_DROPIN)
        previous = None
        if os.path.exists(path):
            with open(path) as fp:
                previous = fp.read()
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_file(path, self.dracut_override + "\n")
        try:
            yield
        finally:
            if previous is None:
                os.unlink(path)
            else:
                write_file(path, previous)

    @with_context(description="installing boot loader")
    async def install_bootloader(self, *, context, ctx: ProvisionContext):
        env = {INSTALL_SECRET_ENV: str(ctx.recovery_key)}
        with self._dracut_override(ctx):
            await self.sdbootutil(ctx, "install", env=env)
            await self.sdbootutil(ctx, "add-all-kernels", env=env)

    @with_context(description="scheduling PCR prediction update")
    async def install_predictions_service(self, *, context, ctx: ProvisionContext):
        unit_dir = ctx.tpath("etc/systemd/system")
        wants = os.path.join(unit_dir, "default.target.wants")
        os.makedirs(wants, exist_ok=True)
        write_file(
            os.path.join(unit_dir, PREDICTIONS_SERVICE),
            PREDICTIONS_UNIT.format(name=PREDICTIONS_SERVICE),
        )
        link = os.path.join(wants, PREDICTIONS_SERVICE)
        if not os.path.lexists(link):
            os.symlink(f"/etc/systemd/system/{PREDICTIONS_SERVICE}", link)

    @with_context(description="updating PCR predictions")
    async def update_predictions(self, *, context, ctx: ProvisionContext):
        await self.sdbootutil(ctx, "update-predictions")

    @with_context(description="enrolling TPM2")
    async def enroll_tpm2(self, *, context, ctx: ProvisionContext):
        await self.app.command_runner.run(
            [
                "systemd-cryptenroll",
                f"--unlock-key-file={ctx.key_file}",
                "--tpm2-device=auto",
                f"--tpm2-public-key={ctx.tpath(ctx.policy.public_key)}",
                f"--tpm2-public-key-pcrs={ctx.policy.pcr_spec()}",
                ctx.target.crypt_partition,
            ]
        )

    @with_context(description="configuring boot", childlevel="DEBUG")
    async def provision(self, *, context, ctx: ProvisionContext):
        await self.write_fstab(context=context, ctx=ctx)
        await self.write_kernel_cmdline(context=context, ctx=ctx)
        await self.write_crypttab(context=context, ctx=ctx)
        if ctx.use_tpm:
            await self.create_signing_key(context=context, ctx=ctx)
            # sdbootutil install refuses to set up TPM2 support without it
            await self.write_policy(context=context, ctx=ctx)
        await self.install_bootloader(context=context, ctx=ctx)
        if ctx.use_tpm:
            await self.install_predictions_service(context=context, ctx=ctx)
            await self.update_predictions(context=context, ctx=ctx)
            await self.enroll_tpm2(context=context, ctx=ctx)
