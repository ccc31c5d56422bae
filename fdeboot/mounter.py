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
from typing import List, Optional, Sequence

from fdeboot.errors import MountFailure, SubprocessFailure
from fdeboot.fstab import find_entry, overlay_mount_options, read_fstab
from fdeboot.models import MountEntry, MountPlan, ProvisionContext
from fdecore.context import with_context

log = logging.getLogger("fdeboot.mounter")

SNAPSHOTS_SUBVOL = "@/.snapshots"
VAR_SUBVOL = "@/var"


def _is_under(path: str, parent: str) -> bool:
    return path != parent and path.startswith(parent.rstrip("/") + "/")


class Mounter:
    """Opens the LUKS volume and builds the tree a chroot into the target
    system needs, and takes it all down again."""

    def __init__(self, app):
        self.app = app
        self.context = app.context

    def _close_order(
        self, plan: MountPlan, target: str, depends_on: Sequence[str] = ()
    ) -> int:
        # One more than anything this mount sits on top of or uses, so
        # that it is unmounted before all of them.
        ranks = [
            e.close_order + 1
            for e in plan.entries
            if _is_under(target, e.target) or e.target in depends_on
        ]
        return max(ranks, default=0)

    @with_context(description="mounting {target}")
    async def mount(
        self,
        *,
        context,
        plan: MountPlan,
        source: str,
        target: str,
        fstype: Optional[str] = None,
        options: Optional[str] = None,
        recursive: bool = False,
        depends_on: Sequence[str] = (),
    ) -> MountEntry:
        entry = MountEntry(
            source=source,
            target=target,
            fstype=fstype,
            options=options,
            close_order=self._close_order(plan, target, depends_on),
            recursive=recursive,
        )
        if target in plan.targets():
            raise MountFailure(target, "already mounted by this plan")
        os.makedirs(target, exist_ok=True)
        try:
            await self.app.command_runner.run(
                ["mount"] + entry.mount_args(), private_mounts=False
            )
        except SubprocessFailure as sf:
            raise MountFailure(target, str(sf)) from sf
        plan.entries.append(entry)
        return entry

    async def _mount_etc(self, context, plan: MountPlan, ctx: ProvisionContext):
        target = ctx.tpath("etc")
        try:
            entry = find_entry(read_fstab(ctx.tpath("etc/fstab")), "/etc")
        except ValueError as ve:
            raise MountFailure(target, str(ve)) from ve
        if entry is not None and entry.vfstype == "overlay":
            try:
                options = overlay_mount_options(entry, ctx.mount_root)
            except ValueError as ve:
                raise MountFailure(target, str(ve)) from ve
            # upperdir and workdir usually live on /var
            writable = [
                opt.partition("=")[2]
                for opt in options.split(",")
                if opt.startswith(("upperdir=", "workdir="))
            ]
            depends_on = [
                e.target
                for e in plan.entries
                if any(_is_under(d, e.target) for d in writable)
            ]
            log.debug("overlay for /etc depends on %s", depends_on)
            await self.mount(
                context=context,
                plan=plan,
                source="overlay",
                target=target,
                fstype="overlay",
                options=options,
                depends_on=depends_on,
            )
        else:
            log.debug("no overlay declared for /etc, bind mounting it")
            await self.mount(
                context=context,
                plan=plan,
                source=target,
                target=target,
                options="bind",
            )

    async def _open_plan(self, context, plan: MountPlan, ctx: ProvisionContext):
        root = ctx.mount_root
        device = plan.mapped_device

        async def mount(source, target, **kw):
            await self.mount(
                context=context, plan=plan, source=source, target=target, **kw
            )

        await mount(device, root)
        await mount("proc", ctx.tpath("proc"), fstype="proc")
        await mount("/sys", ctx.tpath("sys"), options="rbind", recursive=True)
        await mount("/dev", ctx.tpath("dev"), options="rbind", recursive=True)
        await mount(
            "efivarfs", ctx.tpath("sys/firmware/efi/efivars"), fstype="efivarfs"
        )
        await mount("cgroup2", ctx.tpath("sys/fs/cgroup"), fstype="cgroup2")
        await mount(
            device,
            ctx.tpath(".snapshots"),
            fstype="btrfs",
            options=f"subvol={SNAPSHOTS_SUBVOL}",
        )
        await mount(
            device, ctx.tpath("var"), fstype="btrfs", options=f"subvol={VAR_SUBVOL}"
        )
        await self._mount_etc(context, plan, ctx)
        await mount(ctx.target.esp_partition, ctx.tpath(ctx.esp_mountpoint))
        await mount("tmpfs", ctx.tpath("tmp"), fstype="tmpfs")
        await mount(
            "securityfs", ctx.tpath("sys/kernel/security"), fstype="securityfs"
        )
        log.debug("mounted %d filesystems under %s", len(plan.entries), root)

    @with_context(description="unlocking {ctx.target.crypt_partition}")
    async def open(self, *, context, ctx: ProvisionContext) -> MountPlan:
        await self.app.command_runner.run(
            [
                "cryptsetup",
                "open",
                "--key-file",
                ctx.key_file,
                ctx.target.crypt_partition,
                ctx.mapped_name,
            ]
        )
        plan = MountPlan(root=ctx.mount_root, mapped_device=ctx.mapped_device)
        try:
            await self._open_plan(context, plan, ctx)
        except Exception:
            log.exception("mounting the target failed, unmounting again")
            try:
                await self.close(context=context, plan=plan, ctx=ctx)
            except Exception:
                log.exception("cleaning up after failed mount failed too")
            raise
        return plan

    @with_context(description="unmounting {plan.root}")
    async def close(self, *, context, plan: MountPlan, ctx: ProvisionContext):
        """Unmount everything in plan, then close the LUKS mapping.

        A failed unmount does not stop the others from being tried. Entries
        are dropped from plan as they are unmounted, so whatever is left in
        it afterwards is still mounted and the mapping stays open.
        """
        failures: List[str] = []
        for entry in plan.close_sequence():
            cmd = ["umount"]
            if entry.recursive:
                cmd.append("--recursive")
            cmd.append(entry.target)
            try:
                with context.child("umount", f"unmounting {entry.target}"):
                    await self.app.command_runner.run(cmd, private_mounts=False)
            except SubprocessFailure as sf:
                log.error("unmounting %s failed: %s", entry.target, sf)
                failures.append(f"{entry.target} ({sf})")
                continue
            plan.entries.remove(entry)
        if plan.entries:
            raise MountFailure(plan.root, "still mounted: " + "; ".join(failures))
        await self.app.command_runner.run(["cryptsetup", "close", ctx.mapped_name])

    @contextlib.asynccontextmanager
    async def mounted(self, *, context=None, ctx: ProvisionContext):
        plan = await self.open(context=context, ctx=ctx)
        try:
            yield plan
        finally:
            await self.close(context=context, plan=plan, ctx=ctx)
