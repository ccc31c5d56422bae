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
from typing import Any, Callable, Dict, Iterator, List

from fdeboot.errors import AmbiguousPartitionMatch, PartitionNotFound
from fdeboot.models import ProvisionContext, TargetDevice
from fdecore.context import with_context

log = logging.getLogger("fdeboot.locator")

ESP_PARTTYPE = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"

Partition = Dict[str, Any]


def is_luks(part: Partition) -> bool:
    return part.get("fstype") == "crypto_LUKS"


def is_esp(part: Partition) -> bool:
    if part.get("fstype") != "vfat":
        return False
    parttype = part.get("parttype")
    # MBR disks and older lsblk do not report a GPT type
    return parttype is None or parttype.lower() == ESP_PARTTYPE


def _walk(devices: List[Partition]) -> Iterator[Partition]:
    for dev in devices:
        yield dev
        yield from _walk(dev.get("children", []))


class PartitionLocator:
    def __init__(self, app):
        self.app = app
        self.context = app.context

    async def partitions(self, device: str) -> List[Partition]:
        out = await self.app.command_runner.probe(
            [
                "lsblk",
                "--json",
                "--paths",
                "--output",
                "NAME,TYPE,FSTYPE,PARTTYPE",
                device,
            ]
        )
        data = json.loads(out)
        return [
            dev for dev in _walk(data.get("blockdevices", [])) if dev["type"] == "part"
        ]

    @with_context(description="locating {what} partition on {device}")
    async def locate(
        self,
        *,
        context,
        device: str,
        predicate: Callable[[Partition], bool],
        what: str,
    ) -> str:
        matches = [p["name"] for p in await self.partitions(device) if predicate(p)]
        if not matches:
            raise PartitionNotFound(device, what)
        if len(matches) > 1:
            raise AmbiguousPartitionMatch(device, what, matches)
        log.debug("found %s partition %s", what, matches[0])
        return matches[0]

    @with_context(description="locating partitions on {ctx.device}")
    async def discover(self, *, context, ctx: ProvisionContext) -> TargetDevice:
        crypt = await self.locate(
            context=context, device=ctx.device, predicate=is_luks, what="LUKS"
        )
        esp = await self.locate(
            context=context, device=ctx.device, predicate=is_esp, what="EFI"
        )
        return TargetDevice(device=ctx.device, crypt_partition=crypt, esp_partition=esp)
