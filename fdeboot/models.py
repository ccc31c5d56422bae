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

import enum
import os
from typing import List, Optional, Set, Tuple

import attr


class UnlockMode(enum.Enum):
    # TPM2 unlock sealed against a PCR policy
    DEFAULT = "default"
    # interactive passphrase
    FALLBACK = "fallback"


class SlotKind(enum.Enum):
    KEY_FILE = "key-file"
    RECOVERY = "recovery"
    TPM2 = "tpm2"
    PASSPHRASE = "passphrase"


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class TargetDevice:
    device: str
    crypt_partition: str
    esp_partition: str


@attr.s(frozen=True, repr=False)
class RecoveryKey:
    value: str = attr.ib()

    def __str__(self):
        return self.value

    def __repr__(self):
        return "RecoveryKey(<redacted>)"


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class MountEntry:
    source: str
    target: str
    fstype: Optional[str] = None
    options: Optional[str] = None
    # entries with a higher close_order are unmounted first
    close_order: int = 0
    # rbind mounts carry submounts and need a recursive unmount
    recursive: bool = False

    def mount_args(self) -> List[str]:
        args = []
        if self.fstype is not None:
            args.extend(["-t", self.fstype])
        if self.options is not None:
            args.extend(["-o", self.options])
        return args + [self.source, self.target]


@attr.s(auto_attribs=True, kw_only=True)
class MountPlan:
    root: str
    mapped_device: str
    entries: List[MountEntry] = attr.Factory(list)

    def targets(self) -> Set[str]:
        return {entry.target for entry in self.entries}

    def close_sequence(self) -> List[MountEntry]:
        # sorted() is stable so entries sharing a rank close in reverse
        # open order.
        return sorted(
            reversed(self.entries), key=lambda e: e.close_order, reverse=True
        )


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class MeasurementPolicy:
    # boot loader/drivers, GPT, secure boot state, initrd
    pcrs: Tuple[int, ...] = (4, 5, 7, 9)
    private_key: str = "etc/systemd/tpm2-pcr-private-key.pem"
    public_key: str = "etc/systemd/tpm2-pcr-public-key.pem"
    config: str = "etc/sysconfig/fde-tools"

    def pcr_list(self) -> str:
        return ",".join(str(pcr) for pcr in self.pcrs)

    def pcr_spec(self) -> str:
        return "+".join(str(pcr) for pcr in self.pcrs)


@attr.s(auto_attribs=True, frozen=True, kw_only=True)
class ProvisionContext:
    """Everything the provisioning steps share.

    The object is immutable; the workflow derives a new one with
    with_target() and with_recovery_key() as each value becomes known, and
    each of those may only be set once.
    """

    device: str
    key_file: str
    unlock_mode: UnlockMode
    mapped_name: str = "cr_root"
    mount_root: str = "/mnt"
    esp_mountpoint: str = "/boot/efi"
    policy: MeasurementPolicy = attr.Factory(MeasurementPolicy)
    target: Optional[TargetDevice] = None
    recovery_key: Optional[RecoveryKey] = None

    @property
    def mapped_device(self) -> str:
        return f"/dev/mapper/{self.mapped_name}"

    @property
    def use_tpm(self) -> bool:
        return self.unlock_mode == UnlockMode.DEFAULT

    def tpath(self, *path: str) -> str:
        return os.path.join(self.mount_root, *(p.lstrip("/") for p in path))

    def with_target(self, target: TargetDevice) -> "ProvisionContext":
        if self.target is not None:
            raise ValueError("target device already discovered")
        return attr.evolve(self, target=target)

    def with_recovery_key(self, key: RecoveryKey) -> "ProvisionContext":
        if self.recovery_key is not None:
            raise ValueError("recovery key already generated")
        return attr.evolve(self, recovery_key=key)
