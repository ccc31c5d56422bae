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
from typing import Any, Dict, List, Optional

import attr
import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from fdeboot.errors import ConfigError
from fdeboot.models import MeasurementPolicy, ProvisionContext, UnlockMode

log = logging.getLogger("fdeboot.config")

DEFAULT_CONFIG = "/etc/fde-firstboot.yaml"

config_schema = {
    "type": "object",
    "properties": {
        "device": {"type": "string"},
        "unlock-mode": {"type": "string", "enum": [m.value for m in UnlockMode]},
        "key-file": {"type": "string"},
        "mapped-name": {"type": "string", "pattern": "^[A-Za-z0-9_.-]+$"},
        "mount-root": {"type": "string", "pattern": "^/"},
        "esp-mountpoint": {"type": "string", "pattern": "^/"},
        "pcrs": {
            "type": "array",
            "items": {"type": "integer", "minimum": 0, "maximum": 23},
            "minItems": 1,
            "uniqueItems": True,
        },
        "retire-key-file": {"type": "boolean"},
        "dracut-override": {"type": ["string", "null"]},
    },
    "additionalProperties": False,
}


@attr.s(auto_attribs=True, kw_only=True)
class FirstbootConfig:
    device: Optional[str] = None
    unlock_mode: UnlockMode = UnlockMode.DEFAULT
    key_file: str = "/root/cr_key"
    mapped_name: str = "cr_root"
    mount_root: str = "/mnt"
    esp_mountpoint: str = "/boot/efi"
    pcrs: List[int] = attr.Factory(lambda: list(MeasurementPolicy().pcrs))
    retire_key_file: bool = True
    # misbehaves when the initrds are rebuilt for an installed system
    dracut_override: Optional[str] = 'hostonly_cmdline="no"'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FirstbootConfig":
        try:
            jsonschema.validate(data, config_schema)
        except ValidationError as ve:
            raise ConfigError(f"invalid configuration: {ve.message}") from ve
        kw = {key.replace("-", "_"): value for key, value in data.items()}
        if "unlock_mode" in kw:
            kw["unlock_mode"] = UnlockMode(kw["unlock_mode"])
        return cls(**kw)

    def make_context(self) -> ProvisionContext:
        if self.device is None:
            raise ConfigError("no target device configured")
        return ProvisionContext(
            device=self.device,
            key_file=self.key_file,
            unlock_mode=self.unlock_mode,
            mapped_name=self.mapped_name,
            mount_root=self.mount_root,
            esp_mountpoint=self.esp_mountpoint,
            policy=MeasurementPolicy(pcrs=tuple(self.pcrs)),
        )


def load_config(path: Optional[str]) -> FirstbootConfig:
    if path is None:
        path = DEFAULT_CONFIG
    try:
        with open(path) as fp:
            data = yaml.safe_load(fp)
    except FileNotFoundError:
        log.debug("no configuration at %s, using defaults", path)
        return FirstbootConfig()
    except yaml.YAMLError as ye:
        raise ConfigError(f"{path}: {ye}") from ye
    if data is None:
        data = {}
    log.debug("loaded configuration from %s", path)
    return FirstbootConfig.from_dict(data)
