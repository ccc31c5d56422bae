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

import secrets
from typing import Callable

from fdeboot.errors import RandomSourceFailure
from fdeboot.models import RecoveryKey

# The modhex alphabet: unambiguous when read aloud or typed on keyboards
# with differing layouts.
MODHEX = "cbdefghijklnrtuv"
KEY_BYTES = 32
BYTES_PER_GROUP = 4


def encode_recovery_key(data: bytes) -> RecoveryKey:
    if len(data) != KEY_BYTES:
        raise ValueError(f"expected {KEY_BYTES} bytes, got {len(data)}")
    chars = []
    for i, byte in enumerate(data):
        if i > 0 and i % BYTES_PER_GROUP == 0:
            chars.append("-")
        chars.append(MODHEX[byte >> 4])
        chars.append(MODHEX[byte & 0x0F])
    return RecoveryKey("".join(chars))


def generate_recovery_key(
    randbytes: Callable[[int], bytes] = secrets.token_bytes,
) -> RecoveryKey:
    try:
        data = randbytes(KEY_BYTES)
    except OSError as ose:
        raise RandomSourceFailure(f"reading random bytes failed: {ose}") from ose
    if data is None or len(data) != KEY_BYTES:
        raise RandomSourceFailure("short read from random source")
    return encode_recovery_key(bytes(data))
