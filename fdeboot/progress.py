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

"""One-way progress reporting from the provisioning workflow to whatever is
showing it to the operator.

The wire form of the stream is one UTF-8 line per event: "# <status>" for
a status line or a bare integer in [0, 100] for a percentage. The stream
ends after the line "100".
"""

import asyncio
import logging
import sys
from typing import AsyncIterator, Optional

import attr

log = logging.getLogger("fdeboot.progress")


class ChannelClosed(Exception):
    pass


@attr.s(auto_attribs=True, frozen=True)
class ProgressEvent:
    status: Optional[str] = None
    percent: Optional[int] = None

    def to_line(self) -> str:
        if self.percent is not None:
            return str(self.percent)
        return f"# {self.status}"

    @classmethod
    def from_line(cls, line: str) -> "ProgressEvent":
        line = line.rstrip("\n")
        if line.startswith("#"):
            return cls(status=line[1:].strip())
        value = int(line)
        if not 0 <= value <= 100:
            raise ValueError(f"percentage out of range: {value}")
        return cls(percent=value)


# Queued by abort() so the reader stops without a terminal 100.
_ABORTED = ProgressEvent()


class ProgressChannel:
    """Single writer, single reader stream of ProgressEvents.

    Writing never blocks: when the reader falls behind (or never attaches)
    and the queue is full, the oldest pending event is dropped. Dropping
    keeps the percentages the reader sees non-decreasing and the terminal
    100 is never dropped as it is always the newest event.
    """

    def __init__(self, name: str = "fde-firstboot-progress", maxsize: int = 64):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self._last_percent = 0
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ChannelClosed(self.name)
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    def status(self, text: str) -> None:
        self._put(ProgressEvent(status=" ".join(text.split())))

    def percent(self, value: int) -> None:
        value = int(value)
        if not 0 <= value <= 100:
            raise ValueError(f"percentage out of range: {value}")
        if value < self._last_percent:
            raise ValueError(
                f"progress cannot go backwards: {value} < {self._last_percent}"
            )
        self._last_percent = value
        self._put(ProgressEvent(percent=value))
        if value == 100:
            self._closed = True

    def close(self) -> None:
        """Finish the stream with the terminal 100."""
        if not self._closed:
            self.percent(100)

    def abort(self) -> None:
        """Stop the reader without claiming completion."""
        if not self._closed:
            self._put(_ABORTED)
            self._closed = True

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is _ABORTED:
                return
            yield event
            if event.percent == 100:
                return

    async def lines(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield event.to_line()


class TextGaugeRenderer:
    """Draw a one-line gauge on a terminal."""

    def __init__(self, stream=None, width: int = 30):
        if stream is None:
            stream = sys.stderr
        self.stream = stream
        self.width = width
        self.percent = 0
        self.status = ""

    def render(self, event: ProgressEvent) -> None:
        if event.percent is not None:
            self.percent = event.percent
        else:
            self.status = event.status
        filled = self.width * self.percent // 100
        bar = "#" * filled + "." * (self.width - filled)
        self.stream.write(f"\r[{bar}] {self.percent:3d}% {self.status}\x1b[K")
        self.stream.flush()

    def finish(self) -> None:
        self.stream.write("\n")
        self.stream.flush()


class LineRenderer:
    """Write the stream in its wire form, e.g. to feed a dialog gauge."""

    def __init__(self, stream):
        self.stream = stream

    def render(self, event: ProgressEvent) -> None:
        self.stream.write(event.to_line() + "\n")
        self.stream.flush()

    def finish(self) -> None:
        pass


class ProgressObserver:
    def __init__(self, channel: ProgressChannel, renderer):
        self.channel = channel
        self.renderer = renderer
        self.task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        try:
            async for event in self.channel.events():
                self.renderer.render(event)
        finally:
            self.renderer.finish()
        if self.channel.dropped:
            log.debug(
                "%s: %d events dropped", self.channel.name, self.channel.dropped
            )

    def start(self) -> asyncio.Task:
        self.task = asyncio.create_task(self.run())
        return self.task
