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

import asyncio
import io

from parameterized import parameterized

from fdeboot.progress import (
    ChannelClosed,
    LineRenderer,
    ProgressChannel,
    ProgressEvent,
    ProgressObserver,
    TextGaugeRenderer,
)
from fdecore.tests import FdeTestCase


class RecordingRenderer:
    def __init__(self):
        self.events = []
        self.finished = False

    def render(self, event):
        self.events.append(event)

    def finish(self):
        self.finished = True


async def drain(channel):
    return [line async for line in channel.lines()]


class TestProgressEvent(FdeTestCase):
    def test_to_line(self):
        event = ProgressEvent(status="mounting /mnt")
        self.assertEqual("# mounting /mnt", event.to_line())
        self.assertEqual("42", ProgressEvent(percent=42).to_line())

    def test_from_line(self):
        self.assertEqual(
            ProgressEvent(status="mounting /mnt"),
            ProgressEvent.from_line("# mounting /mnt\n"),
        )
        self.assertEqual(ProgressEvent(percent=100), ProgressEvent.from_line("100"))

    @parameterized.expand([("101",), ("-1",), ("many",)])
    def test_from_line_invalid(self, line):
        with self.assertRaises(ValueError):
            ProgressEvent.from_line(line)


class TestProgressChannel(FdeTestCase):
    async def test_protocol(self):
        channel = ProgressChannel()
        channel.percent(0)
        channel.status("locating partitions")
        channel.percent(10)
        channel.status("two\nlines")
        channel.close()
        self.assertEqual(
            ["0", "# locating partitions", "10", "# two lines", "100"],
            await drain(channel),
        )

    def test_backwards(self):
        channel = ProgressChannel()
        channel.percent(50)
        with self.assertRaises(ValueError):
            channel.percent(40)
        channel.percent(50)

    @parameterized.expand([(-1,), (101,)])
    def test_out_of_range(self, value):
        with self.assertRaises(ValueError):
            ProgressChannel().percent(value)

    def test_closed_after_100(self):
        channel = ProgressChannel()
        channel.percent(100)
        self.assertTrue(channel.closed)
        with self.assertRaises(ChannelClosed):
            channel.status("late")
        with self.assertRaises(ChannelClosed):
            channel.percent(100)
        # closing again is harmless
        channel.close()

    async def test_writes_do_not_block_without_reader(self):
        channel = ProgressChannel(maxsize=4)
        for i in range(101):
            channel.percent(i)
        self.assertEqual(97, channel.dropped)
        lines = await drain(channel)
        self.assertEqual(["97", "98", "99", "100"], lines)

    async def test_dropping_keeps_order(self):
        channel = ProgressChannel(maxsize=3)
        for i in range(0, 100, 10):
            channel.status(f"step {i}")
            channel.percent(i)
        channel.close()
        values = [int(x) for x in await drain(channel) if not x.startswith("#")]
        self.assertEqual(values, sorted(values))
        self.assertEqual(100, values[-1])

    async def test_abort(self):
        channel = ProgressChannel()
        channel.percent(20)
        channel.abort()
        self.assertTrue(channel.closed)
        self.assertEqual(["20"], await drain(channel))


class TestProgressObserver(FdeTestCase):
    async def test_concurrent_reader(self):
        channel = ProgressChannel()
        renderer = RecordingRenderer()
        task = ProgressObserver(channel, renderer).start()
        for i in (0, 30, 60):
            channel.percent(i)
            await asyncio.sleep(0)
        channel.close()
        await asyncio.wait_for(task, timeout=1.0)
        self.assertTrue(renderer.finished)
        self.assertEqual(
            [0, 30, 60, 100], [e.percent for e in renderer.events]
        )

    async def test_reader_stops_on_abort(self):
        channel = ProgressChannel()
        renderer = RecordingRenderer()
        task = ProgressObserver(channel, renderer).start()
        channel.status("mounting")
        channel.abort()
        await asyncio.wait_for(task, timeout=1.0)
        self.assertTrue(renderer.finished)
        self.assertEqual([ProgressEvent(status="mounting")], renderer.events)


class TestRenderers(FdeTestCase):
    def test_gauge(self):
        stream = io.StringIO()
        renderer = TextGaugeRenderer(stream, width=10)
        renderer.render(ProgressEvent(status="mounting"))
        renderer.render(ProgressEvent(percent=50))
        renderer.finish()
        output = stream.getvalue()
        self.assertIn("[#####.....]  50% mounting", output)
        self.assertTrue(output.endswith("\n"))

    def test_lines(self):
        stream = io.StringIO()
        renderer = LineRenderer(stream)
        renderer.render(ProgressEvent(status="mounting"))
        renderer.render(ProgressEvent(percent=100))
        self.assertEqual("# mounting\n100\n", stream.getvalue())
