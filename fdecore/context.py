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
import enum
import functools
import inspect
import logging
import time
from typing import Optional

log = logging.getLogger("fdecore.context")


class Status(enum.Enum):
    SUCCESS = enum.auto()
    FAIL = enum.auto()
    WARN = enum.auto()


class Context:
    """A named step of a run, nested under the step that started it.

    Entering a context reports a start event to the application and
    leaving it reports a finish event, so every step of a run shows up in
    the logs (and whatever else the application forwards events to):

    with app.context.child("recovery_key", "generating recovery key"):
        key = generate_recovery_key()

    Steps implemented as methods use the with_context decorator instead.
    A step that raises finishes with Status.FAIL and the exception text as
    its description.
    """

    def __init__(self, app, name, description, parent, level, childlevel=None):
        self.app = app
        self.name = name
        self.description = description
        self.parent = parent
        self.level = level
        self.childlevel = level if childlevel is None else childlevel
        self.started: Optional[float] = None
        self.elapsed: Optional[float] = None

    @classmethod
    def new(cls, app):
        return cls(app, app.project, "", None, "INFO")

    def child(self, name, description="", level=None, childlevel=None):
        if level is None:
            level = self.childlevel
        return Context(self.app, name, description, self, level, childlevel)

    @property
    def full_name(self) -> str:
        if self.parent is None:
            return self.name
        return f"{self.parent.full_name}/{self.name}"

    def enter(self, description=None):
        self.started = time.monotonic()
        self.app.report_start_event(
            self.full_name,
            self.description if description is None else description,
            self.level,
        )

    def exit(self, description=None, result=Status.SUCCESS):
        if self.started is not None:
            self.elapsed = time.monotonic() - self.started
            log.debug("%s took %.2fs", self.full_name, self.elapsed)
        self.app.report_finish_event(
            self.full_name,
            self.description if description is None else description,
            result,
            self.level,
        )

    def __enter__(self):
        self.enter()
        return self

    def __exit__(self, exc, value, tb):
        if exc is None:
            self.exit()
        elif isinstance(value, asyncio.CancelledError):
            self.exit("cancelled", Status.FAIL)
        else:
            self.exit(str(value), Status.FAIL)


def with_context(name=None, description="", **context_kw):
    """Run the decorated method inside a child of the caller's context.

    The child context is passed to the method as the 'context' keyword
    argument. name and description are formatted with the method's keyword
    arguments (and 'self' for description).
    """

    def decorate(meth):
        nonlocal name
        if name is None:
            name = meth.__name__

        def convargs(self, kw):
            context = kw.get("context")
            if context is None:
                context = self.context
            kw["context"] = context.child(
                name=name.format(**kw),
                description=description.format(self=self, **kw),
                **context_kw,
            )
            return kw

        @functools.wraps(meth)
        def decorated_sync(self, *args, **kw):
            kw = convargs(self, kw)
            with kw["context"]:
                return meth(self, *args, **kw)

        @functools.wraps(meth)
        async def decorated_async(self, *args, **kw):
            kw = convargs(self, kw)
            with kw["context"]:
                return await meth(self, *args, **kw)

        if inspect.iscoroutinefunction(meth):
            return decorated_async
        else:
            return decorated_sync

    return decorate
