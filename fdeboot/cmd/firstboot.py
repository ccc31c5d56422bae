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

import argparse
import asyncio
import getpass
import logging
import os
import sys

from fdeboot.config import DEFAULT_CONFIG, load_config
from fdeboot.errors import ProvisionError
from fdeboot.models import UnlockMode
from fdeboot.progress import LineRenderer, TextGaugeRenderer
from fdeboot.ui import ConsoleInterface
from fdeboot.workflow import ProvisionWorkflow
from fdecore import __version__
from fdecore.log import setup_logger

LOGDIR = "/var/log/fde-firstboot"


def make_firstboot_args_parser():
    parser = argparse.ArgumentParser(
        description="Finish setting up an encrypted root volume on first boot",
        prog="fde-firstboot",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        dest="dry_run",
        help="show the commands that would be run instead of running them",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help="YAML configuration file (default: %(default)s)",
    )
    parser.add_argument("--device", help="block device holding the LUKS volume")
    parser.add_argument(
        "--unlock-mode",
        choices=[m.value for m in UnlockMode],
        help="override the configured unlock mode",
    )
    parser.add_argument(
        "--key-file", help="key file that currently unlocks the volume"
    )
    parser.add_argument("--log-dir")
    parser.add_argument(
        "--output-base",
        dest="output_base",
        default=".fde-firstboot",
        help="in dryrun, directory for logs and the stand-in target tree",
    )
    parser.add_argument(
        "--progress-lines",
        action="store_true",
        help="write raw progress lines to stdout instead of drawing a gauge",
    )
    return parser


def make_frontend(opts, stdout=None, stderr=None, getpass=getpass.getpass):
    """Return the operator interface and the progress renderer.

    With --progress-lines stdout carries nothing but the progress stream,
    so everything meant for the operator goes to stderr.
    """
    if stdout is None:
        stdout = sys.stdout
    if stderr is None:
        stderr = sys.stderr
    if opts.progress_lines:
        return (
            ConsoleInterface(stream=stderr, getpass=getpass),
            LineRenderer(stdout),
        )
    return (
        ConsoleInterface(stream=stdout, getpass=getpass),
        TextGaugeRenderer(stderr),
    )


def main():
    parser = make_firstboot_args_parser()
    opts = parser.parse_args(sys.argv[1:])

    logdir = opts.log_dir
    if logdir is None:
        logdir = opts.output_base if opts.dry_run else LOGDIR
    setup_logger(dir=logdir)
    logger = logging.getLogger("fdeboot")
    logger.info(f"Starting fde-firstboot {__version__}")
    logger.info(f"Arguments passed: {sys.argv}")

    try:
        config = load_config(opts.config)
    except ProvisionError as e:
        print(f"fde-firstboot: {e}", file=sys.stderr)
        return 2
    if opts.device is not None:
        config.device = opts.device
    if opts.unlock_mode is not None:
        config.unlock_mode = UnlockMode(opts.unlock_mode)
    if opts.key_file is not None:
        config.key_file = opts.key_file
    if opts.dry_run:
        # nothing is really mounted, so the steps write into a scratch tree
        config.mount_root = os.path.abspath(os.path.join(opts.output_base, "target"))
        logger.info("dry run, using %s as the target", config.mount_root)

    ui, renderer = make_frontend(opts)

    async def run_with_loop():
        workflow = ProvisionWorkflow(opts, config, ui=ui, renderer=renderer)
        await workflow.run()

    try:
        asyncio.run(run_with_loop())
    except ProvisionError as e:
        logger.exception("provisioning failed")
        print(f"fde-firstboot: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
