"""
CLI entrypoint & parser configuration.

Builds on top of Invoke's core functionality for same.
"""
import logging
import signal
import sys
import threading

from invoke import Collection, Exit, Program, task
from invoke import __version__ as invoke
from paramiko import __version__ as paramiko

from . import __version__ as opentunnels
from .config import Config
from .exceptions import GroupException, PlanError
from .manager import TunnelManager
from .plan import read_plan
from .util import enable_logging, log


def _load(path):
    errors = []
    try:
        specs = read_plan(path, errors=errors)
    except PlanError as e:
        raise Exit(str(e), code=1)
    return specs, errors


@task(
    help={
        "plan": "Terraform state, or `terraform show -json` output, to read.",
        "verbose": "Also log individual forwarded connections.",
    }
)
def forward(c, plan, verbose=False):
    """
    Open every tunnel declared in PLAN and forward until interrupted.
    """
    enable_logging(logging.DEBUG if verbose else logging.INFO)
    specs, errors = _load(plan)
    for error in errors:
        log.error(str(error))
    if not specs:
        raise Exit("No tunnels declared in {}".format(plan), code=1)
    manager = TunnelManager(specs, config=c.config)
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda signum, frame: manager.stop())
    try:
        manager.run()
    except GroupException as e:
        raise Exit(str(e), code=1)
    if errors:
        raise Exit(
            "{} tunnel declaration(s) were invalid".format(len(errors)), code=1
        )


@task(help={"plan": "Terraform state, or `terraform show -json` output, to read."})
def show(c, plan):
    """
    List the tunnels declared in PLAN without opening them.
    """
    specs, errors = _load(plan)
    for spec in specs:
        agent = " (agent)" if spec.use_agent else ""
        print("{} as {}{}".format(spec, spec.user, agent))
    for error in errors:
        print("Invalid: {}".format(error), file=sys.stderr)
    if errors:
        raise Exit(code=1)


class Tunnels(Program):
    def print_version(self):
        super().print_version()
        print("Paramiko {}".format(paramiko))
        print("Invoke {}".format(invoke))


def make_program():
    return Tunnels(
        name="OpenTunnels",
        binary="opentunnels",
        version=opentunnels,
        namespace=Collection(forward, show),
        config_class=Config,
    )


program = make_program()
