import asyncio
import logging
import sys
from functools import update_wrapper
from pathlib import Path
from typing import Optional

import click

from konflux_compliance import __version__, constants
from konflux_compliance.runtime import Runtime

pass_runtime = click.make_pass_decorator(Runtime)

LOG_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]
NOISY_LOGGERS = ("kubernetes", "urllib3", "aiohttp")


def click_coroutine(f):
    """ A wrapper to allow to use asyncio with click.
    https://github.com/pallets/click/issues/85
    """
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))
    return update_wrapper(wrapper, f)


def print_version(ctx, param, value):
    if not value or ctx.resilient_parsing:
        return
    click.echo('konflux-compliance v{}'.format(__version__))
    click.echo('Python v{}'.format(sys.version))
    ctx.exit()


def configure_logging(verbosity: int):
    """-v shows progress, -vv every API call. Client libraries stay at INFO even with -vv."""
    level = LOG_LEVELS[min(verbosity, len(LOG_LEVELS) - 1)]
    logging.basicConfig(level=level)
    if level == logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)


# ============================================================================
# GLOBAL OPTIONS: parameters for all commands
# ============================================================================
@click.group(context_settings=dict(help_option_names=['-h', '--help']))
@click.option('--version', is_flag=True, callback=print_version,
              expose_value=False, is_eager=True,
              help="Print version information and quit")
@click.option("--config", "-c", metavar='PATH',
              help=f"Configuration file ('{constants.DEFAULT_CONFIG_PATH}' by default)")
@click.option("--working-dir", "-C", metavar='PATH', default=None,
              help="Existing directory in which file operations should be performed (current directory by default)")
@click.option("--dry-run", is_flag=True,
              help="don't change anything on Konflux or JIRA; just print what would be done")
@click.option("--verbosity", "-v", count=True,
              help="[MULTIPLE] increase output verbosity")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], working_dir: Optional[str], dry_run: bool, verbosity: int):
    configure_logging(verbosity)
    config_filename = Path(config) if config else Path(constants.DEFAULT_CONFIG_PATH).expanduser()
    working_dir = working_dir or Path.cwd()
    if config and not config_filename.is_file():
        raise click.BadParameter(f"{config_filename} doesn't exist", param_hint="--config")
    ctx.obj = Runtime.from_config_file(config_filename, working_dir=Path(working_dir), dry_run=dry_run)
