"""Command line entry point: ``usage-monitor [monitor|launch] ...``."""
from __future__ import annotations

import argparse
import logging
import os
import shlex
import sys
import traceback
from dataclasses import replace
from pathlib import Path

from rich.console import Console

from . import __version__, logger
from .app import MonitorApp, build_monitor, pane_controller_from_env
from .config import AUTO_SOURCE, MIN_REFRESH_INTERVAL, SOURCE_NAMES, Config, load_config
from .i18n import T
from .launch import launch
from .panes import BOTTOM, LEFT, POSITIONS, RIGHT, TOP, MultiplexerError, Tmux, is_compact
from .render import clamp_width, render_lines

LOG_DIR = Path.home() / '.cache' / 'usage-monitor'
LOG_FILE = LOG_DIR / 'monitor.log'
DEBUG_ENV = 'USAGE_MONITOR_DEBUG'
CREDENTIALS_ENV = 'TEST_CREDENTIALS_PATH'

SUBCOMMANDS = ('monitor', 'launch')


def setup_logging(debug: bool) -> None:
    """Log to ``~/.cache/usage-monitor/monitor.log`` when debugging; the pane itself owns stdout."""
    if not (debug or os.environ.get(DEBUG_ENV) == '1'):
        return

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(LOG_FILE, encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)-7s %(threadName)s %(message)s'))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.debug('tmux-usage-monitor %s starting (pid %d)', __version__, os.getpid())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='usage-monitor',
        description='Show Claude rate-limit usage in a tmux pane next to your agent.',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    sub = parser.add_subparsers(dest='command_name')

    mon = sub.add_parser('monitor', help='Run the monitor in the current pane (default).')
    mon.add_argument('--once', action='store_true', help='Fetch once, print and exit.')
    mon.add_argument('--compact', action='store_true', help='Use the single-row view.')
    mon.add_argument('--source', choices=SOURCE_NAMES, help='Credential source to read.')
    mon.add_argument('--config', type=Path, help='Config file (default: ~/.config/usage-monitor/config.json).')
    mon.add_argument('--interval', type=int, help=f'Seconds between updates (minimum {MIN_REFRESH_INTERVAL}).')
    mon.add_argument('--debug', action='store_true', help='Write a debug log to ~/.cache/usage-monitor/.')
    mon.add_argument('--position', choices=POSITIONS, help='Where the pane currently is.')
    mon.add_argument('--main-pane', help='tmux id of the pane the monitor is placed next to.')
    mon.add_argument('--kill-session', action='store_true', help='Kill the tmux session on quit.')

    lau = sub.add_parser('launch', help='Start an agent in a new tmux session with the monitor beside it.')
    side = lau.add_mutually_exclusive_group()
    side.add_argument('-l', '--left', dest='position', action='store_const', const=LEFT)
    side.add_argument('-r', '--right', dest='position', action='store_const', const=RIGHT)
    side.add_argument('-t', '--top', dest='position', action='store_const', const=TOP)
    side.add_argument('-b', '--bottom', dest='position', action='store_const', const=BOTTOM)
    lau.add_argument('-s', '--session', help='tmux session name.')
    lau.add_argument('--source', choices=SOURCE_NAMES, help='Credential source the monitor reads.')
    lau.add_argument('--config', type=Path, help='Config file.')
    lau.add_argument('--debug', action='store_true', help='Write a debug log to ~/.cache/usage-monitor/.')
    lau.add_argument('command', nargs=argparse.REMAINDER, help='Agent name from the config, or -- COMMAND...')

    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse *argv*; without a subcommand, ``monitor`` is assumed."""
    if not argv or (argv[0] not in SUBCOMMANDS and argv[0] not in ('-h', '--help', '--version')):
        argv = ['monitor', *argv]
    return build_parser().parse_args(argv)


def override_path(environ: dict[str, str] | None = None) -> Path | None:
    value = (os.environ if environ is None else environ).get(CREDENTIALS_ENV)
    return Path(value).expanduser() if value else None


def resolve_agent(command: list[str], config: Config, source: str | None) -> tuple[list[str], str | None]:
    """Expand a configured agent name into its command line and credential source.

    ``['claude', '--continue']`` becomes ``['claude', '--continue']`` with
    source ``'claude-code'``; unknown commands are passed through unchanged.
    """
    if command and command[0] == '--':
        command = command[1:]
    if not command:
        return [], source

    agent = config.agents.get(command[0])
    if agent is None:
        return command, source

    if source is None and agent.credential_source != AUTO_SOURCE:
        source = agent.credential_source
    return shlex.split(agent.command) + command[1:], source


# ── Subcommands ──


def print_once(args: argparse.Namespace, config: Config) -> int:
    monitor = build_monitor(config, override_path(), args.source)
    monitor.fetch()
    state = monitor.state

    console = Console(highlight=False)
    if state.usage is None and state.error is None:
        console.print(T['once_no_data'])
        return 1

    compact = args.compact or (args.position is not None and is_compact(args.position))
    width = max(10, console.width - 1) if compact else clamp_width(console.width)
    for line in render_lines(state, width, compact, config.refresh_interval):
        console.print(line, no_wrap=True, overflow='ellipsis')

    return 1 if state.error is not None else 0


def run_monitor(args: argparse.Namespace) -> int:
    config = load_config(args.config).config
    if args.interval is not None:
        config = replace(config, refresh_interval=max(MIN_REFRESH_INTERVAL, args.interval))

    if args.once:
        return print_once(args, config)

    mux = Tmux()
    panes = pane_controller_from_env(mux, args.main_pane)

    def on_quit() -> None:
        if not args.kill_session or panes is None:
            return
        try:
            mux.kill_session(panes.session)
        except MultiplexerError as e:
            logger.warning('Could not kill session %s: %s', panes.session, e)

    app = MonitorApp(
        build_monitor(config, override_path(), args.source),
        config,
        panes=panes,
        position=args.position,
        compact=True if args.compact else None,
        on_quit=on_quit,
    )
    return app.run()


def run_launch(args: argparse.Namespace) -> int:
    config = load_config(args.config).config
    command, source = resolve_agent(args.command, config, args.source)
    if source == AUTO_SOURCE:
        source = None
    return launch(command, args.position or config.position, args.session, source)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.debug)

    try:
        if args.command_name == 'launch':
            return run_launch(args)
        return run_monitor(args)
    except KeyboardInterrupt:
        return 130
    except Exception:
        logger.exception('Unhandled error')
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
