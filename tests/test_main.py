from __future__ import annotations

import pytest

from tmux_usage_monitor import __main__ as cli
from tmux_usage_monitor import __version__
from tmux_usage_monitor import config as config_module
from tmux_usage_monitor.config import Config
from tmux_usage_monitor.monitor import Monitor

from test_monitor import FakeClient, failure, summary


@pytest.fixture(autouse=True)
def no_user_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, 'CONFIG_FILE', tmp_path / 'config.json')
    monkeypatch.delenv('USAGE_MONITOR_DEBUG', raising=False)


def fake_monitor(monkeypatch, *results):
    def build(config, override_path=None, source=None):
        return Monitor(FakeClient(*results))

    monkeypatch.setattr(cli, 'build_monitor', build)


def test_monitor_is_default_subcommand():
    args = cli.parse_args(['--once', '--compact'])
    assert args.command_name == 'monitor'
    assert args.once and args.compact
    assert cli.parse_args([]).command_name == 'monitor'


def test_launch_arguments():
    args = cli.parse_args(['launch', '-t', '-s', 'work', 'claude', '--continue'])
    assert args.position == 'top'
    assert args.session == 'work'
    assert args.command == ['claude', '--continue']


def test_version(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(['--version'])
    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_resolve_agent_uses_configured_source():
    command, source = cli.resolve_agent(['claude', '--continue'], Config(), None)
    assert command == ['claude', '--continue']
    assert source == 'claude-code'


def test_resolve_agent_explicit_source_wins():
    assert cli.resolve_agent(['opencode'], Config(), 'keychain') == (['opencode'], 'keychain')


def test_resolve_agent_passes_unknown_commands():
    assert cli.resolve_agent(['--', 'aider', '--model', 'x'], Config(), None) == (['aider', '--model', 'x'], None)


def test_override_path(tmp_path):
    assert cli.override_path({'TEST_CREDENTIALS_PATH': str(tmp_path / 'c.json')}) == tmp_path / 'c.json'
    assert cli.override_path({}) is None


def test_once_prints_usage(monkeypatch, capsys):
    fake_monitor(monkeypatch, summary(44))
    assert cli.main(['--once']) == 0
    out = capsys.readouterr().out
    assert '44%' in out
    assert 'ada' in out


def test_once_exits_nonzero_on_error(monkeypatch, capsys):
    fake_monitor(monkeypatch, failure(503, 'Service unavailable'))
    assert cli.main(['monitor', '--once', '--compact']) == 1
    assert 'Service unavailable' in capsys.readouterr().out


def test_crash_is_reported(monkeypatch, capsys):
    def explode(args):
        raise RuntimeError('kaboom')

    monkeypatch.setattr(cli, 'run_monitor', explode)
    assert cli.main([]) == 1
    assert 'kaboom' in capsys.readouterr().err


def test_debug_log_file(tmp_path, monkeypatch):
    import logging

    from tmux_usage_monitor import logger

    monkeypatch.setattr(cli, 'LOG_DIR', tmp_path)
    monkeypatch.setattr(cli, 'LOG_FILE', tmp_path / 'monitor.log')
    handlers = list(logger.handlers)
    try:
        cli.setup_logging(debug=True)
        logger.info('hello from the test')
        for handler in logger.handlers:
            handler.flush()
        assert 'hello from the test' in (tmp_path / 'monitor.log').read_text()
    finally:
        for handler in logger.handlers[len(handlers):]:
            handler.close()
        logger.handlers[:] = handlers
        logger.setLevel(logging.NOTSET)
