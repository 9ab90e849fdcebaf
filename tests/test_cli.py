"""Tests for CLI modules (cli.py and engine.cli)."""

import json
import logging
import os
import signal
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from engine import cli as engine_cli


@pytest.fixture(autouse=True)
def _restore_logging():
    """Undo handler and level changes made by _setup_logging()."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)


@pytest.fixture
def home(tmp_path):
    """Point SHIPYARD_HOME at a temporary directory."""
    home_dir = tmp_path / 'home'
    home_dir.mkdir()
    with patch.dict(os.environ, {'SHIPYARD_HOME': str(home_dir)}):
        yield home_dir


@pytest.fixture
def blueprint(tmp_path):
    """Blueprint with two ordered exec_local resources and a disabled container."""
    marker = tmp_path / 'marker.txt'
    path = tmp_path / 'blueprint.yaml'
    path.write_text(f"""
resources:
  - type: exec_local
    name: first
    cmd: sh
    args: ["-c", "echo first >> {marker}"]
  - type: exec_local
    name: second
    depends_on: exec_local.first
    cmd: sh
    args: ["-c", "echo second >> {marker}"]
  - type: container
    name: consul
    disabled: true
""")
    return path


class TestMain:
    """Tests for top-level verb dispatch."""

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: shipyard-driver <verb>' in out
        for verb in cli.VERB_COMMANDS:
            assert verb in out

    def test_unknown_verb(self, capsys):
        assert cli.main(['frobnicate']) == 1
        assert "Unknown command 'frobnicate'" in capsys.readouterr().out

    def test_version(self, capsys):
        assert cli.main(['--version']) == 0
        assert 'shipyard-driver' in capsys.readouterr().out

    def test_dispatches_to_handler(self):
        with patch.object(engine_cli, 'validate_main', return_value=0) as mock_validate:
            assert cli.main(['validate', '-b', 'x.yaml']) == 0
        mock_validate.assert_called_once_with(['-b', 'x.yaml'])


class TestValidateVerb:
    """Tests for 'validate'."""

    def test_valid(self, home, blueprint, capsys):
        assert engine_cli.validate_main(['-b', str(blueprint)]) == 0
        out = capsys.readouterr().out
        assert 'is valid (3 resources in 2 levels)' in out

    def test_cycle(self, home, tmp_path, capsys):
        path = tmp_path / 'cycle.yaml'
        path.write_text("""
- {type: exec_local, name: a, cmd: 'true', depends_on: exec_local.b}
- {type: exec_local, name: b, cmd: 'true', depends_on: exec_local.a}
""")
        assert engine_cli.validate_main(['-b', str(path)]) == 1
        assert 'Cyclic dependency' in capsys.readouterr().err

    def test_unsupported_type(self, home, tmp_path, capsys):
        path = tmp_path / 'helm.yaml'
        path.write_text("- {type: helm, name: consul}\n")
        assert engine_cli.validate_main(['-b', str(path)]) == 1
        assert "No provider registered for type 'helm'" in capsys.readouterr().err

    def test_missing_blueprint(self, home, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            engine_cli.validate_main(['-b', str(tmp_path / 'nope.yaml')])
        assert exc_info.value.code == 1
        assert 'Blueprint file not found' in capsys.readouterr().err

    def test_bad_config(self, home, blueprint, capsys):
        (home / 'config.yaml').write_text('max_workers: 0\n')
        with pytest.raises(SystemExit):
            engine_cli.validate_main(['-b', str(blueprint)])
        assert 'Error loading config' in capsys.readouterr().err

    def test_bad_provider_plugin(self, home, blueprint, capsys):
        (home / 'config.yaml').write_text('providers:\n  container: nowhere_mod:Nothing\n')
        with pytest.raises(SystemExit):
            engine_cli.validate_main(['-b', str(blueprint)])
        assert 'Error loading provider' in capsys.readouterr().err


class TestApplyVerb:
    """Tests for 'apply', 'list', 'status' and 'destroy' against real exec_local."""

    def test_apply_then_reapply(self, home, blueprint, tmp_path):
        assert engine_cli.apply_main(['-b', str(blueprint)]) == 0
        assert (tmp_path / 'marker.txt').read_text().split() == ['first', 'second']

        state = json.loads((home / 'state' / 'state.json').read_text())
        statuses = {r['name']: r['status'] for r in state['resources']}
        assert statuses == {'first': 'Created', 'second': 'Created', 'consul': 'Disabled'}

        assert engine_cli.apply_main(['-b', str(blueprint)]) == 0
        assert (tmp_path / 'marker.txt').read_text().split() == ['first', 'second']

    def test_apply_json_output(self, home, blueprint, capsys):
        assert engine_cli.apply_main(['-b', str(blueprint), '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'apply'
        assert data['success'] is True
        refs = [r['reference'] for r in data['resources']]
        assert refs.index('exec_local.first') < refs.index('exec_local.second')

    def test_apply_failure_exit_code(self, home, tmp_path, capsys):
        path = tmp_path / 'fail.yaml'
        path.write_text("""
- {type: exec_local, name: broken, cmd: 'false'}
- {type: exec_local, name: after, cmd: 'true', depends_on: exec_local.broken}
""")
        assert engine_cli.apply_main(['-b', str(path)]) == 1
        err = capsys.readouterr().err
        assert 'exec_local.broken' in err
        assert 'skipped' in err

    def test_apply_dry_run(self, home, blueprint, tmp_path, capsys):
        assert engine_cli.apply_main(['-b', str(blueprint), '--dry-run']) == 0
        out = capsys.readouterr().out
        assert 'DRY-RUN APPLY' in out
        assert '+ [0] exec_local.first' in out
        assert '+ [1] exec_local.second' in out
        assert 'container.consul (disabled)' in out
        assert not (tmp_path / 'marker.txt').exists()
        assert not (home / 'state' / 'state.json').exists()

    def test_plan_json(self, home, blueprint, capsys):
        assert engine_cli.plan_main(['-b', str(blueprint), '--json-output']) == 0
        data = json.loads(capsys.readouterr().out)
        assert data['to_create'] == ['exec_local.first', 'exec_local.second']
        assert data['unchanged'] == ['container.consul']

    def test_list_excludes_disabled_and_non_loggable(self, home, blueprint, capsys):
        engine_cli.apply_main(['-b', str(blueprint)])
        capsys.readouterr()
        assert engine_cli.list_main(['--json-output']) == 0
        assert json.loads(capsys.readouterr().out)['handles'] == []

    def test_status(self, home, blueprint, capsys):
        engine_cli.apply_main(['-b', str(blueprint)])
        capsys.readouterr()
        assert engine_cli.status_main([]) == 0
        out = capsys.readouterr().out
        assert 'first.exec_local.shipyard.run' in out
        assert 'Created' in out

    def test_status_empty(self, home, capsys):
        assert engine_cli.status_main([]) == 0
        assert 'No resources in state' in capsys.readouterr().out

    def test_destroy_requires_confirmation(self, home, blueprint, capsys):
        engine_cli.apply_main(['-b', str(blueprint)])
        with patch('builtins.input', return_value='n'):
            assert engine_cli.destroy_main([]) == 1
        assert 'Aborted' in capsys.readouterr().out

    def test_destroy_yes(self, home, blueprint):
        engine_cli.apply_main(['-b', str(blueprint)])
        assert engine_cli.destroy_main(['--yes']) == 0
        state = json.loads((home / 'state' / 'state.json').read_text())
        assert state['resources'] == []

    def test_destroy_dry_run(self, home, blueprint, capsys):
        engine_cli.apply_main(['-b', str(blueprint)])
        capsys.readouterr()
        assert engine_cli.destroy_main(['--dry-run']) == 0
        out = capsys.readouterr().out
        assert 'DRY-RUN DESTROY: 3 resources' in out
        assert out.index('exec_local.second') < out.index('exec_local.first')


class TestCorruptState:
    """Tests for verbs reading an unreadable state file."""

    @pytest.fixture
    def corrupt_state(self, home):
        state_file = home / 'state' / 'state.json'
        state_file.parent.mkdir(parents=True)
        state_file.write_text('{not json')
        return state_file

    def test_apply(self, corrupt_state, blueprint, capsys):
        assert engine_cli.apply_main(['-b', str(blueprint)]) == 1
        assert 'Invalid state file' in capsys.readouterr().err
        assert corrupt_state.read_text() == '{not json'

    def test_plan(self, corrupt_state, blueprint, capsys):
        assert engine_cli.plan_main(['-b', str(blueprint)]) == 1
        assert 'Invalid state file' in capsys.readouterr().err

    def test_destroy(self, corrupt_state, capsys):
        assert engine_cli.destroy_main(['--yes']) == 1
        assert 'Invalid state file' in capsys.readouterr().err

    def test_destroy_dry_run(self, corrupt_state, capsys):
        assert engine_cli.destroy_main(['--dry-run']) == 1
        assert 'Invalid state file' in capsys.readouterr().err

    def test_list(self, corrupt_state, capsys):
        assert engine_cli.list_main([]) == 1
        assert 'Invalid state file' in capsys.readouterr().err

    def test_status(self, corrupt_state, capsys):
        assert engine_cli.status_main([]) == 1
        assert 'Invalid state file' in capsys.readouterr().err


class TestCancelOnInterrupt:
    """Tests for SIGINT handling during a run."""

    def test_first_sigint_cancels(self):
        scheduler = MagicMock()
        previous = signal.getsignal(signal.SIGINT)
        with engine_cli._cancel_on_interrupt(scheduler):
            handler = signal.getsignal(signal.SIGINT)
            handler(signal.SIGINT, None)
            scheduler.cancel.assert_called_once()
            assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
        assert signal.getsignal(signal.SIGINT) is previous
