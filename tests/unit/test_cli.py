"""
Unit tests for the command line interface (reback/cli.py).
"""

import json
from pathlib import Path
from unittest.mock import call, patch

import pytest
from click.testing import CliRunner

from reback.cli import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, cli


@pytest.fixture(autouse=True)
def quiet_logging(clean_env):
    """Keep CLI runs from reconfiguring the root logger."""
    with patch('reback.cli.configure_logging') as mock_configure:
        yield mock_configure


@pytest.fixture
def runner():
    return CliRunner()


def write_settings(path, data):
    path.write_text(json.dumps(data))
    return str(path)


class TestBackupCommand:
    """Test the backup command and exit status."""

    def test_backup_success(self, runner, settings_file, settings_data):
        """Test a successful backup exits 0 and writes the artifact."""
        result = runner.invoke(cli, ['-c', str(settings_file), 'backup'])

        assert result.exit_code == EXIT_OK
        names = [p.name for p in (Path(settings_data['backup_dir']) / 'site').iterdir()]
        assert len(names) == 1
        assert names[0].startswith('site_') and names[0].endswith('.tar.gz')

    def test_backup_failure_exits_1(self, runner, tmp_path, settings_data):
        settings_data['elements'][0]['params']['path'] = str(tmp_path / 'missing')
        path = write_settings(tmp_path / 'settings.json', settings_data)

        result = runner.invoke(cli, ['-c', path, 'backup'])

        assert result.exit_code == EXIT_FAILED

    def test_missing_settings_exits_2(self, runner, tmp_path):
        result = runner.invoke(cli, ['-c', str(tmp_path / 'nope.json'), 'backup'])

        assert result.exit_code == EXIT_CONFIG

    def test_settings_from_environment(self, runner, settings_file, monkeypatch):
        monkeypatch.setenv('REBACK_SETTINGS', str(settings_file))

        assert runner.invoke(cli, ['backup']).exit_code == EXIT_OK

    def test_logging_uses_settings(self, runner, settings_data, tmp_path, quiet_logging):
        settings_data['log_level'] = 'warning'
        settings_data['log_dir'] = str(tmp_path / 'logs')
        path = write_settings(tmp_path / 'settings.json', settings_data)

        runner.invoke(cli, ['-c', path, 'prune'])

        assert quiet_logging.call_args_list[-1][0] == ('WARNING', tmp_path / 'logs')

    def test_verbose_logging(self, runner, settings_file, quiet_logging):
        runner.invoke(cli, ['-c', str(settings_file), '-v', 'prune'])

        assert quiet_logging.call_args_list == [call('DEBUG')]


class TestRestoreCommand:
    """Test the restore command."""

    def test_restore_round_trip(self, runner, settings_file, settings_data):
        """Test restore brings back the captured folder contents."""
        site = Path(settings_data['elements'][0]['params']['path'])
        runner.invoke(cli, ['-c', str(settings_file), 'backup'])
        (site / 'index.html').write_text('broken')

        result = runner.invoke(cli, ['-c', str(settings_file), 'restore', 'site'])

        assert result.exit_code == EXIT_OK
        assert (site / 'index.html').read_text() == '<html></html>'

    def test_restore_unknown_title(self, runner, settings_file):
        result = runner.invoke(cli, ['-c', str(settings_file), 'restore', 'ghost'])

        assert result.exit_code == EXIT_FAILED

    def test_artifact_needs_single_title(self, runner, settings_file):
        result = runner.invoke(cli, ['-c', str(settings_file), 'restore', '--artifact', 'x.tar.gz'])

        assert result.exit_code == 2
        assert 'exactly one TITLE' in result.output


class TestOtherCommands:
    """Test prune, list, check and schedule."""

    def test_prune(self, runner, settings_file):
        assert runner.invoke(cli, ['-c', str(settings_file), 'prune']).exit_code == EXIT_OK

    def test_list(self, runner, settings_file):
        runner.invoke(cli, ['-c', str(settings_file), 'backup'])

        result = runner.invoke(cli, ['-c', str(settings_file), 'list'])

        assert result.exit_code == EXIT_OK
        assert 'site (folder)' in result.output
        assert 'local   site_' in result.output

    def test_list_unknown_title(self, runner, settings_file):
        assert runner.invoke(cli, ['-c', str(settings_file), 'list', 'ghost']).exit_code == EXIT_FAILED

    def test_check_without_remote(self, runner, settings_file):
        result = runner.invoke(cli, ['-c', str(settings_file), 'check'])

        assert result.exit_code == EXIT_OK
        assert 'site: folder, enabled, local 7d, remote 30d' in result.output
        assert 'remote: not configured' in result.output

    def test_check_reports_rejected_elements(self, runner, tmp_path, settings_data):
        settings_data['elements'].append({'element_title': 'bad', 'params': {'type': 'folder', 'path': '/x'}})
        path = write_settings(tmp_path / 'settings.json', settings_data)

        result = runner.invoke(cli, ['-c', path, 'check'])

        assert result.exit_code == EXIT_FAILED
        assert 'bad: INVALID' in result.output

    def test_check_remote(self, runner, tmp_path, settings_data, mock_s3):
        settings_data.update({'s3_bucket': 'test-bucket', 's3_access': 'k', 's3_secret': 's'})
        path = write_settings(tmp_path / 'settings.json', settings_data)

        result = runner.invoke(cli, ['-c', path, 'check'])

        assert result.exit_code == EXIT_OK
        assert 'bucket test-bucket reachable' in result.output

    def test_check_remote_unreachable(self, runner, tmp_path, settings_data, mock_s3):
        settings_data.update({'s3_bucket': 'other-bucket', 's3_access': 'k', 's3_secret': 's'})
        path = write_settings(tmp_path / 'settings.json', settings_data)

        result = runner.invoke(cli, ['-c', path, 'check'])

        assert result.exit_code == EXIT_FAILED
        assert 'Bucket does not exist' in result.output

    @patch('reback.scheduler.start_scheduler')
    @patch('reback.scheduler.init_scheduler')
    def test_schedule(self, mock_init, mock_start, runner, settings_file):
        result = runner.invoke(cli, ['-c', str(settings_file), 'schedule'])

        assert result.exit_code == EXIT_OK
        assert mock_init.call_args[0][0] == settings_file
        mock_start.assert_called_once()

    def test_version(self, runner):
        result = runner.invoke(cli, ['--version'])

        assert result.exit_code == 0
        assert 'reback' in result.output
