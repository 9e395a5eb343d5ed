"""Tests for validation module."""

from unittest.mock import MagicMock, patch

import requests

from config import DriverConfig
from validation import (
    find_tool,
    format_preflight_results,
    get_tool_version,
    run_preflight_checks,
    validate_directory_writable,
    validate_template_server,
    validate_templates_dir,
    validate_tool,
)


class TestFindTool:
    """Tests for tool binary lookup."""

    def test_explicit_path(self, fake_tofu):
        assert find_tool(str(fake_tofu.path)) == str(fake_tofu.path)

    def test_missing_path(self, tmp_path):
        assert find_tool(str(tmp_path / 'tofu')) is None

    def test_not_on_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv('PATH', str(tmp_path))
        assert find_tool('tofu') is None


class TestToolVersion:
    """Tests for version probing."""

    def test_json_version(self, fake_tofu):
        assert get_tool_version(str(fake_tofu.path)) == (True, '1.6.0')

    def test_plain_text_version(self, fake_tofu):
        fake_tofu.control('version', stdout='OpenTofu v1.5.7\non linux_amd64')
        assert get_tool_version(str(fake_tofu.path)) == (True, '1.5.7')

    def test_version_failure(self, fake_tofu):
        fake_tofu.control('version', exit=1, stderr='broken install')
        ok, message = get_tool_version(str(fake_tofu.path))
        assert ok is False
        assert 'broken install' in message

    def test_validate_tool_missing(self, tmp_path):
        errors, version = validate_tool(str(tmp_path / 'tofu'))
        assert version is None
        assert 'not found' in errors[0]
        assert 'TERRAFORM_PATH' in errors[0]

    def test_validate_tool_ok(self, fake_tofu):
        assert validate_tool(str(fake_tofu.path)) == ([], '1.6.0')


class TestDirectories:
    """Tests for working directory checks."""

    def test_creates_missing_directory(self, tmp_path):
        target = tmp_path / 'work' / 'nested'
        assert validate_directory_writable(target, 'Working directory') == []
        assert target.is_dir()
        assert list(target.iterdir()) == []

    def test_unwritable(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('x')
        errors = validate_directory_writable(blocker / 'sub', 'State directory')
        assert len(errors) == 1
        assert 'State directory' in errors[0]

    def test_templates_dir(self, templates_dir, tmp_path):
        assert validate_templates_dir(templates_dir) == ([], 1)
        errors, count = validate_templates_dir(tmp_path / 'missing')
        assert count == 0
        assert 'does not exist' in errors[0]


class TestTemplateServer:
    """Tests for template server reachability."""

    @patch('validation.requests.get')
    def test_reachable(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200)
        assert validate_template_server('http://dashboard:5000/api/') == []
        assert mock_get.call_args[0][0] == 'http://dashboard:5000/api/templates'

    @patch('validation.requests.get')
    def test_connection_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError()
        errors = validate_template_server('http://dashboard:5000')
        assert 'Cannot connect' in errors[0]

    @patch('validation.requests.get')
    def test_timeout(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout()
        assert 'Timeout' in validate_template_server('http://dashboard:5000')[0]

    @patch('validation.requests.get')
    def test_server_error(self, mock_get):
        mock_get.return_value = MagicMock(status_code=503)
        assert '503' in validate_template_server('http://dashboard:5000')[0]


class TestPreflight:
    """Tests for run_preflight_checks() and its formatting."""

    def test_all_pass(self, driver_config):
        success, results = run_preflight_checks(driver_config)
        assert success is True
        assert results['tool']['passed'] == [f"{driver_config.tool_path} 1.6.0"]
        assert len(results['workspace']['passed']) == 2
        assert results['templates']['passed'] == [f"1 template(s) in {driver_config.templates_dir}"]

    def test_no_template_source(self, fake_tofu, tmp_path):
        config = DriverConfig(
            working_dir=tmp_path / 'work',
            state_dir=tmp_path / '.states',
            tool_path=str(fake_tofu.path),
        )
        success, results = run_preflight_checks(config)
        assert success is False
        assert 'No template source' in results['templates']['failed'][0]

    def test_format(self):
        results = {
            'tool': {'passed': ['tofu 1.6.0'], 'failed': []},
            'workspace': {'passed': [], 'failed': ['Working directory /x is not writable\n  Check ownership']},
            'templates': {'passed': [], 'failed': []},
        }
        output = format_preflight_results(results)
        assert '✓ tofu 1.6.0' in output
        assert '✗ Working directory /x is not writable' in output
        assert '    Check ownership' in output
        assert 'Some checks failed' in output
        assert 'Templates:' not in output

    def test_format_all_passed(self):
        results = {'tool': {'passed': ['tofu 1.6.0'], 'failed': []}}
        assert 'All checks passed' in format_preflight_results(results)
