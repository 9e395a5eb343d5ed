"""Tests for OpenTofu action classes.

Argument building is checked directly; execution runs against the fake
tool binary from conftest.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from actions import (
    StaticEnvironmentProvider,
    TofuApplyAction,
    TofuContext,
    TofuDestroyAction,
    TofuImportAction,
    TofuInitAction,
    TofuPlanAction,
    TofuRefreshAction,
    TofuShowAction,
    TofuTaintAction,
    TofuUntaintAction,
    tool_environment,
)
from common import DRIVER, STDOUT, ProcessExitError, ProcessSpawnError


class TestArgs:
    """Test command line construction."""

    def test_plan_default(self):
        assert TofuPlanAction().args() == ['plan', '-input=false', '-no-color', '-out=tfplan']

    def test_plan_detailed_exitcode(self):
        action = TofuPlanAction(out='drift-plan', detailed_exitcode=True)
        assert '-detailed-exitcode' in action.args()
        assert '-out=drift-plan' in action.args()
        assert action.ok_codes == (0, 2)

    def test_plan_detailed_does_not_leak_to_other_instances(self):
        TofuPlanAction(detailed_exitcode=True)
        assert TofuPlanAction().ok_codes == (0,)

    def test_apply_uses_saved_plan(self):
        assert TofuApplyAction().args()[-1] == 'tfplan'

    def test_destroy_auto_approves(self):
        assert '-auto-approve' in TofuDestroyAction().args()

    def test_refresh_only(self):
        args = TofuRefreshAction().args()
        assert args[:3] == ['apply', '-refresh-only', '-auto-approve']

    def test_show_json(self):
        assert TofuShowAction(plan_file='drift-plan').args() == ['show', '-json', '-no-color', 'drift-plan']

    def test_resource_actions(self):
        assert TofuImportAction(address='aws_instance.web', resource_id='i-1').args()[-2:] == ['aws_instance.web', 'i-1']
        assert TofuTaintAction(address='aws_instance.web').args() == ['taint', '-no-color', 'aws_instance.web']
        assert TofuUntaintAction(address='aws_instance.web').args() == ['untaint', '-no-color', 'aws_instance.web']


class TestEnvironment:
    """Test tool environment construction."""

    def test_disables_prompts(self):
        env = tool_environment({'AWS_REGION': 'eu-west-1'})
        assert env['TF_INPUT'] == '0'
        assert env['TF_IN_AUTOMATION'] == '1'
        assert env['AWS_REGION'] == 'eu-west-1'

    def test_static_provider_copies(self):
        provider = StaticEnvironmentProvider({'AWS_PROFILE': 'deploy'})
        env = provider.environment_for('web-1')
        env['AWS_PROFILE'] = 'changed'
        assert provider.environment_for('web-2') == {'AWS_PROFILE': 'deploy'}


class TestRun:
    """Test running actions against the fake tool."""

    def _ctx(self, fake_tofu, cwd, lines):
        return TofuContext(
            binary=str(fake_tofu.path),
            cwd=cwd,
            env=tool_environment(),
            on_output=lambda stream, text: lines.append((stream, text)),
        )

    def test_run_streams_and_brackets_output(self, fake_tofu, tmp_path):
        lines = []
        result = asyncio.run(TofuInitAction().run(self._ctx(fake_tofu, tmp_path, lines)))
        assert result.success is True
        assert lines[0] == (DRIVER, 'Running: tofu init -input=false -no-color')
        assert (STDOUT, 'OpenTofu has been successfully initialized!') in lines
        assert lines[-1] == (DRIVER, 'Command completed successfully')

    def test_plan_writes_artifact(self, fake_tofu, tmp_path):
        asyncio.run(TofuPlanAction().run(self._ctx(fake_tofu, tmp_path, [])))
        assert (tmp_path / 'tfplan').exists()

    def test_detailed_exitcode_changes_present(self, fake_tofu, tmp_path):
        fake_tofu.control('plan', exit=2)
        result = asyncio.run(TofuPlanAction(detailed_exitcode=True).run(self._ctx(fake_tofu, tmp_path, [])))
        assert result.context_updates['changes_present'] is True
        assert result.context_updates['exit_code'] == 2

    def test_failure_propagates(self, fake_tofu, tmp_path):
        fake_tofu.control('plan', exit=1, stderr='Error: invalid reference')
        lines = []
        with pytest.raises(ProcessExitError) as exc_info:
            asyncio.run(TofuPlanAction().run(self._ctx(fake_tofu, tmp_path, lines)))
        assert exc_info.value.code == 1
        assert ('stderr', 'Error: invalid reference') in lines

    def test_missing_binary(self, tmp_path):
        ctx = TofuContext(binary=str(tmp_path / 'missing'), cwd=tmp_path)
        with pytest.raises(ProcessSpawnError):
            asyncio.run(TofuInitAction().run(ctx))
