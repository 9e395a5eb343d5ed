"""Shared pytest fixtures for deploy-driver tests."""

import json
import stat
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


# Stand-in for the tofu binary. Behavior per verb is read from the JSON file
# named by FAKE_TOFU_CONTROL ({verb: {exit, stdout, stderr}}); every call is
# appended to FAKE_TOFU_CALLS as one JSON line.
FAKE_TOFU_SCRIPT = r'''
import json
import os
import sys
from pathlib import Path

STATE = {
    "version": 4,
    "terraform_version": "1.6.0",
    "serial": 3,
    "lineage": "fake-lineage",
    "outputs": {"instance_id": {"value": "i-0123456789", "type": "string"}},
    "resources": [{
        "mode": "managed",
        "type": "aws_instance",
        "name": "web",
        "provider": "provider[\"registry.opentofu.org/hashicorp/aws\"]",
        "instances": [{"schema_version": 1, "attributes": {"id": "i-0123456789", "instance_type": "t3.micro"}}],
    }],
}

PLAN = {
    "format_version": "1.2",
    "terraform_version": "1.6.0",
    "resource_changes": [{
        "address": "aws_instance.web",
        "mode": "managed",
        "type": "aws_instance",
        "name": "web",
        "provider_name": "registry.opentofu.org/hashicorp/aws",
        "change": {"actions": ["no-op"], "before": {"instance_type": "t3.micro"}, "after": {"instance_type": "t3.micro"}},
    }],
}

args = sys.argv[1:]
verb = args[0] if args else ''

calls = os.environ.get('FAKE_TOFU_CALLS')
if calls:
    with open(calls, 'a', encoding='utf-8') as f:
        f.write(json.dumps({'args': args, 'cwd': os.getcwd()}) + '\n')

control = {}
control_path = os.environ.get('FAKE_TOFU_CONTROL')
if control_path and os.path.exists(control_path):
    with open(control_path, encoding='utf-8') as f:
        control = json.load(f)
behavior = control.get(verb, {})
code = behavior.get('exit', 0)

if verb == 'version':
    print(behavior.get('stdout', json.dumps({'terraform_version': '1.6.0'})))
elif verb == 'init':
    print(behavior.get('stdout', 'OpenTofu has been successfully initialized!'))
elif verb == 'plan':
    out = next((a[len('-out='):] for a in args if a.startswith('-out=')), None)
    if out and code in (0, 2):
        Path(out).write_text('fake-plan')
    print(behavior.get('stdout', 'Plan: 1 to add, 0 to change, 0 to destroy.'))
elif verb == 'apply':
    if '-refresh-only' not in args and not Path(args[-1]).exists():
        print(f'Error: Failed to load "{args[-1]}" as a plan file', file=sys.stderr)
        sys.exit(1)
    if code == 0:
        Path('terraform.tfstate').write_text(json.dumps(STATE))
    print(behavior.get('stdout', 'Apply complete! Resources: 1 added, 0 changed, 0 destroyed.'))
elif verb == 'destroy':
    if code == 0:
        Path('terraform.tfstate').write_text(json.dumps({**STATE, 'resources': [], 'outputs': {}}))
    print(behavior.get('stdout', 'Destroy complete! Resources: 1 destroyed.'))
elif verb == 'show':
    print(behavior.get('stdout', json.dumps(PLAN)))
elif verb == 'output':
    print(behavior.get('stdout', json.dumps(STATE['outputs'])))
else:
    print(behavior.get('stdout', ''))

if behavior.get('stderr'):
    print(behavior['stderr'], file=sys.stderr)
sys.exit(code)
'''


class FakeTofu:
    """Handle on the fake tool binary written by the fake_tofu fixture."""

    def __init__(self, root: Path):
        self.path = root / 'bin' / 'tofu'
        self.control_file = root / 'tofu-control.json'
        self.calls_file = root / 'tofu-calls.jsonl'
        self._control: dict = {}

    def control(self, verb: str, exit: int = 0, stdout=None, stderr: str = '') -> None:
        """Set the behavior of one verb."""
        entry: dict = {'exit': exit}
        if stdout is not None:
            entry['stdout'] = stdout if isinstance(stdout, str) else json.dumps(stdout)
        if stderr:
            entry['stderr'] = stderr
        self._control[verb] = entry
        self.control_file.write_text(json.dumps(self._control))

    def calls(self) -> list[list[str]]:
        """Argument lists of every invocation so far."""
        if not self.calls_file.exists():
            return []
        return [json.loads(line)['args'] for line in self.calls_file.read_text().splitlines()]

    def verbs(self) -> list[str]:
        return [args[0] for args in self.calls()]


@pytest.fixture
def fake_tofu(tmp_path, monkeypatch):
    """Executable fake of the tool binary."""
    fake = FakeTofu(tmp_path)
    fake.path.parent.mkdir(parents=True)
    fake.path.write_text(f"#!{sys.executable}\n{FAKE_TOFU_SCRIPT}")
    fake.path.chmod(fake.path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv('FAKE_TOFU_CONTROL', str(fake.control_file))
    monkeypatch.setenv('FAKE_TOFU_CALLS', str(fake.calls_file))
    return fake


EC2_TEMPLATE = """
name: EC2 instance
description: Single EC2 instance
terraform_code: |
  resource "aws_instance" "web" {
    ami           = var.ami_id
    instance_type = var.instance_type
  }
variables:
  - name: instance_type
    type: string
    description: Instance size
    default: t3.micro
  - name: ami_id
    type: string
    description: AMI to boot
"""


@pytest.fixture
def templates_dir(tmp_path):
    """Templates directory holding ec2-instance.yaml."""
    root = tmp_path / 'templates'
    root.mkdir()
    (root / 'ec2-instance.yaml').write_text(EC2_TEMPLATE)
    return root


@pytest.fixture
def driver_config(tmp_path, fake_tofu, templates_dir):
    """DriverConfig pointing at tmp directories and the fake tool."""
    from config import DriverConfig
    return DriverConfig(
        working_dir=tmp_path / 'work',
        state_dir=tmp_path / '.states',
        tool_path=str(fake_tofu.path),
        templates_dir=templates_dir,
    )


class FakeTransport:
    """In-memory transport recording sent frames."""

    def __init__(self, fail: bool = False):
        self.sent: list[str] = []
        self.closed_with = None
        self.fail = fail

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError("transport closed")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = '') -> None:
        self.closed_with = (code, reason)

    def messages(self, message_type=None) -> list[dict]:
        decoded = [json.loads(m) for m in self.sent]
        if message_type is None:
            return decoded
        return [m for m in decoded if m['type'] == message_type]


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances."""
    return FakeTransport


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch):
    """Keep the developer's environment out of config loading."""
    for var in ('DEPLOY_DRIVER_CONFIG', 'TERRAFORM_WORKING_DIR', 'TERRAFORM_PATH',
                'DEPLOY_DRIVER_TEMPLATES', 'DEPLOY_DRIVER_TEMPLATE_SERVER', 'DEPLOY_DRIVER_PORT'):
        monkeypatch.delenv(var, raising=False)
