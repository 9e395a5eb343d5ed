"""Tests for tfstate/models.py - state and plan parsing, drift classification."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from tfstate.models import (
    StateParseError,
    classify_drift,
    parse_plan,
    parse_resource_change,
    parse_state,
    state_address,
)


def _change(address, actions):
    rtype, name = address.split('.')[-2:]
    return {
        'address': address,
        'mode': 'managed',
        'type': rtype,
        'name': name,
        'provider_name': 'registry.opentofu.org/hashicorp/aws',
        'change': {'actions': actions, 'before': {}, 'after': {}},
    }


STATE_DOC = {
    'version': 4,
    'terraform_version': '1.6.0',
    'serial': 7,
    'lineage': 'abc',
    'outputs': {
        'ip': {'value': '10.0.0.5', 'type': 'string'},
        'password': {'value': 'hunter2', 'type': 'string', 'sensitive': True},
    },
    'resources': [
        {
            'mode': 'managed',
            'type': 'aws_instance',
            'name': 'web',
            'provider': 'provider["registry.opentofu.org/hashicorp/aws"]',
            'instances': [{
                'schema_version': 1,
                'attributes': {'id': 'i-1'},
                'dependencies': ['aws_security_group.web'],
            }],
        },
        {
            'module': 'module.network',
            'mode': 'data',
            'type': 'aws_vpc',
            'name': 'main',
            'provider': 'provider["registry.opentofu.org/hashicorp/aws"]',
            'instances': [{'attributes': {'id': 'vpc-1'}}],
        },
    ],
}


class TestParseState:
    """Test parse_state."""

    def test_parses_resources_and_outputs(self):
        state = parse_state(STATE_DOC)
        assert state.serial == 7
        assert [r.address for r in state.resources] == [
            'aws_instance.web',
            'module.network.data.aws_vpc.main',
        ]
        assert state.find('aws_instance.web').dependencies == ['aws_security_group.web']
        assert state.outputs['password'].sensitive is True
        assert state.outputs['ip'].value == '10.0.0.5'

    def test_empty_state(self):
        state = parse_state({'version': 4})
        assert state.resources == []
        assert state.outputs == {}

    def test_missing_version_raises(self):
        with pytest.raises(StateParseError, match="missing 'version'"):
            parse_state({'resources': []})

    def test_wrong_type_raises(self):
        with pytest.raises(StateParseError):
            parse_state({'version': 4, 'resources': {'not': 'a list'}})

    def test_not_a_document(self):
        with pytest.raises(StateParseError):
            parse_state(['a', 'list'])

    def test_address(self):
        assert state_address(None, 'managed', 'aws_instance', 'web') == 'aws_instance.web'
        assert state_address('module.a', 'data', 'aws_ami', 'x') == 'module.a.data.aws_ami.x'


class TestParsePlan:
    """Test parse_plan."""

    def test_parses_changes(self):
        plan = parse_plan({
            'format_version': '1.2',
            'resource_changes': [_change('aws_instance.web', ['update'])],
        })
        change = plan.resource_changes[0]
        assert change.address == 'aws_instance.web'
        assert change.resource_type == 'aws_instance'
        assert change.actions == ('update',)
        assert not change.is_noop

    def test_missing_resource_changes_is_empty(self):
        plan = parse_plan({'format_version': '1.2'})
        assert plan.resource_changes == []

    def test_missing_format_version_raises(self):
        with pytest.raises(StateParseError):
            parse_plan({'resource_changes': []})

    def test_unknown_action_raises(self):
        with pytest.raises(StateParseError, match='unknown action'):
            parse_resource_change(_change('aws_instance.web', ['explode']))

    def test_empty_actions_raises(self):
        with pytest.raises(StateParseError):
            parse_resource_change(_change('aws_instance.web', []))

    def test_to_dict_shape(self):
        change = parse_resource_change(_change('aws_instance.web', ['create']))
        d = change.to_dict()
        assert d['change']['actions'] == ['create']
        assert d['type'] == 'aws_instance'


class TestClassifyDrift:
    """Test classify_drift."""

    def test_all_noop_is_clean(self):
        plan = parse_plan({
            'format_version': '1.2',
            'resource_changes': [_change('aws_instance.a', ['no-op']), _change('aws_instance.b', ['no-op'])],
        })
        drifted, summary = classify_drift(plan.resource_changes)
        assert drifted == []
        assert summary.total_resources == 2
        assert summary.drifted_resources == 0

    def test_counts_by_action(self):
        plan = parse_plan({
            'format_version': '1.2',
            'resource_changes': [
                _change('aws_instance.a', ['no-op']),
                _change('aws_instance.b', ['create']),
                _change('aws_instance.c', ['update']),
                _change('aws_instance.d', ['delete']),
                _change('aws_instance.e', ['delete', 'create']),
                _change('data.aws_ami.f', ['read']),
            ],
        })
        drifted, summary = classify_drift(plan.resource_changes)
        assert [c.address for c in drifted] == [
            'aws_instance.b', 'aws_instance.c', 'aws_instance.d', 'aws_instance.e', 'data.aws_ami.f',
        ]
        assert summary.to_dict() == {
            'totalResources': 6,
            'driftedResources': 5,
            'addedResources': 2,
            'modifiedResources': 1,
            'deletedResources': 2,
        }

    def test_empty(self):
        drifted, summary = classify_drift([])
        assert drifted == []
        assert summary.drifted_resources == 0
