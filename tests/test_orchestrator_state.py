"""Tests for orchestrator/state.py and orchestrator/store.py."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from orchestrator.state import (
    ERROR,
    PENDING,
    RUNNING,
    SUCCESS,
    Deployment,
    InvalidTransitionError,
    Operation,
)
from orchestrator.store import (
    DEPLOYMENTS,
    DRIFT_RESULTS,
    OPERATIONS,
    JsonFileStore,
    StoreError,
)


class TestOperation:
    """Test Operation state machine."""

    def test_starts_pending(self):
        op = Operation(kind='plan', deployment_id='web-1')
        assert op.status == PENDING
        assert not op.is_terminal
        assert op.end_time is None

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            Operation(kind='import', deployment_id='web-1')

    def test_success_path(self):
        op = Operation(kind='plan', deployment_id='web-1')
        op.start()
        assert op.status == RUNNING
        op.succeed(0)
        assert op.status == SUCCESS
        assert op.exit_code == 0
        assert op.end_time is not None

    def test_fail_appends_error(self):
        op = Operation(kind='apply', deployment_id='web-1')
        op.start()
        op.fail('tofu apply failed with exit code 1', 1)
        assert op.status == ERROR
        assert op.log_lines[-1] == 'Error: tofu apply failed with exit code 1'

    def test_terminal_is_final(self):
        op = Operation(kind='plan', deployment_id='web-1')
        op.start()
        op.succeed()
        with pytest.raises(InvalidTransitionError):
            op.fail('late failure')
        with pytest.raises(InvalidTransitionError):
            op.start()
        assert op.status == SUCCESS

    def test_cannot_start_twice(self):
        op = Operation(kind='plan', deployment_id='web-1')
        op.start()
        with pytest.raises(InvalidTransitionError):
            op.start()

    def test_round_trip_keeps_logs(self):
        op = Operation(kind='destroy', deployment_id='web-1')
        op.log.append('line one')
        op.start()
        op.succeed(0)
        restored = Operation.from_dict(json.loads(json.dumps(op.to_dict())))
        assert restored.id == op.id
        assert restored.status == SUCCESS
        assert restored.log_lines == ['line one']
        assert restored.exit_code == 0


class TestDeployment:
    """Test Deployment records."""

    def test_defaults(self):
        deployment = Deployment(name='web-1')
        assert deployment.status == PENDING
        assert deployment.last_action is None

    def test_from_dict_tolerates_missing_fields(self):
        deployment = Deployment.from_dict({'name': 'web-1', 'status': 'planned'})
        assert deployment.status == 'planned'
        assert deployment.variables == {}


class TestJsonFileStore:
    """Test JsonFileStore."""

    def test_insert_and_get(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.insert(OPERATIONS, {'id': 'op-1', 'status': 'pending'})
        assert store.get(OPERATIONS, 'op-1') == {'id': 'op-1', 'status': 'pending'}
        assert (tmp_path / 'operations' / 'op-1.json').exists()

    def test_insert_duplicate_raises(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.insert(OPERATIONS, {'id': 'op-1'})
        with pytest.raises(StoreError):
            store.insert(OPERATIONS, {'id': 'op-1'})

    def test_update_merges(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.insert(OPERATIONS, {'id': 'op-1', 'status': 'pending', 'kind': 'plan'})
        record = store.update(OPERATIONS, 'op-1', {'status': 'success'})
        assert record == {'id': 'op-1', 'status': 'success', 'kind': 'plan'}

    def test_update_missing_raises(self, tmp_path):
        with pytest.raises(StoreError):
            JsonFileStore(tmp_path).update(OPERATIONS, 'nope', {'status': 'error'})

    def test_deployments_keyed_by_name(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.upsert(DEPLOYMENTS, {'name': 'web-1', 'status': 'pending'})
        store.upsert(DEPLOYMENTS, {'name': 'web-1', 'status': 'planned'})
        assert store.get(DEPLOYMENTS, 'web-1')['status'] == 'planned'

    def test_select_matches_fields(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.insert(OPERATIONS, {'id': 'a', 'deployment_id': 'web-1', 'status': 'success'})
        store.insert(OPERATIONS, {'id': 'b', 'deployment_id': 'web-2', 'status': 'running'})
        store.insert(OPERATIONS, {'id': 'c', 'deployment_id': 'web-1', 'status': 'running'})
        assert [r['id'] for r in store.select(OPERATIONS, deployment_id='web-1')] == ['a', 'c']
        assert [r['id'] for r in store.select(OPERATIONS, status='running')] == ['b', 'c']
        assert store.select(DRIFT_RESULTS) == []

    def test_rejects_unsafe_ids(self, tmp_path):
        store = JsonFileStore(tmp_path)
        with pytest.raises(StoreError):
            store.insert(OPERATIONS, {'id': '../escape'})
        with pytest.raises(StoreError):
            store.get('unknown', 'x')

    def test_corrupt_record_raises(self, tmp_path):
        store = JsonFileStore(tmp_path)
        (tmp_path / 'operations').mkdir()
        (tmp_path / 'operations' / 'bad.json').write_text('{')
        with pytest.raises(StoreError, match='Corrupt'):
            store.get(OPERATIONS, 'bad')

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.insert(OPERATIONS, {'id': 'op-1'})
        store.update(OPERATIONS, 'op-1', {'status': 'success'})
        assert [p.name for p in (tmp_path / 'operations').iterdir()] == ['op-1.json']
