"""Typed views of the tool's machine-readable documents.

Two documents are parsed:
- the state file (terraform.tfstate, format version 4)
- the JSON plan representation emitted by `show -json <planfile>`

Parsing is strict about structure (wrong types raise StateParseError) and
lenient about optional keys the tool omits when empty.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from common import utc_now

NO_OP = 'no-op'
CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
READ = 'read'
ACTIONS = frozenset({NO_OP, CREATE, UPDATE, DELETE, READ})

DRIFT_IN_PROGRESS = 'in-progress'
DRIFT_COMPLETED = 'completed'
DRIFT_FAILED = 'failed'


class StateParseError(ValueError):
    """Document does not match the expected structure."""


def _expect(value, kind, where: str):
    if not isinstance(value, kind):
        name = kind.__name__ if isinstance(kind, type) else '/'.join(k.__name__ for k in kind)
        raise StateParseError(f"{where}: expected {name}, got {type(value).__name__}")
    return value


def _require(data: dict, key: str, kind, where: str):
    if key not in data:
        raise StateParseError(f"{where}: missing '{key}'")
    return _expect(data[key], kind, f"{where}.{key}")


@dataclass
class ResourceInstance:
    """One instance of a resource (count/for_each produce several)."""
    attributes: dict
    schema_version: int = 0
    index_key: Optional[Any] = None
    status: str = 'untainted'
    dependencies: list[str] = field(default_factory=list)


@dataclass
class StateResource:
    """A resource block as recorded in state."""
    address: str
    mode: str
    type: str
    name: str
    provider: str
    module: Optional[str] = None
    instances: list[ResourceInstance] = field(default_factory=list)

    @property
    def dependencies(self) -> list[str]:
        deps: list[str] = []
        for inst in self.instances:
            deps.extend(d for d in inst.dependencies if d not in deps)
        return deps


@dataclass
class OutputValue:
    value: Any
    type: Any = None
    sensitive: bool = False


@dataclass
class TofuState:
    """Parsed state file."""
    version: int
    terraform_version: str
    serial: int
    lineage: str
    outputs: dict[str, OutputValue] = field(default_factory=dict)
    resources: list[StateResource] = field(default_factory=list)

    def find(self, address: str) -> Optional[StateResource]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None


@dataclass
class ResourceChange:
    """One entry of a plan's resource_changes."""
    address: str
    resource_type: str
    resource_name: str
    provider: str
    actions: tuple[str, ...]
    mode: str = 'managed'
    module_address: Optional[str] = None
    before: Any = None
    after: Any = None
    after_unknown: Any = None

    @property
    def is_noop(self) -> bool:
        return self.actions == (NO_OP,)

    def to_dict(self) -> dict:
        d = {
            'address': self.address,
            'mode': self.mode,
            'type': self.resource_type,
            'name': self.resource_name,
            'provider_name': self.provider,
            'change': {
                'actions': list(self.actions),
                'before': self.before,
                'after': self.after,
                'after_unknown': self.after_unknown,
            },
        }
        if self.module_address:
            d['module_address'] = self.module_address
        return d


@dataclass
class TofuPlan:
    """Parsed JSON plan representation."""
    format_version: str
    terraform_version: str
    resource_changes: list[ResourceChange] = field(default_factory=list)
    resource_drift: list[ResourceChange] = field(default_factory=list)
    output_changes: dict = field(default_factory=dict)
    planned_values: dict = field(default_factory=dict)
    prior_state: dict = field(default_factory=dict)


@dataclass
class DriftSummary:
    total_resources: int = 0
    drifted_resources: int = 0
    added_resources: int = 0
    modified_resources: int = 0
    deleted_resources: int = 0

    def to_dict(self) -> dict:
        return {
            'totalResources': self.total_resources,
            'driftedResources': self.drifted_resources,
            'addedResources': self.added_resources,
            'modifiedResources': self.modified_resources,
            'deletedResources': self.deleted_resources,
        }


@dataclass
class DriftResult:
    """Outcome of one drift check; immutable once completed or failed."""
    deployment_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utc_now)
    status: str = DRIFT_IN_PROGRESS
    changed_resources: list[ResourceChange] = field(default_factory=list)
    summary: DriftSummary = field(default_factory=DriftSummary)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            'id': self.id,
            'deploymentId': self.deployment_id,
            'timestamp': self.timestamp,
            'status': self.status,
            'driftedResources': [c.to_dict() for c in self.changed_resources],
            'summary': self.summary.to_dict(),
        }
        if self.error:
            d['error'] = self.error
        return d


def state_address(module: Optional[str], mode: str, rtype: str, name: str) -> str:
    """Compute a resource address the way the tool prints it."""
    parts = []
    if module:
        parts.append(module)
    if mode == 'data':
        parts.append('data')
    parts.append(f"{rtype}.{name}")
    return '.'.join(parts)


def _parse_instance(data, where: str) -> ResourceInstance:
    _expect(data, dict, where)
    attributes = data.get('attributes')
    if attributes is None:
        attributes = {}
    return ResourceInstance(
        attributes=_expect(attributes, dict, f"{where}.attributes"),
        schema_version=int(data.get('schema_version', 0)),
        index_key=data.get('index_key'),
        status=data.get('status') or 'untainted',
        dependencies=list(_expect(data.get('dependencies') or [], list, f"{where}.dependencies")),
    )


def parse_state(doc) -> TofuState:
    """Parse a state file document.

    Raises:
        StateParseError: If required keys are missing or mistyped
    """
    _expect(doc, dict, 'state')
    version = _require(doc, 'version', int, 'state')
    resources = []
    for i, res in enumerate(_expect(doc.get('resources') or [], list, 'state.resources')):
        where = f"state.resources[{i}]"
        _expect(res, dict, where)
        mode = res.get('mode', 'managed')
        rtype = _require(res, 'type', str, where)
        name = _require(res, 'name', str, where)
        module = res.get('module')
        resources.append(StateResource(
            address=state_address(module, mode, rtype, name),
            mode=mode,
            type=rtype,
            name=name,
            provider=str(res.get('provider', '')),
            module=module,
            instances=[
                _parse_instance(inst, f"{where}.instances[{j}]")
                for j, inst in enumerate(_expect(res.get('instances') or [], list, f"{where}.instances"))
            ],
        ))

    outputs = {}
    for key, out in _expect(doc.get('outputs') or {}, dict, 'state.outputs').items():
        _expect(out, dict, f"state.outputs.{key}")
        outputs[key] = OutputValue(
            value=out.get('value'),
            type=out.get('type'),
            sensitive=bool(out.get('sensitive', False)),
        )

    return TofuState(
        version=version,
        terraform_version=str(doc.get('terraform_version', '')),
        serial=int(doc.get('serial', 0)),
        lineage=str(doc.get('lineage', '')),
        outputs=outputs,
        resources=resources,
    )


def parse_resource_change(data, where: str = 'resource_change') -> ResourceChange:
    _expect(data, dict, where)
    change = _require(data, 'change', dict, where)
    actions = _require(change, 'actions', list, f"{where}.change")
    if not actions:
        raise StateParseError(f"{where}.change.actions: empty")
    for action in actions:
        if action not in ACTIONS:
            raise StateParseError(f"{where}.change.actions: unknown action {action!r}")
    return ResourceChange(
        address=_require(data, 'address', str, where),
        resource_type=str(data.get('type', '')),
        resource_name=str(data.get('name', '')),
        provider=str(data.get('provider_name', '')),
        actions=tuple(actions),
        mode=data.get('mode', 'managed'),
        module_address=data.get('module_address'),
        before=change.get('before'),
        after=change.get('after'),
        after_unknown=change.get('after_unknown'),
    )


def parse_plan(doc) -> TofuPlan:
    """Parse the JSON plan representation.

    resource_changes is omitted by the tool when a configuration has no
    resources; that is an empty plan, not an error.

    Raises:
        StateParseError: If required keys are missing or mistyped
    """
    _expect(doc, dict, 'plan')
    format_version = _require(doc, 'format_version', str, 'plan')
    changes = [
        parse_resource_change(c, f"plan.resource_changes[{i}]")
        for i, c in enumerate(_expect(doc.get('resource_changes') or [], list, 'plan.resource_changes'))
    ]
    drift = [
        parse_resource_change(c, f"plan.resource_drift[{i}]")
        for i, c in enumerate(_expect(doc.get('resource_drift') or [], list, 'plan.resource_drift'))
    ]
    return TofuPlan(
        format_version=format_version,
        terraform_version=str(doc.get('terraform_version', '')),
        resource_changes=changes,
        resource_drift=drift,
        output_changes=_expect(doc.get('output_changes') or {}, dict, 'plan.output_changes'),
        planned_values=_expect(doc.get('planned_values') or {}, dict, 'plan.planned_values'),
        prior_state=_expect(doc.get('prior_state') or {}, dict, 'plan.prior_state'),
    )


def classify_drift(changes: list[ResourceChange]) -> tuple[list[ResourceChange], DriftSummary]:
    """Split out drifted resources and count them by action kind.

    A change is drifted unless its action list is exactly ["no-op"]. A
    replacement (delete+create) counts as both added and deleted.
    """
    drifted = [c for c in changes if not c.is_noop]
    summary = DriftSummary(
        total_resources=len(changes),
        drifted_resources=len(drifted),
        added_resources=sum(1 for c in drifted if CREATE in c.actions),
        modified_resources=sum(1 for c in drifted if UPDATE in c.actions),
        deleted_resources=sum(1 for c in drifted if DELETE in c.actions),
    )
    return drifted, summary
