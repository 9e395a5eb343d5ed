"""Operation and deployment records.

Operations track one tool-backed lifecycle step (plan, apply, destroy,
drift) through pending → running → success|error. Terminal operations are
immutable. Deployments are keyed by name and carry the status of their
last completed operation.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from common import LogBuffer, utc_now

logger = logging.getLogger(__name__)

OPERATION_KINDS = ('plan', 'apply', 'destroy', 'drift')

PENDING = 'pending'
RUNNING = 'running'
SUCCESS = 'success'
ERROR = 'error'
TERMINAL_STATUSES = frozenset({SUCCESS, ERROR})

# Deployment statuses
PLANNED = 'planned'
DESTROYED = 'destroyed'


class InvalidTransitionError(Exception):
    """Operation status change not allowed by the state machine."""


@dataclass
class Operation:
    """One invocation of plan/apply/destroy/drift against a deployment.

    Attributes:
        id: Operation identifier (uuid4)
        kind: plan, apply, destroy or drift
        deployment_id: Deployment name
        status: pending, running, success or error
        log: Append-only output of every tool run in this operation
        start_time: ISO timestamp when the operation was requested
        end_time: ISO timestamp when it reached a terminal status
        exit_code: Exit code of the last tool process
    """
    kind: str
    deployment_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = PENDING
    log: LogBuffer = field(default_factory=LogBuffer)
    start_time: str = field(default_factory=utc_now)
    end_time: Optional[str] = None
    exit_code: Optional[int] = None

    def __post_init__(self):
        if self.kind not in OPERATION_KINDS:
            raise ValueError(f"Unknown operation kind: {self.kind}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def log_lines(self) -> list[str]:
        return self.log.texts()

    def start(self) -> None:
        if self.status != PENDING:
            raise InvalidTransitionError(f"Operation {self.id} is {self.status}, cannot start")
        self.status = RUNNING

    def succeed(self, exit_code: Optional[int] = None) -> None:
        self._finish(SUCCESS, exit_code)

    def fail(self, error: str, exit_code: Optional[int] = None) -> None:
        self.log.append(f"Error: {error}")
        self._finish(ERROR, exit_code)

    def _finish(self, status: str, exit_code: Optional[int]) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(f"Operation {self.id} is already {self.status}")
        self.status = status
        self.end_time = utc_now()
        if exit_code is not None:
            self.exit_code = exit_code

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind,
            'deployment_id': self.deployment_id,
            'status': self.status,
            'logs': self.log.texts(),
            'start_time': self.start_time,
        }
        if self.end_time is not None:
            d['end_time'] = self.end_time
        if self.exit_code is not None:
            d['exit_code'] = self.exit_code
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Operation':
        return cls(
            id=data['id'],
            kind=data['kind'],
            deployment_id=data['deployment_id'],
            status=data.get('status', PENDING),
            log=LogBuffer(data.get('logs', [])),
            start_time=data.get('start_time') or utc_now(),
            end_time=data.get('end_time'),
            exit_code=data.get('exit_code'),
        )


@dataclass
class DeploymentConfig:
    """Caller request for a deployment operation."""
    name: str
    template_id: str = ''
    environment: str = ''
    variables: dict = field(default_factory=dict)


@dataclass
class Deployment:
    """A named unit of infrastructure configuration.

    Attributes:
        name: Unique key; also the working directory name
        template_id: Template the config was generated from
        environment: Environment label passed to the tool
        variables: Caller-supplied variable values
        status: pending, planned, success, error or destroyed
        workspace_path: Working directory slot
        last_action: Kind of the last operation that touched it
    """
    name: str
    template_id: str = ''
    environment: str = ''
    variables: dict = field(default_factory=dict)
    status: str = PENDING
    workspace_path: str = ''
    last_action: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'template_id': self.template_id,
            'environment': self.environment,
            'variables': dict(self.variables),
            'status': self.status,
            'workspace_path': self.workspace_path,
            'last_action': self.last_action,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Deployment':
        return cls(
            name=data['name'],
            template_id=data.get('template_id', ''),
            environment=data.get('environment', ''),
            variables=data.get('variables') or {},
            status=data.get('status', PENDING),
            workspace_path=data.get('workspace_path', ''),
            last_action=data.get('last_action'),
            created_at=data.get('created_at') or utc_now(),
            updated_at=data.get('updated_at') or utc_now(),
        )
