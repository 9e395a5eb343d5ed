"""Deployment orchestration: operation records, persistence, errors.

The orchestrator itself lives in orchestrator.executor and is imported
from there; it depends on tfstate, which depends on orchestrator.errors.
"""

from orchestrator.errors import (
    OrchestratorError,
    NoPlanError,
    OperationInProgressError,
    DeploymentNotFoundError,
)
from orchestrator.state import (
    OPERATION_KINDS,
    PENDING,
    RUNNING,
    SUCCESS,
    ERROR,
    PLANNED,
    DESTROYED,
    InvalidTransitionError,
    Operation,
    Deployment,
    DeploymentConfig,
)
from orchestrator.store import (
    OPERATIONS,
    DEPLOYMENTS,
    DRIFT_RESULTS,
    Store,
    StoreError,
    JsonFileStore,
)

__all__ = [
    'OrchestratorError',
    'NoPlanError',
    'OperationInProgressError',
    'DeploymentNotFoundError',
    'OPERATION_KINDS',
    'PENDING',
    'RUNNING',
    'SUCCESS',
    'ERROR',
    'PLANNED',
    'DESTROYED',
    'InvalidTransitionError',
    'Operation',
    'Deployment',
    'DeploymentConfig',
    'OPERATIONS',
    'DEPLOYMENTS',
    'DRIFT_RESULTS',
    'Store',
    'StoreError',
    'JsonFileStore',
]
