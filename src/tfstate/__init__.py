"""State and plan parsing, drift detection."""

from tfstate.models import (
    NO_OP,
    CREATE,
    UPDATE,
    DELETE,
    READ,
    DRIFT_IN_PROGRESS,
    DRIFT_COMPLETED,
    DRIFT_FAILED,
    StateParseError,
    ResourceInstance,
    StateResource,
    OutputValue,
    TofuState,
    ResourceChange,
    TofuPlan,
    DriftSummary,
    DriftResult,
    parse_state,
    parse_plan,
    parse_resource_change,
    classify_drift,
)

__all__ = [
    'NO_OP',
    'CREATE',
    'UPDATE',
    'DELETE',
    'READ',
    'DRIFT_IN_PROGRESS',
    'DRIFT_COMPLETED',
    'DRIFT_FAILED',
    'StateParseError',
    'ResourceInstance',
    'StateResource',
    'OutputValue',
    'TofuState',
    'ResourceChange',
    'TofuPlan',
    'DriftSummary',
    'DriftResult',
    'parse_state',
    'parse_plan',
    'parse_resource_change',
    'classify_drift',
]
