"""Tool command actions."""

from actions.tofu import (
    EXIT_CHANGES_PRESENT,
    TofuAction,
    TofuContext,
    TofuInitAction,
    TofuPlanAction,
    TofuApplyAction,
    TofuDestroyAction,
    TofuRefreshAction,
    TofuShowAction,
    TofuOutputAction,
    TofuImportAction,
    TofuTaintAction,
    TofuUntaintAction,
    tool_environment,
    EnvironmentProvider,
    StaticEnvironmentProvider,
)

__all__ = [
    'EXIT_CHANGES_PRESENT',
    'TofuAction',
    'TofuContext',
    'TofuInitAction',
    'TofuPlanAction',
    'TofuApplyAction',
    'TofuDestroyAction',
    'TofuRefreshAction',
    'TofuShowAction',
    'TofuOutputAction',
    'TofuImportAction',
    'TofuTaintAction',
    'TofuUntaintAction',
    'tool_environment',
    'EnvironmentProvider',
    'StaticEnvironmentProvider',
]
