"""OpenTofu/Terraform command actions.

Each action builds one tool invocation and runs it through run_process
inside a deployment's working directory. Actions do not decide what a
failure means; ProcessSpawnError and ProcessExitError propagate to the
caller.
"""

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from common import DRIVER, ActionResult, run_process

logger = logging.getLogger(__name__)

# Exit code of `plan -detailed-exitcode` when changes are present
EXIT_CHANGES_PRESENT = 2


def tool_environment(extra: Optional[dict] = None) -> dict:
    """Process environment for tool runs.

    Inherits the driver's environment, disables interactive prompts, and
    layers the deployment's execution environment on top.
    """
    return {
        **os.environ,
        'TF_IN_AUTOMATION': '1',
        'TF_INPUT': '0',
        **(extra or {}),
    }


class EnvironmentProvider(Protocol):
    """Supplies a deployment's execution environment (region, role, ...)."""

    def environment_for(self, deployment: str) -> dict:
        """Return extra environment variables for the tool."""


class StaticEnvironmentProvider:
    """Same opaque variables for every deployment (from config tool_env)."""

    def __init__(self, variables: Optional[dict] = None):
        self.variables = dict(variables or {})

    def environment_for(self, deployment: str) -> dict:
        return dict(self.variables)


@dataclass
class TofuContext:
    """Where and how to run the tool for one deployment."""
    binary: str
    cwd: Path
    env: Optional[dict] = None
    on_output: Optional[Callable[[str, str], None]] = None


class TofuAction:
    """Base for single tool invocations."""

    verb: str = ''
    ok_codes: tuple[int, ...] = (0,)

    def args(self) -> list[str]:
        raise NotImplementedError

    async def run(self, ctx: TofuContext) -> ActionResult:
        """Execute the tool command.

        Raises:
            ProcessSpawnError: If the tool binary cannot be started
            ProcessExitError: If the exit code is not accepted
        """
        start = time.time()
        args = self.args()
        logger.info(f"Running {ctx.binary} {' '.join(args)} in {ctx.cwd}")
        if ctx.on_output:
            ctx.on_output(DRIVER, f"Running: {Path(ctx.binary).name} {' '.join(args)}")

        result = await run_process(
            ctx.binary,
            args,
            cwd=ctx.cwd,
            env=ctx.env,
            on_output=ctx.on_output,
            ok_codes=self.ok_codes,
        )
        if ctx.on_output:
            ctx.on_output(DRIVER, "Command completed successfully")
        return ActionResult(
            success=True,
            message=f"tofu {self.verb} completed",
            duration=time.time() - start,
            context_updates=self._context_updates(result.exit_code, result.stdout),
        )

    def _context_updates(self, exit_code: int, stdout: str) -> dict:
        return {'exit_code': exit_code, 'stdout': stdout}


@dataclass
class TofuInitAction(TofuAction):
    """Initialize providers and modules."""
    verb = 'init'

    def args(self) -> list[str]:
        return ['init', '-input=false', '-no-color']


@dataclass
class TofuPlanAction(TofuAction):
    """Create a saved plan.

    With detailed_exitcode, exit code 2 (changes present) is a success and
    is reported as context_updates['changes_present'].
    """
    out: str = 'tfplan'
    detailed_exitcode: bool = False
    json_output: bool = False
    verb = 'plan'

    def __post_init__(self):
        if self.detailed_exitcode:
            self.ok_codes = (0, EXIT_CHANGES_PRESENT)

    def args(self) -> list[str]:
        args = ['plan', '-input=false', '-no-color', f'-out={self.out}']
        if self.detailed_exitcode:
            args.append('-detailed-exitcode')
        if self.json_output:
            args.append('-json')
        return args

    def _context_updates(self, exit_code: int, stdout: str) -> dict:
        updates = super()._context_updates(exit_code, stdout)
        updates['changes_present'] = exit_code == EXIT_CHANGES_PRESENT
        return updates


@dataclass
class TofuApplyAction(TofuAction):
    """Apply a saved plan artifact exactly as reviewed."""
    plan_file: str = 'tfplan'
    verb = 'apply'

    def args(self) -> list[str]:
        return ['apply', '-input=false', '-no-color', self.plan_file]


@dataclass
class TofuDestroyAction(TofuAction):
    """Destroy everything tracked in state."""
    verb = 'destroy'

    def args(self) -> list[str]:
        return ['destroy', '-auto-approve', '-input=false', '-no-color']


@dataclass
class TofuRefreshAction(TofuAction):
    """Update state from real infrastructure without changing it."""
    verb = 'refresh'

    def args(self) -> list[str]:
        return ['apply', '-refresh-only', '-auto-approve', '-input=false', '-no-color']


@dataclass
class TofuShowAction(TofuAction):
    """Emit a saved plan as JSON."""
    plan_file: str = 'tfplan'
    verb = 'show'

    def args(self) -> list[str]:
        return ['show', '-json', '-no-color', self.plan_file]


@dataclass
class TofuOutputAction(TofuAction):
    """Emit root module outputs as JSON."""
    verb = 'output'

    def args(self) -> list[str]:
        return ['output', '-json', '-no-color']


@dataclass
class TofuImportAction(TofuAction):
    """Adopt an existing remote object at one address."""
    address: str = ''
    resource_id: str = ''
    verb = 'import'

    def args(self) -> list[str]:
        return ['import', '-input=false', '-no-color', self.address, self.resource_id]


@dataclass
class TofuTaintAction(TofuAction):
    """Mark one resource for replacement."""
    address: str = ''
    verb = 'taint'

    def args(self) -> list[str]:
        return ['taint', '-no-color', self.address]


@dataclass
class TofuUntaintAction(TofuAction):
    """Clear the tainted mark on one resource."""
    address: str = ''
    verb = 'untaint'

    def args(self) -> list[str]:
        return ['untaint', '-no-color', self.address]
