"""Read-side access to a deployment's tool state.

StateService runs the tool's read-only commands (show, output, plan in
drift mode) against a deployment's working directory and returns parsed
documents. Drift detection never raises for tool or parse failures; the
failure is recorded on the returned DriftResult instead.
"""

import json
import logging
from typing import Callable, Optional, Protocol

from actions.tofu import (
    EnvironmentProvider,
    StaticEnvironmentProvider,
    TofuContext,
    TofuImportAction,
    TofuOutputAction,
    TofuPlanAction,
    TofuRefreshAction,
    TofuShowAction,
    TofuTaintAction,
    TofuUntaintAction,
    tool_environment,
)
from common import ActionResult, ProcessExitError, ProcessSpawnError
from config import DriverConfig
from orchestrator.errors import DeploymentNotFoundError, NoPlanError, OrchestratorError
from server.protocol import (
    DRIFT_DETECTION_COMPLETED,
    DRIFT_DETECTION_FAILED,
    STATE_REFRESHED,
    Envelope,
    deployment_room,
)
from tfstate.models import (
    DRIFT_COMPLETED,
    DRIFT_FAILED,
    DriftResult,
    OutputValue,
    StateResource,
    TofuPlan,
    TofuState,
    classify_drift,
    parse_plan,
    parse_state,
)
from workspace import DRIFT_PLAN_FILE, PLAN_FILE, Workspace

logger = logging.getLogger(__name__)


class RoomNotifier(Protocol):
    """Anything that can deliver an envelope to a room."""

    def send_to_room(self, room: str, message: Envelope) -> int:
        """Deliver message to every member of room; return the count."""


def _decode_json(stdout: str, what: str):
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ValueError(f"{what} output is not valid JSON: {e}") from e


class StateService:
    """Parsed views of state, plans and outputs for deployments."""

    def __init__(
        self,
        config: DriverConfig,
        environment: Optional[EnvironmentProvider] = None,
        notifier: Optional[RoomNotifier] = None,
    ):
        self.config = config
        self.environment = environment or StaticEnvironmentProvider(config.tool_env)
        self.notifier = notifier

    def workspace(self, name: str) -> Workspace:
        return Workspace(self.config.working_dir, name)

    def _existing_workspace(self, name: str) -> Workspace:
        ws = self.workspace(name)
        if not ws.exists():
            raise DeploymentNotFoundError(name)
        return ws

    def _context(self, ws: Workspace, on_output: Optional[Callable[[str, str], None]] = None) -> TofuContext:
        return TofuContext(
            binary=self.config.tool_path,
            cwd=ws.path,
            env=tool_environment(self.environment.environment_for(ws.name)),
            on_output=on_output,
        )

    def _notify(self, name: str, message_type: str, payload: dict) -> None:
        if self.notifier is None:
            return
        self.notifier.send_to_room(deployment_room(name), Envelope(message_type, payload))

    def get_state(self, name: str) -> Optional[TofuState]:
        """Parse the deployment's state file.

        Returns:
            TofuState, or None if the deployment was never applied

        Raises:
            StateParseError: If the state document is malformed
            ValueError: If the state file is not JSON
        """
        doc = self.workspace(name).read_state()
        if doc is None:
            return None
        return parse_state(doc)

    def get_resource_details(self, name: str, address: str) -> Optional[StateResource]:
        state = self.get_state(name)
        if state is None:
            return None
        return state.find(address)

    async def get_plan(self, name: str) -> TofuPlan:
        """Render the saved plan artifact as a parsed plan.

        Raises:
            NoPlanError: If there is no plan artifact
            ProcessSpawnError, ProcessExitError: If show fails
            StateParseError: If the plan document is malformed
        """
        ws = self.workspace(name)
        if not ws.has_plan():
            raise NoPlanError(name)
        result = await TofuShowAction(plan_file=PLAN_FILE).run(self._context(ws))
        return parse_plan(_decode_json(result.context_updates['stdout'], 'show'))

    async def get_outputs(self, name: str) -> dict[str, OutputValue]:
        ws = self._existing_workspace(name)
        result = await TofuOutputAction().run(self._context(ws))
        doc = _decode_json(result.context_updates['stdout'] or '{}', 'output')
        if not isinstance(doc, dict):
            raise ValueError("output document must be an object")
        return {
            key: OutputValue(
                value=out.get('value'),
                type=out.get('type'),
                sensitive=bool(out.get('sensitive', False)),
            )
            for key, out in doc.items()
            if isinstance(out, dict)
        }

    async def refresh_state(self, name: str, on_output: Optional[Callable[[str, str], None]] = None) -> Optional[TofuState]:
        """Sync state with real infrastructure and announce state_refreshed."""
        ws = self._existing_workspace(name)
        await TofuRefreshAction().run(self._context(ws, on_output))
        state = self.get_state(name)
        logger.info(f"Refreshed state for {name}")
        self._notify(name, STATE_REFRESHED, {
            'deploymentId': name,
            'serial': state.serial if state else None,
            'resourceCount': len(state.resources) if state else 0,
        })
        return state

    async def detect_drift(
        self,
        name: str,
        on_output: Optional[Callable[[str, str], None]] = None,
    ) -> DriftResult:
        """Compare declared configuration against real infrastructure.

        Runs plan with -detailed-exitcode into the drift plan artifact, then
        renders that artifact as JSON and classifies its resource changes.
        The tfplan artifact used by apply is never touched.

        Returns:
            DriftResult with status completed or failed
        """
        result = DriftResult(deployment_id=name)
        try:
            ws = self._existing_workspace(name)
            await TofuPlanAction(out=DRIFT_PLAN_FILE, detailed_exitcode=True).run(
                self._context(ws, on_output))
            # show -json output is a single large document; keep it out of the log
            shown = await TofuShowAction(plan_file=DRIFT_PLAN_FILE).run(self._context(ws))
            plan = parse_plan(_decode_json(shown.context_updates['stdout'], 'show'))
        except (ProcessSpawnError, ProcessExitError, ValueError, OrchestratorError) as e:
            result.status = DRIFT_FAILED
            result.error = str(e)
            logger.warning(f"Drift detection failed for {name}: {e}")
            self._notify(name, DRIFT_DETECTION_FAILED, result.to_dict())
            return result

        result.changed_resources, result.summary = classify_drift(plan.resource_changes)
        result.status = DRIFT_COMPLETED
        logger.info(
            f"Drift detection for {name}: {result.summary.drifted_resources} of "
            f"{result.summary.total_resources} resources drifted"
        )
        self._notify(name, DRIFT_DETECTION_COMPLETED, result.to_dict())
        return result

    # Mutating commands; DeploymentOrchestrator runs these under the deployment's claim

    async def import_resource(self, name: str, address: str, resource_id: str,
                              on_output: Optional[Callable[[str, str], None]] = None) -> ActionResult:
        ws = self._existing_workspace(name)
        return await TofuImportAction(address=address, resource_id=resource_id).run(
            self._context(ws, on_output))

    async def taint_resource(self, name: str, address: str,
                             on_output: Optional[Callable[[str, str], None]] = None) -> ActionResult:
        ws = self._existing_workspace(name)
        return await TofuTaintAction(address=address).run(self._context(ws, on_output))

    async def untaint_resource(self, name: str, address: str,
                               on_output: Optional[Callable[[str, str], None]] = None) -> ActionResult:
        ws = self._existing_workspace(name)
        return await TofuUntaintAction(address=address).run(self._context(ws, on_output))
