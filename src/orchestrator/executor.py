"""Deployment orchestrator.

Owns the plan/apply/destroy/drift state machine for named deployments.
Each accepted request becomes an Operation that runs as its own asyncio
task; the caller gets the operation id back immediately and can poll
get_operation()/operation_logs() or await wait().

Preconditions (unknown template, missing plan, missing working directory,
operation already in progress) are raised to the caller before any tool
process is spawned. Tool failures never raise past this module; they end
the Operation in status error with the full log preserved.
"""

import asyncio
import logging
import uuid
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator, Optional, Protocol, Union

from actions.tofu import (
    EnvironmentProvider,
    StaticEnvironmentProvider,
    TofuAction,
    TofuApplyAction,
    TofuContext,
    TofuDestroyAction,
    TofuInitAction,
    TofuPlanAction,
    tool_environment,
)
from common import ActionResult, LogLine, ProcessExitError, ProcessSpawnError, utc_now
from config import DriverConfig, validate_deployment_name
from orchestrator.errors import (
    DeploymentNotFoundError,
    NoPlanError,
    OperationInProgressError,
)
from orchestrator.state import (
    DESTROYED,
    ERROR,
    PENDING,
    PLANNED,
    RUNNING,
    SUCCESS,
    Deployment,
    DeploymentConfig,
    Operation,
)
from orchestrator.store import DEPLOYMENTS, DRIFT_RESULTS, OPERATIONS, Store
from resolver.templates import TemplateRepository
from tfstate.models import DRIFT_COMPLETED, DriftResult, TofuState
from tfstate.service import StateService
from workspace import PLAN_FILE, Workspace

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "Operation completed successfully"

# (stream, text) receiver for tool output
OutputSink = Callable[[str, str], None]

# Deployment status after a terminal operation, by kind
_DEPLOYMENT_STATUS = {
    'plan': (PLANNED, ERROR),
    'apply': (SUCCESS, ERROR),
    'destroy': (DESTROYED, ERROR),
}


class Notifier(Protocol):
    """Receives deployment status changes and operation log lines."""

    def notify_deployment_update(self, deployment_id: str, status: str, details: Optional[dict] = None) -> int:
        """Announce a deployment status change."""

    def send_operation_log(self, operation_id: str, line: LogLine) -> int:
        """Forward one operation log line."""


class DeploymentOrchestrator:
    """Runs tool-backed operations against per-deployment working directories.

    Registries are owned by the instance: in-flight operations, their
    tasks, and the per-deployment claim that serializes operations.
    """

    def __init__(
        self,
        config: DriverConfig,
        templates: TemplateRepository,
        store: Store,
        state_service: Optional[StateService] = None,
        environment: Optional[EnvironmentProvider] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config
        self.templates = templates
        self.store = store
        self.environment = environment or StaticEnvironmentProvider(config.tool_env)
        self.notifier = notifier
        self.state_service = state_service or StateService(config, self.environment, notifier)
        self._operations: dict[str, Operation] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # deployment name -> (holder id, kind) of the work using its directory
        self._active: dict[str, tuple[str, str]] = {}

    def workspace(self, name: str) -> Workspace:
        return Workspace(self.config.working_dir, name)

    # Claims

    def _claim(self, name: str, holder_id: str, kind: str) -> None:
        current = self._active.get(name)
        if current is not None:
            raise OperationInProgressError(name, *current)
        self._active[name] = (holder_id, kind)

    def _release(self, name: str, holder_id: str) -> None:
        current = self._active.get(name)
        if current is not None and current[0] == holder_id:
            del self._active[name]

    def _abandon(self, op: Operation) -> None:
        """Undo a claimed operation that never got a task."""
        self._operations.pop(op.id, None)
        self._release(op.deployment_id, op.id)

    @contextmanager
    def _exclusive(self, name: str, kind: str) -> Iterator[None]:
        """Hold the deployment's claim for a single tool command."""
        holder_id = str(uuid.uuid4())
        self._claim(name, holder_id, kind)
        try:
            yield
        finally:
            self._release(name, holder_id)

    def active_operation(self, name: str) -> Optional[str]:
        current = self._active.get(name)
        return current[0] if current else None

    # Public operations

    async def plan(self, config: DeploymentConfig) -> str:
        """Materialize config, then run init and plan -out=tfplan.

        Returns:
            Operation id

        Raises:
            ValueError: If the deployment name is invalid
            OperationInProgressError: If the deployment is busy
            TemplateNotFoundError: If the template does not exist
        """
        name = validate_deployment_name(config.name)
        op = Operation(kind='plan', deployment_id=name)
        self._claim(name, op.id, op.kind)
        try:
            template = await asyncio.to_thread(self.templates.get, config.template_id)
        except BaseException:
            self._abandon(op)
            raise

        ws = self.workspace(name)

        async def prepare() -> None:
            ws.clear_plan()
            written = await asyncio.to_thread(
                ws.materialize, template, config.environment, config.variables, self.config.default_region)
            op.log.append(f"Generated {len(written)} configuration file(s) from template {template.id}")

        return self._launch(op, config, ws, [TofuInitAction(), TofuPlanAction(out=PLAN_FILE)], prepare=prepare)

    async def apply(self, config: Union[DeploymentConfig, str]) -> str:
        """Apply the saved plan artifact exactly as planned.

        Raises:
            NoPlanError: If no successful plan left a tfplan artifact
            OperationInProgressError: If the deployment is busy
        """
        name = validate_deployment_name(_name_of(config))
        ws = self.workspace(name)
        if not ws.has_plan():
            raise NoPlanError(name)
        op = Operation(kind='apply', deployment_id=name)
        self._claim(name, op.id, op.kind)
        # A saved plan is stale once applied
        return self._launch(op, config, ws, [TofuApplyAction(plan_file=PLAN_FILE)], finalize=ws.clear_plan)

    async def destroy(self, config: Union[DeploymentConfig, str]) -> str:
        """Tear down everything in the deployment's state.

        Raises:
            DeploymentNotFoundError: If the working directory was never created
            OperationInProgressError: If the deployment is busy
        """
        name = validate_deployment_name(_name_of(config))
        ws = self.workspace(name)
        if not ws.exists():
            raise DeploymentNotFoundError(name)
        op = Operation(kind='destroy', deployment_id=name)
        self._claim(name, op.id, op.kind)
        return self._launch(op, config, ws, [TofuDestroyAction()], finalize=ws.clear_plan)

    async def detect_drift(self, name: str) -> DriftResult:
        """Run drift detection as a guarded operation of kind drift.

        Tool and parse failures are reported on the DriftResult (status
        failed) and in the operation log; they are not raised.

        Raises:
            DeploymentNotFoundError: If the working directory was never created
            OperationInProgressError: If the deployment is busy
        """
        name = validate_deployment_name(name)
        if not self.workspace(name).exists():
            raise DeploymentNotFoundError(name)
        op = Operation(kind='drift', deployment_id=name)
        self._claim(name, op.id, op.kind)
        try:
            self._register(op)
        except BaseException:
            self._abandon(op)
            raise
        try:
            op.start()
            await asyncio.to_thread(self._save_operation, op)
            result = await self.state_service.detect_drift(name, on_output=self._output_sink(op))
            if result.status == DRIFT_COMPLETED:
                op.log.append(
                    f"Drift check found {result.summary.drifted_resources} drifted resource(s)")
                op.log.append(SUCCESS_MARKER)
                op.succeed()
            else:
                op.fail(result.error or 'drift detection failed')
        except Exception as e:
            if not op.is_terminal:
                op.fail(f"Unexpected error: {e}")
            raise
        finally:
            self._finish(op)
        self.store.insert(DRIFT_RESULTS, result.to_dict())
        return result

    # Single tool commands
    #
    # These run in the deployment's working directory, so they hold the
    # same claim as operations but leave no Operation record.

    async def refresh_state(self, name: str, on_output: Optional[OutputSink] = None) -> Optional[TofuState]:
        """Sync state with real infrastructure.

        Raises:
            DeploymentNotFoundError: If the working directory was never created
            OperationInProgressError: If the deployment is busy
        """
        name = validate_deployment_name(name)
        with self._exclusive(name, 'refresh'):
            return await self.state_service.refresh_state(name, on_output)

    async def import_resource(self, name: str, address: str, resource_id: str,
                              on_output: Optional[OutputSink] = None) -> ActionResult:
        name = validate_deployment_name(name)
        with self._exclusive(name, 'import'):
            return await self.state_service.import_resource(name, address, resource_id, on_output)

    async def taint_resource(self, name: str, address: str,
                             on_output: Optional[OutputSink] = None) -> ActionResult:
        name = validate_deployment_name(name)
        with self._exclusive(name, 'taint'):
            return await self.state_service.taint_resource(name, address, on_output)

    async def untaint_resource(self, name: str, address: str,
                               on_output: Optional[OutputSink] = None) -> ActionResult:
        name = validate_deployment_name(name)
        with self._exclusive(name, 'untaint'):
            return await self.state_service.untaint_resource(name, address, on_output)

    # Queries

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        """Return an operation from memory or the store, or None."""
        op = self._operations.get(operation_id)
        if op is not None:
            return op
        record = self.store.get(OPERATIONS, operation_id)
        return Operation.from_dict(record) if record else None

    def list_operations(self, deployment: Optional[str] = None) -> list[Operation]:
        """Operations ordered by start time, optionally for one deployment."""
        match = {'deployment_id': deployment} if deployment else {}
        ops = {r['id']: Operation.from_dict(r) for r in self.store.select(OPERATIONS, **match)}
        for op in self._operations.values():
            if deployment is None or op.deployment_id == deployment:
                ops[op.id] = op
        return sorted(ops.values(), key=lambda o: o.start_time)

    def operation_logs(self, operation_id: str, since: int = 0) -> list[LogLine]:
        """Log lines with sequence number greater than since.

        Raises:
            KeyError: If the operation is unknown
        """
        op = self.get_operation(operation_id)
        if op is None:
            raise KeyError(operation_id)
        return op.log.since(since)

    def get_deployment(self, name: str) -> Optional[Deployment]:
        record = self.store.get(DEPLOYMENTS, name)
        return Deployment.from_dict(record) if record else None

    def list_drift_results(self, name: str) -> list[dict]:
        return sorted(
            self.store.select(DRIFT_RESULTS, deploymentId=name),
            key=lambda r: r.get('timestamp', ''),
        )

    async def wait(self, operation_id: str) -> Optional[Operation]:
        """Wait for an operation's task to finish and return the operation."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await task
        return self.get_operation(operation_id)

    def recover_interrupted(self) -> list[str]:
        """Fail operations a previous process left pending or running.

        Operations owned by this instance are skipped.

        Returns:
            Ids of the operations marked as error
        """
        recovered = []
        for status in (PENDING, RUNNING):
            for record in self.store.select(OPERATIONS, status=status):
                if record['id'] in self._operations:
                    continue
                op = Operation.from_dict(record)
                op.fail("Operation interrupted by driver restart")
                self.store.update(OPERATIONS, op.id, op.to_dict())
                if op.kind in _DEPLOYMENT_STATUS:
                    self._update_deployment(op.deployment_id, ERROR, op.kind)
                logger.warning(f"Marked interrupted {op.kind} operation {op.id} ({op.deployment_id}) as error")
                recovered.append(op.id)
        return recovered

    # Execution

    def _register(self, op: Operation) -> None:
        self._operations[op.id] = op
        if self.notifier is not None:
            notifier = self.notifier
            op.log.add_listener(lambda line: notifier.send_operation_log(op.id, line))
        self.store.insert(OPERATIONS, op.to_dict())
        logger.info(f"Created {op.kind} operation {op.id} for {op.deployment_id}")

    def _output_sink(self, op: Operation) -> OutputSink:
        def sink(stream: str, text: str) -> None:
            op.log.append(text, stream)
        return sink

    def _context(self, ws: Workspace, op: Operation) -> TofuContext:
        return TofuContext(
            binary=self.config.tool_path,
            cwd=ws.path,
            env=tool_environment(self.environment.environment_for(ws.name)),
            on_output=self._output_sink(op),
        )

    def _launch(
        self,
        op: Operation,
        config: Union[DeploymentConfig, str],
        ws: Workspace,
        actions: list[TofuAction],
        prepare: Optional[Callable[[], Awaitable[None]]] = None,
        finalize: Optional[Callable[[], None]] = None,
    ) -> str:
        """Record and start a claimed operation; the claim is dropped if that fails."""
        try:
            self._record_deployment(config, ws)
            self._register(op)
        except BaseException:
            self._abandon(op)
            raise
        task = asyncio.create_task(self._execute(op, ws, actions, prepare, finalize))
        self._tasks[op.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(op.id, None))
        return op.id

    async def _execute(
        self,
        op: Operation,
        ws: Workspace,
        actions: list[TofuAction],
        prepare: Optional[Callable[[], Awaitable[None]]],
        finalize: Optional[Callable[[], None]],
    ) -> Operation:
        exit_code = None
        try:
            ctx = self._context(ws, op)
            if prepare is not None:
                await prepare()
            op.start()
            await asyncio.to_thread(self._save_operation, op)
            for action in actions:
                result = await action.run(ctx)
                exit_code = result.context_updates.get('exit_code')
                # Keep the stored log current between tool runs
                await asyncio.to_thread(self._save_operation, op)
            if finalize is not None:
                finalize()
        except ProcessExitError as e:
            op.fail(str(e), e.code)
        except (ProcessSpawnError, OSError) as e:
            op.fail(str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure in {op.kind} operation {op.id}")
            op.fail(f"Unexpected error: {e}")
        else:
            op.log.append(SUCCESS_MARKER)
            op.succeed(exit_code)
        finally:
            self._finish(op)
        return op

    def _finish(self, op: Operation) -> None:
        self._release(op.deployment_id, op.id)
        self._save_operation(op)
        logger.info(f"{op.kind} operation {op.id} for {op.deployment_id} finished: {op.status}")
        if op.kind in _DEPLOYMENT_STATUS:
            ok, failed = _DEPLOYMENT_STATUS[op.kind]
            status = ok if op.status == SUCCESS else failed
            self._update_deployment(op.deployment_id, status, op.kind)
            if self.notifier is not None:
                self.notifier.notify_deployment_update(op.deployment_id, status, {
                    'operationId': op.id,
                    'action': op.kind,
                    'operationStatus': op.status,
                })

    # Persistence

    def _save_operation(self, op: Operation) -> None:
        self.store.update(OPERATIONS, op.id, op.to_dict())

    def _record_deployment(self, config: Union[DeploymentConfig, str], ws: Workspace) -> None:
        record = self.store.get(DEPLOYMENTS, ws.name)
        deployment = Deployment.from_dict(record) if record else Deployment(name=ws.name)
        if isinstance(config, DeploymentConfig):
            if config.template_id:
                deployment.template_id = config.template_id
            if config.environment:
                deployment.environment = config.environment
            if config.variables:
                deployment.variables = dict(config.variables)
        deployment.workspace_path = str(ws.path)
        deployment.updated_at = utc_now()
        self.store.upsert(DEPLOYMENTS, deployment.to_dict())

    def _update_deployment(self, name: str, status: str, action: str) -> None:
        record = self.store.get(DEPLOYMENTS, name)
        deployment = Deployment.from_dict(record) if record else Deployment(name=name)
        deployment.status = status
        deployment.last_action = action
        deployment.updated_at = utc_now()
        self.store.upsert(DEPLOYMENTS, deployment.to_dict())


def _name_of(config: Union[DeploymentConfig, str]) -> str:
    return config.name if isinstance(config, DeploymentConfig) else config
