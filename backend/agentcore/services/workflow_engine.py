"""
Workflow engine: runs one WorkflowExecution through its graph.

Nodes run sequentially in topological order (Kahn, start nodes in definition
order). Each node gets a WorkflowExecutionLog row. Counters and cost are applied
with SQL-side increments so concurrent readers always see consistent totals.

Error strategies (workflow settings ``error_strategy``):
  stop      first failure fails the run; nothing after it runs
  continue  failed node's descendants are skipped, independent branches still run,
            the run fails at the end if any node failed
  retry     each node gets ``retry_attempts`` tries with exponential backoff from
            ``retry_delay``; exhausted retries behave like stop
"""
from __future__ import annotations

import json
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from agentcore.config.settings import Settings, get_settings
from agentcore.monitoring.metrics import WORKFLOW_EXECUTIONS, WORKFLOW_NODE_EXECUTIONS, WORKFLOW_NODE_LATENCY
from agentcore.persistence.models import (
    ExecutionStatus,
    NodeLogStatus,
    Workflow,
    WorkflowExecution,
    WorkflowExecutionLog,
    now_utc,
)
from agentcore.schemas.settings import WorkflowSettings, merge_settings
from agentcore.services import workflow_graph as graph
from agentcore.services.errors import UnknownNodeType, ValidationError
from agentcore.services.variable_resolver import VariableResolver
from agentcore.services.workflow_nodes import NodeContext, NodeHandlerRegistry

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    execution_id: str
    status: ExecutionStatus
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    completed_nodes: int = 0
    failed_nodes: int = 0
    total_cost: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.completed


class _NodeFailed(Exception):
    def __init__(self, cause: Exception, attempts: int) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.attempts = attempts


def _retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (UnknownNodeType, ValidationError))


def _checked_cost(node_id: str, output: dict[str, Any], attempts: int) -> float:
    """Node cost, after checking the output can be stored as JSON."""
    try:
        json.dumps(output)
    except (TypeError, ValueError) as exc:
        error = ValidationError(f"Node {node_id} returned output that is not JSON serializable")
        raise _NodeFailed(error, attempts) from exc
    try:
        return float(output.get("cost") or 0.0)
    except (TypeError, ValueError) as exc:
        error = ValidationError(f"Node {node_id} returned a non-numeric cost: {output.get('cost')!r}")
        raise _NodeFailed(error, attempts) from exc


def workflow_settings(workflow: Workflow, settings: Settings | None = None) -> WorkflowSettings:
    settings = settings or get_settings()
    return merge_settings(
        WorkflowSettings,
        workflow.settings,
        defaults={
            "max_execution_time": settings.workflow_max_execution_time,
            "max_parallel_tasks": settings.workflow_max_parallel_tasks,
            "error_strategy": settings.workflow_default_error_strategy,
            "retry_attempts": settings.workflow_max_retry_attempts,
            "retry_delay": settings.workflow_retry_delay_seconds,
        },
    )


class WorkflowEngine:
    def __init__(
        self,
        db: Session,
        handlers: NodeHandlerRegistry,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.handlers = handlers
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock

    def run(self, workflow: Workflow, execution: WorkflowExecution) -> ExecutionResult:
        log_extra = {"execution_id": execution.execution_id, "workflow_id": workflow.id}
        ws = workflow_settings(workflow, self.settings)
        definition = workflow.definition or {}

        execution.start()
        self.db.commit()
        logger.info("Workflow execution started", extra=log_extra)

        try:
            graph.topological_order(definition)
        except ValidationError as exc:
            return self._finish_failed(execution, str(exc), {})

        results: dict[str, dict[str, Any]] = {}
        try:
            return self._walk(workflow, execution, definition, ws, results)
        except Exception as exc:
            self.db.rollback()
            logger.exception("Workflow engine error", extra=log_extra)
            self._close_open_logs(execution)
            return self._finish_failed(execution, f"Workflow engine error: {exc}", results)

    def _walk(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        definition: dict[str, Any],
        ws: WorkflowSettings,
        results: dict[str, dict[str, Any]],
    ) -> ExecutionResult:
        log_extra = {"execution_id": execution.execution_id, "workflow_id": workflow.id}
        nodes = graph.nodes_by_id(definition)
        successors = graph.successors(definition)
        in_degree = {node_id: len(preds) for node_id, preds in graph.predecessors(definition).items()}
        ready = deque(graph.find_start_nodes(definition))

        resolver = VariableResolver(dict(execution.variables or {}), results)
        executed: set[str] = set()
        skipped: set[str] = set()
        failed: list[str] = []
        started = self._clock()

        while ready:
            node_id = ready.popleft()
            if node_id in executed:
                continue
            executed.add(node_id)

            if self._clock() - started > ws.max_execution_time:
                return self._finish_failed(
                    execution, f"Workflow execution exceeded {ws.max_execution_time} seconds", results
                )

            self.db.refresh(execution)
            if execution.status == ExecutionStatus.cancelled:
                logger.info("Workflow execution cancelled", extra=log_extra)
                WORKFLOW_EXECUTIONS.labels(status="cancelled").inc()
                return self._result(execution, results)

            node = nodes[node_id]
            if node_id in skipped:
                self._log_skipped(execution, node)
            else:
                try:
                    results[node_id] = self._execute_node(workflow, execution, node, resolver, ws)
                except _NodeFailed as failure:
                    failed.append(node_id)
                    if ws.error_strategy != "continue" or isinstance(failure.cause, UnknownNodeType):
                        return self._finish_failed(execution, str(failure.cause), results)
                    skipped |= graph.descendants(definition, node_id)

            for target in successors.get(node_id, []):
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    ready.append(target)

        self.db.refresh(execution)
        if execution.status == ExecutionStatus.cancelled:
            WORKFLOW_EXECUTIONS.labels(status="cancelled").inc()
            return self._result(execution, results)

        if failed:
            summary = f"Workflow finished with {len(failed)} failed node(s): {', '.join(failed)}"
            return self._finish_failed(execution, summary, results)

        execution.complete(results)
        self.db.commit()
        WORKFLOW_EXECUTIONS.labels(status="completed").inc()
        logger.info("Workflow execution completed", extra=log_extra)
        return self._result(execution, results)

    # ── Nodes ─────────────────────────────────────────────────────────────

    def _execute_node(
        self,
        workflow: Workflow,
        execution: WorkflowExecution,
        node: dict[str, Any],
        resolver: VariableResolver,
        ws: WorkflowSettings,
    ) -> dict[str, Any]:
        node_id, node_type = node["id"], node["type"]
        config = node.get("config") or {}
        log_extra = {"execution_id": execution.execution_id, "workflow_id": workflow.id, "node_id": node_id}

        entry = WorkflowExecutionLog(
            workflow_execution_id=execution.id,
            node_id=node_id,
            node_type=node_type,
            status=NodeLogStatus.running,
            input_data=resolver.resolve(config),
            started_at=now_utc(),
        )
        self.db.add(entry)
        self.db.commit()

        context = NodeContext(
            node_id=node_id,
            node_type=node_type,
            config=config,
            resolver=resolver,
            user_id=execution.user_id,
            workflow_id=workflow.id,
            execution_id=execution.execution_id,
        )
        t0 = time.perf_counter()
        try:
            output, attempts = self._call_handler(context, ws)
            cost = _checked_cost(node_id, output, attempts)
        except _NodeFailed as failure:
            elapsed = time.perf_counter() - t0
            entry.status = NodeLogStatus.failed
            entry.error_message = str(failure.cause)
            entry.attempts = failure.attempts
            entry.execution_time_ms = int(elapsed * 1000)
            entry.completed_at = now_utc()
            self._bump(execution, failed_nodes=1)
            WORKFLOW_NODE_EXECUTIONS.labels(node_type=node_type, status="failed").inc()
            WORKFLOW_NODE_LATENCY.labels(node_type=node_type).observe(elapsed)
            logger.warning("Workflow node failed: %s", failure.cause, extra=log_extra)
            raise

        elapsed = time.perf_counter() - t0
        entry.status = NodeLogStatus.completed
        entry.output_data = output
        entry.cost = cost
        entry.attempts = attempts
        entry.execution_time_ms = int(elapsed * 1000)
        entry.completed_at = now_utc()
        self._bump(execution, completed_nodes=1, cost=cost)
        WORKFLOW_NODE_EXECUTIONS.labels(node_type=node_type, status="completed").inc()
        WORKFLOW_NODE_LATENCY.labels(node_type=node_type).observe(elapsed)
        logger.debug("Workflow node completed", extra=log_extra)
        return output

    def _call_handler(self, context: NodeContext, ws: WorkflowSettings) -> tuple[dict[str, Any], int]:
        attempts = ws.retry_attempts if ws.error_strategy == "retry" else 1
        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=ws.retry_delay, min=ws.retry_delay, max=ws.retry_delay * 2**attempts),
            retry=retry_if_exception(_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        made = 0
        try:
            for attempt in retrying:
                with attempt:
                    made += 1
                    handler = self.handlers.get(context.node_type)
                    output = handler.execute(context)
        except Exception as exc:
            raise _NodeFailed(exc, made) from exc
        return dict(output or {}), made

    def _log_skipped(self, execution: WorkflowExecution, node: dict[str, Any]) -> None:
        self.db.add(
            WorkflowExecutionLog(
                workflow_execution_id=execution.id,
                node_id=node["id"],
                node_type=node["type"],
                status=NodeLogStatus.skipped,
                attempts=0,
            )
        )
        self.db.commit()
        WORKFLOW_NODE_EXECUTIONS.labels(node_type=node["type"], status="skipped").inc()

    def _close_open_logs(self, execution: WorkflowExecution) -> None:
        self.db.execute(
            update(WorkflowExecutionLog)
            .where(
                WorkflowExecutionLog.workflow_execution_id == execution.id,
                WorkflowExecutionLog.status == NodeLogStatus.running,
            )
            .values(status=NodeLogStatus.failed, error_message="Interrupted by engine error", completed_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    # ── Execution bookkeeping ─────────────────────────────────────────────

    def _bump(
        self, execution: WorkflowExecution, completed_nodes: int = 0, failed_nodes: int = 0, cost: float = 0.0
    ) -> None:
        self.db.execute(
            update(WorkflowExecution)
            .where(WorkflowExecution.id == execution.id)
            .values(
                completed_nodes=WorkflowExecution.completed_nodes + completed_nodes,
                failed_nodes=WorkflowExecution.failed_nodes + failed_nodes,
                total_cost=WorkflowExecution.total_cost + cost,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def _finish_failed(
        self, execution: WorkflowExecution, error: str, results: dict[str, dict[str, Any]]
    ) -> ExecutionResult:
        self.db.refresh(execution)
        if execution.status == ExecutionStatus.cancelled:
            WORKFLOW_EXECUTIONS.labels(status="cancelled").inc()
            return self._result(execution, results)
        execution.fail(error)
        execution.output_data = results
        self.db.commit()
        WORKFLOW_EXECUTIONS.labels(status="failed").inc()
        logger.error(
            "Workflow execution failed: %s",
            error,
            extra={"execution_id": execution.execution_id, "workflow_id": execution.workflow_id},
        )
        return self._result(execution, results, error)

    @staticmethod
    def _result(
        execution: WorkflowExecution, results: dict[str, dict[str, Any]], error: str | None = None
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=execution.execution_id,
            status=ExecutionStatus(execution.status),
            output=results,
            error=error or execution.error_message,
            completed_nodes=execution.completed_nodes or 0,
            failed_nodes=execution.failed_nodes or 0,
            total_cost=round(float(execution.total_cost or 0.0), 6),
        )
