"""
WorkflowService: workflow lifecycle, templates and run bookkeeping.

Definitions are validated against the node types the engine can actually run,
so a workflow can only become active (and therefore executable) when every node
has a handler.
"""
from __future__ import annotations

import copy
import logging
import secrets
import time
import uuid
from typing import Any

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from agentcore.persistence.models import (
    ExecutionStatus,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    now_utc,
)
from agentcore.services.errors import NotFound, ValidationError
from agentcore.services.workflow_engine import ExecutionResult, WorkflowEngine, workflow_settings
from agentcore.services.workflow_graph import validate_definition

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "description", "settings", "variables", "category", "tags", "is_public")


def bump_patch(version: str | None) -> str:
    parts = (version or "1.0.0").split(".")
    while len(parts) < 3:
        parts.append("0")
    try:
        parts[2] = str(int(parts[2]) + 1)
    except ValueError:
        parts[2] = "1"
    return ".".join(parts[:3])


def new_execution_id(workflow_id: uuid.UUID) -> str:
    return f"wf_{workflow_id}_{int(time.time())}_{secrets.token_hex(4)}"


class WorkflowService:
    def __init__(self, db: Session, engine: WorkflowEngine) -> None:
        self.db = db
        self.engine = engine

    # ── Validation ────────────────────────────────────────────────────────

    def validate(self, definition: Any) -> list[str]:
        return validate_definition(definition, self.engine.handlers.node_types())

    def _ensure_valid(self, definition: Any) -> None:
        errors = self.validate(definition)
        if errors:
            raise ValidationError(f"Invalid workflow definition: {'; '.join(errors)}", errors)

    # ── CRUD ──────────────────────────────────────────────────────────────

    def create_workflow(self, user_id: uuid.UUID, data: dict[str, Any]) -> Workflow:
        if not data.get("name"):
            raise ValidationError("Workflow name is required")
        definition = data.get("definition")
        self._ensure_valid(definition)

        workflow = Workflow(
            id=uuid.uuid4(),
            user_id=user_id,
            name=data["name"],
            description=data.get("description"),
            definition=definition,
            version=data.get("version", "1.0.0"),
            status=WorkflowStatus.draft,
            settings=data.get("settings") or {},
            variables=data.get("variables") or {},
            is_public=bool(data.get("is_public", False)),
            category=data.get("category"),
            tags=list(data.get("tags") or []),
        )
        workflow_settings(workflow, self.engine.settings)
        self.db.add(workflow)
        self.db.commit()
        logger.info("Workflow created: %s", workflow.name, extra={"workflow_id": workflow.id, "user_id": user_id})
        return workflow

    def update_workflow(self, workflow: Workflow, data: dict[str, Any]) -> Workflow:
        for key in _EDITABLE_FIELDS:
            if key in data:
                setattr(workflow, key, data[key])
        if "settings" in data:
            workflow_settings(workflow, self.engine.settings)

        if "definition" in data and data["definition"] != workflow.definition:
            self._ensure_valid(data["definition"])
            workflow.definition = data["definition"]
            workflow.version = bump_patch(workflow.version)

        self.db.commit()
        return workflow

    def list_workflows(self, user_id: uuid.UUID, include_public: bool = False) -> list[Workflow]:
        q = self.db.query(Workflow).filter(Workflow.status != WorkflowStatus.archived)
        if include_public:
            q = q.filter(
                or_(
                    Workflow.user_id == user_id,
                    (Workflow.is_public.is_(True)) & (Workflow.status == WorkflowStatus.active),
                )
            )
        else:
            q = q.filter(Workflow.user_id == user_id)
        return q.order_by(Workflow.updated_at.desc()).all()

    # ── Status ────────────────────────────────────────────────────────────

    def activate(self, workflow: Workflow) -> Workflow:
        self._ensure_valid(workflow.definition)
        workflow.status = WorkflowStatus.active
        self.db.commit()
        return workflow

    def deactivate(self, workflow: Workflow) -> Workflow:
        workflow.status = WorkflowStatus.inactive
        self.db.commit()
        return workflow

    def archive(self, workflow: Workflow) -> Workflow:
        workflow.status = WorkflowStatus.archived
        self.db.commit()
        return workflow

    # ── Execution ─────────────────────────────────────────────────────────

    def execute(
        self,
        workflow: Workflow,
        user_id: uuid.UUID,
        input_data: dict[str, Any] | None = None,
        variables: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        if not workflow.is_accessible_by(user_id):
            raise NotFound(f"Workflow not found: {workflow.id}")
        if workflow.status != WorkflowStatus.active:
            raise ValidationError("Workflow must be active to execute")

        input_data = input_data or {}
        run_variables = {**(workflow.variables or {}), **(variables or {}), "input": input_data}
        execution = WorkflowExecution(
            execution_id=new_execution_id(workflow.id),
            workflow_id=workflow.id,
            user_id=user_id,
            status=ExecutionStatus.pending,
            input_data=input_data,
            variables=run_variables,
            total_nodes=workflow.count_nodes(),
            completed_nodes=0,
            failed_nodes=0,
            total_cost=0.0,
        )
        self.db.add(execution)
        self.db.execute(
            update(Workflow)
            .where(Workflow.id == workflow.id)
            .values(execution_count=Workflow.execution_count + 1, last_executed_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return self.engine.run(workflow, execution)

    def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = (
            self.db.query(WorkflowExecution).filter(WorkflowExecution.execution_id == execution_id).first()
        )
        if execution is None:
            raise NotFound(f"Execution not found: {execution_id}")
        return execution

    def get_execution_status(self, execution_id: str) -> dict[str, Any]:
        execution = self.get_execution(execution_id)
        return {
            "execution_id": execution.execution_id,
            "status": ExecutionStatus(execution.status).value,
            "progress": execution.progress_percentage(),
            "total_nodes": execution.total_nodes,
            "completed_nodes": execution.completed_nodes,
            "failed_nodes": execution.failed_nodes,
            "total_cost": round(float(execution.total_cost or 0.0), 6),
            "error_message": execution.error_message,
            "started_at": execution.started_at.isoformat() if execution.started_at else None,
            "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
            "duration": execution.duration_for_humans(),
            "logs": [
                {
                    "node_id": log.node_id,
                    "node_type": log.node_type,
                    "status": log.status.value,
                    "attempts": log.attempts,
                    "cost": log.cost,
                    "execution_time_ms": log.execution_time_ms,
                    "error_message": log.error_message,
                }
                for log in execution.logs
            ],
        }

    def cancel_execution(self, execution_id: str) -> WorkflowExecution:
        execution = self.get_execution(execution_id)
        if execution.status != ExecutionStatus.running:
            raise ValidationError("Only running executions can be cancelled")
        execution.cancel()
        self.db.commit()
        logger.info("Workflow execution cancelled", extra={"execution_id": execution_id})
        return execution

    # ── Templates ─────────────────────────────────────────────────────────

    def get_templates(self, limit: int = 20, category: str | None = None) -> list[Workflow]:
        q = self.db.query(Workflow).filter(
            Workflow.is_template.is_(True), Workflow.status == WorkflowStatus.active
        )
        if category:
            q = q.filter(Workflow.category == category)
        return q.order_by(Workflow.execution_count.desc()).limit(limit).all()

    def publish_as_template(self, workflow: Workflow) -> Workflow:
        self._ensure_valid(workflow.definition)
        workflow.is_template = True
        workflow.is_public = True
        workflow.status = WorkflowStatus.active
        self.db.commit()
        return workflow

    def clone_from_template(
        self, template: Workflow, user_id: uuid.UUID, customizations: dict[str, Any] | None = None
    ) -> Workflow:
        if not template.is_template:
            raise ValidationError("Workflow is not a template")
        customizations = customizations or {}
        clone = Workflow(
            id=uuid.uuid4(),
            user_id=user_id,
            name=customizations.get("name") or f"{template.name} (Copy)",
            description=customizations.get("description", template.description),
            definition=copy.deepcopy(template.definition),
            version="1.0.0",
            status=WorkflowStatus.draft,
            settings={**(template.settings or {}), **(customizations.get("settings") or {})},
            variables={**(template.variables or {}), **(customizations.get("variables") or {})},
            is_public=False,
            is_template=False,
            category=template.category,
            tags=list(template.tags or []),
        )
        self.db.add(clone)
        self.db.commit()
        return clone

    def duplicate(self, workflow: Workflow, new_name: str | None = None) -> Workflow:
        copy_ = Workflow(
            id=uuid.uuid4(),
            user_id=workflow.user_id,
            name=new_name or f"{workflow.name} (Copy)",
            description=workflow.description,
            definition=copy.deepcopy(workflow.definition),
            version="1.0.0",
            status=WorkflowStatus.draft,
            settings=dict(workflow.settings or {}),
            variables=dict(workflow.variables or {}),
            is_public=False,
            is_template=False,
            category=workflow.category,
            tags=list(workflow.tags or []),
            execution_count=0,
            last_executed_at=None,
        )
        self.db.add(copy_)
        self.db.commit()
        return copy_

    # ── Statistics ────────────────────────────────────────────────────────

    def get_statistics(self, workflow: Workflow) -> dict[str, Any]:
        rows = dict(
            self.db.query(WorkflowExecution.status, func.count(WorkflowExecution.id))
            .filter(WorkflowExecution.workflow_id == workflow.id)
            .group_by(WorkflowExecution.status)
            .all()
        )
        counts = {status.value: int(rows.get(status, 0)) for status in ExecutionStatus}
        total = sum(counts.values())
        avg_ms, total_cost = (
            self.db.query(
                func.avg(WorkflowExecution.execution_time_ms),
                func.coalesce(func.sum(WorkflowExecution.total_cost), 0),
            )
            .filter(
                WorkflowExecution.workflow_id == workflow.id,
                WorkflowExecution.execution_time_ms.is_not(None),
            )
            .one()
        )
        return {
            "total_executions": total,
            "successful_executions": counts["completed"],
            "failed_executions": counts["failed"],
            "cancelled_executions": counts["cancelled"],
            "success_rate": round(counts["completed"] / total * 100, 2) if total else 0.0,
            "avg_execution_time_ms": round(float(avg_ms or 0), 2),
            "total_cost": round(float(total_cost or 0), 6),
            "last_executed_at": workflow.last_executed_at.isoformat() if workflow.last_executed_at else None,
        }
