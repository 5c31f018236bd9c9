"""Read-side projections of matter workflows for the API layer."""

from matterflow.core.exceptions import NotFoundError
from matterflow.models.exception import TaskException
from matterflow.models.task import Task
from matterflow.models.workflow import MatterWorkflow
from matterflow.services import stage_gate


def get_workflow(matter_id: int) -> MatterWorkflow:
    workflow = MatterWorkflow.query.filter_by(matter_id=matter_id).first()
    if workflow is None:
        raise NotFoundError(resource="MatterWorkflow", resource_id=f"matter={matter_id}")
    return workflow


def workflow_summary(workflow: MatterWorkflow) -> dict:
    data = workflow.to_dict(include_stages=True)
    data["progress"] = stage_gate.workflow_progress(workflow)
    return data


def stage_detail(stage) -> dict:
    data = stage.to_dict()
    data["tasks"] = [t.to_dict() for t in stage.tasks]
    data["completion"] = stage_gate.check_stage_completion(stage)
    data["gate"] = stage_gate.check_gate(stage)
    data["exception"] = stage.exception.to_dict() if stage.exception else None
    return data


def list_stage_tasks(stage_id: int, status: str | None = None):
    """Query of tasks in one matter stage, oldest first."""
    stage_gate.get_matter_stage(stage_id)
    q = Task.query.filter_by(matter_stage_id=stage_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Task.id.asc())


def exceptions_query(matter_id=None, object_type=None, object_id=None, exception_type=None):
    q = TaskException.query
    if matter_id is not None:
        q = q.filter_by(matter_id=matter_id)
    if object_type:
        q = q.filter_by(object_type=object_type)
    if object_id is not None:
        q = q.filter_by(object_id=str(object_id))
    if exception_type:
        q = q.filter_by(exception_type=exception_type)
    return q.order_by(TaskException.approved_at.asc(), TaskException.id.asc())
