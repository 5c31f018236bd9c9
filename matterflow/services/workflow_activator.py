"""
Workflow Activator: pins a released template version to a matter.

Steps (one unit of work):
    1. Resolve the template (id, or key + optional version) and require it
       to be released and active.
    2. Refuse a second workflow for the matter (DuplicateWorkflowError); the
       unique index on matter_workflows.matter_id catches concurrent losers.
    3. Create one MatterStage per template stage, in template order.
    4. Skip every stage whose applicability conditions are false against
       the matter's attributes right now (system exception per stage).
    5. Start the first remaining stage and instantiate its tasks; later
       stages stay pending with no tasks until they are reached.
"""

import logging
from datetime import datetime, timezone

from matterflow.core.exceptions import DuplicateWorkflowError, NotFoundError, ValidationError
from matterflow.integrations.collaborators import get_collaborators
from matterflow.models import db
from matterflow.models.matter import Matter
from matterflow.models.workflow import MatterStage, MatterWorkflow, WorkflowTemplate
from matterflow.services import stage_gate, template_catalog
from matterflow.services.transaction import run_in_transaction
from matterflow.services.workflow_events import emit

logger = logging.getLogger(__name__)


def _resolve_template(template_ref, version) -> WorkflowTemplate:
    if isinstance(template_ref, int) and not isinstance(template_ref, bool):
        tpl = template_catalog.get_template_by_id(template_ref)
        if version and tpl.version != version:
            raise ValidationError(
                f"Template {template_ref} is version {tpl.version}, not {version}",
                details={"version": version},
            )
        return tpl
    if isinstance(template_ref, str) and template_ref.strip():
        return template_catalog.get_template(template_ref.strip(), version)
    raise ValidationError("template id or key is required", details={"template": "required"})


def _activate(matter_id, template_ref, version, activated_by) -> MatterWorkflow:
    matter = db.session.get(Matter, matter_id)
    if matter is None:
        raise NotFoundError(resource="Matter", resource_id=matter_id)

    existing = MatterWorkflow.query.filter_by(matter_id=matter_id).first()
    if existing is not None:
        raise DuplicateWorkflowError(matter_id, existing.id)

    tpl = _resolve_template(template_ref, version)
    if not tpl.is_released:
        raise ValidationError(f"Template {tpl.key}@{tpl.version} is not released",
                              details={"template_id": tpl.id})
    if not tpl.is_active:
        raise ValidationError(f"Template {tpl.key}@{tpl.version} is retired",
                              details={"template_id": tpl.id})

    attributes = get_collaborators().attributes.get_attributes(matter_id)

    workflow = MatterWorkflow(
        matter_id=matter_id,
        workflow_template_id=tpl.id,
        workflow_version=tpl.version,
        activated_by_id=activated_by,
        activated_at=datetime.now(timezone.utc),
    )
    db.session.add(workflow)
    for ws in sorted(tpl.stages, key=lambda s: s.sort_order):
        workflow.stages.append(MatterStage(
            workflow_stage=ws,
            name=ws.name,
            sort_order=ws.sort_order,
            status="pending",
        ))
    db.session.flush()

    emit("workflow_activated", matter_id, None, None, "active",
         workflow_id=workflow.id, template_key=tpl.key, workflow_version=tpl.version,
         activated_by_id=activated_by)
    logger.info("Workflow %s@%s activated (%d stages)", tpl.key, tpl.version, len(workflow.stages),
                extra={"matter_id": matter_id})

    stage_gate.skip_inapplicable_stages(workflow, attributes, activated_by)
    stage_gate.advance_workflow(workflow, activated_by, attributes)
    return workflow


def activate(
    matter_id: int,
    template_id,
    version: str | None = None,
    activated_by: int | None = None,
) -> MatterWorkflow:
    """Activate a workflow on a matter.

    Args:
        matter_id:    Matter to attach the workflow to.
        template_id:  Template primary key, or template key (str).
        version:      Version to pin when activating by key; latest released
                      active version when omitted.
        activated_by: Acting user id.

    Raises:
        DuplicateWorkflowError: matter already has a workflow.
        NotFoundError:          matter or template missing.
        ValidationError:        template is a draft or retired.
    """
    return run_in_transaction(
        lambda: _activate(matter_id, template_id, version, activated_by),
        matter_id=matter_id,
        label="workflow activation",
    )


def activate_for_matter(matter_id: int, activated_by: int | None = None) -> MatterWorkflow:
    """Activate the best applicable template for the matter's classification."""
    def _work():
        matter = db.session.get(Matter, matter_id)
        if matter is None:
            raise NotFoundError(resource="Matter", resource_id=matter_id)
        attributes = get_collaborators().attributes.get_attributes(matter_id)
        candidates = template_catalog.list_applicable(matter.practice_area, matter.sub_type, attributes)
        if not candidates:
            raise ValidationError(
                f"No applicable workflow template for {matter.practice_area}/{matter.sub_type}",
                details={"practice_area": matter.practice_area, "sub_type": matter.sub_type},
            )
        return _activate(matter_id, candidates[0].id, None, activated_by)

    return run_in_transaction(_work, matter_id=matter_id, label="workflow activation")
