"""
Template Catalog: versioned workflow definitions.

Lifecycle:
    create_template → add_stage / add_task_template / update_* (draft only)
                    → release_template (validates, then immutable)
                    → create_new_version (deep copy into a new draft)

Released templates may only be retired from new activations via
``set_template_active``.  Every other write raises TemplateImmutableError
here, and the ORM release guard in models.workflow rejects anything that
slips past.

Usage:
    from matterflow.services import template_catalog as catalog

    tpl = catalog.get_template("residential-purchase")          # latest active
    tpl = catalog.get_template("residential-purchase", "1.0.0")
    matches = catalog.list_applicable("conveyancing", "freehold_purchase", attrs)
"""

import logging
from datetime import datetime, timezone

from matterflow.core.exceptions import (
    ConflictError,
    NotFoundError,
    TemplateImmutableError,
    ValidationError,
)
from matterflow.models import db
from matterflow.models.auth import USER_ROLES
from matterflow.models.matter import PRACTICE_AREAS
from matterflow.models.workflow import (
    COMPLETION_CRITERIA,
    DUE_DATE_ANCHORS,
    GATE_TYPES,
    TASK_PRIORITIES,
    WorkflowStage,
    WorkflowTaskTemplate,
    WorkflowTemplate,
    parse_version,
)
from matterflow.services.conditions import evaluate_or_false, validate_condition_map
from matterflow.services.transaction import run_in_transaction

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = (
    "name", "description", "practice_area", "sub_types", "selection_conditions", "is_default",
)
STAGE_FIELDS = (
    "name", "description", "sort_order", "gate_type", "completion_criteria",
    "applicability_conditions", "client_visible",
)
TASK_TEMPLATE_FIELDS = (
    "title", "description", "is_mandatory", "requires_evidence", "required_evidence_types",
    "requires_verified_evidence", "requires_approval", "required_approver_role",
    "default_priority", "relative_due_days", "due_date_anchor", "client_visible",
    "regulatory_basis", "sort_order",
)


# ── Validation helpers ───────────────────────────────────────────────────────


def _require_text(value, field: str, max_len: int = 255) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", details={field: "required"})
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{field} must be <= {max_len} chars", details={field: "too long"})
    return value


def _check_choice(value, allowed, field: str) -> None:
    if value not in allowed:
        raise ValidationError(
            f"{field} must be one of {sorted(allowed)}",
            details={field: f"invalid value {value!r}"},
        )


def _check_version(version) -> str:
    try:
        parse_version(version)
    except ValueError:
        raise ValidationError(
            "version must be a semantic version MAJOR.MINOR.PATCH",
            details={"version": version},
        ) from None
    return version.strip()


def _check_sub_types(sub_types) -> None:
    if sub_types is None:
        return
    if not isinstance(sub_types, list) or not all(isinstance(s, str) and s for s in sub_types):
        raise ValidationError("sub_types must be a list of strings or null", details={"sub_types": sub_types})


def _check_evidence_types(types) -> None:
    if types is None:
        return
    if not isinstance(types, list) or not all(isinstance(t, str) and t for t in types):
        raise ValidationError(
            "required_evidence_types must be a list of strings or null",
            details={"required_evidence_types": types},
        )


def _check_int(value, field: str, *, allow_none: bool = True) -> None:
    if value is None and allow_none:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", details={field: value})


TASK_FLAG_FIELDS = (
    "is_mandatory", "requires_evidence", "requires_verified_evidence", "requires_approval",
    "client_visible",
)


def _check_bool(value, field: str) -> None:
    if not isinstance(value, bool):
        raise ValidationError(f"{field} must be true or false", details={field: value})


def _check_task_flags(data: dict) -> None:
    for field in TASK_FLAG_FIELDS:
        if field in data:
            _check_bool(data[field], field)


def _ensure_draft(template: WorkflowTemplate, target: str = "template") -> None:
    if template.is_released:
        raise TemplateImmutableError(template.key, template.version, target)


def _validate_template_fields(data: dict) -> None:
    if "name" in data:
        data["name"] = _require_text(data["name"], "name")
    if "practice_area" in data:
        _check_choice(data["practice_area"], PRACTICE_AREAS, "practice_area")
    if "sub_types" in data:
        _check_sub_types(data["sub_types"])
    if "selection_conditions" in data:
        validate_condition_map(data["selection_conditions"], "selection_conditions")


def _validate_stage_fields(data: dict) -> None:
    if "name" in data:
        data["name"] = _require_text(data["name"], "name")
    if "gate_type" in data:
        _check_choice(data["gate_type"], GATE_TYPES, "gate_type")
    if "completion_criteria" in data:
        _check_choice(data["completion_criteria"], COMPLETION_CRITERIA, "completion_criteria")
    if "applicability_conditions" in data:
        validate_condition_map(data["applicability_conditions"])
    if "sort_order" in data:
        _check_int(data["sort_order"], "sort_order", allow_none=False)


def _validate_task_template_fields(data: dict) -> None:
    if "title" in data:
        data["title"] = _require_text(data["title"], "title")
    if "default_priority" in data:
        _check_choice(data["default_priority"], TASK_PRIORITIES, "default_priority")
    if data.get("due_date_anchor") is not None:
        _check_choice(data["due_date_anchor"], DUE_DATE_ANCHORS, "due_date_anchor")
    if data.get("required_approver_role") is not None:
        _check_choice(data["required_approver_role"], USER_ROLES, "required_approver_role")
    if "required_evidence_types" in data:
        _check_evidence_types(data["required_evidence_types"])
    _check_task_flags(data)
    if "relative_due_days" in data:
        _check_int(data["relative_due_days"], "relative_due_days")
    if "sort_order" in data:
        _check_int(data["sort_order"], "sort_order", allow_none=False)


def _pick(data: dict, fields) -> dict:
    unknown = set(data) - set(fields)
    if unknown:
        raise ValidationError(
            f"Unknown field(s): {', '.join(sorted(unknown))}",
            details={f: "unknown" for f in sorted(unknown)},
        )
    return {k: data[k] for k in fields if k in data}


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_template_by_id(template_id: int) -> WorkflowTemplate:
    tpl = db.session.get(WorkflowTemplate, template_id)
    if tpl is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return tpl


def get_template(key: str, version: str | None = None) -> WorkflowTemplate:
    """Fetch ``key@version``, or the highest released active version when omitted."""
    if version:
        tpl = WorkflowTemplate.query.filter_by(key=key, version=version).first()
        if tpl is None:
            raise NotFoundError(resource="WorkflowTemplate", resource_id=f"{key}@{version}")
        return tpl

    candidates = (
        WorkflowTemplate.query
        .filter(
            WorkflowTemplate.key == key,
            WorkflowTemplate.released_at.isnot(None),
            WorkflowTemplate.is_active.is_(True),
        )
        .all()
    )
    if not candidates:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=key)
    return max(candidates, key=lambda t: t.version_tuple)


def list_versions(key: str) -> list[WorkflowTemplate]:
    rows = WorkflowTemplate.query.filter_by(key=key).all()
    return sorted(rows, key=lambda t: t.version_tuple, reverse=True)


def list_applicable(practice_area: str, sub_type: str | None = None,
                    matter_attributes: dict | None = None) -> list[WorkflowTemplate]:
    """Released, active templates matching the matter's classification.

    Templates whose ``selection_conditions`` do not hold against
    ``matter_attributes`` are dropped.  Ordered by ``is_default`` (defaults
    first), then most recent version.
    """
    attributes = dict(matter_attributes or {})
    attributes.setdefault("practice_area", practice_area)
    if sub_type is not None:
        attributes.setdefault("sub_type", sub_type)

    rows = (
        WorkflowTemplate.query
        .filter(
            WorkflowTemplate.practice_area == practice_area,
            WorkflowTemplate.released_at.isnot(None),
            WorkflowTemplate.is_active.is_(True),
        )
        .all()
    )
    matches = [
        t for t in rows
        if t.applies_to_sub_type(sub_type)
        and evaluate_or_false(t.selection_conditions, attributes)
    ]
    matches.sort(key=lambda t: (not t.is_default, tuple(-p for p in t.version_tuple), t.key))
    return matches


def get_stage(stage_id: int) -> WorkflowStage:
    stage = db.session.get(WorkflowStage, stage_id)
    if stage is None:
        raise NotFoundError(resource="WorkflowStage", resource_id=stage_id)
    return stage


def get_task_template(task_template_id: int) -> WorkflowTaskTemplate:
    tt = db.session.get(WorkflowTaskTemplate, task_template_id)
    if tt is None:
        raise NotFoundError(resource="WorkflowTaskTemplate", resource_id=task_template_id)
    return tt


# ── Authoring (drafts) ───────────────────────────────────────────────────────


def _add_task_template(stage: WorkflowStage, data: dict) -> WorkflowTaskTemplate:
    _ensure_draft(stage.template, "WorkflowTaskTemplate")
    fields = _pick(data, TASK_TEMPLATE_FIELDS)
    fields.setdefault("title", None)
    _validate_task_template_fields(fields)
    if "sort_order" not in fields:
        fields["sort_order"] = max((t.sort_order for t in stage.task_templates), default=0) + 1
    tt = WorkflowTaskTemplate(**fields)
    stage.task_templates.append(tt)
    db.session.flush()
    return tt


def _add_stage(template: WorkflowTemplate, data: dict) -> WorkflowStage:
    _ensure_draft(template, "WorkflowStage")
    data = dict(data)
    task_templates = data.pop("task_templates", None) or []
    fields = _pick(data, STAGE_FIELDS)
    fields.setdefault("name", None)
    _validate_stage_fields(fields)
    if "sort_order" not in fields:
        fields["sort_order"] = max((s.sort_order for s in template.stages), default=0) + 1
    if any(s.sort_order == fields["sort_order"] for s in template.stages):
        raise ConflictError("WorkflowStage", "sort_order", str(fields["sort_order"]))
    stage = WorkflowStage(**fields)
    template.stages.append(stage)
    db.session.flush()
    for tt_data in task_templates:
        _add_task_template(stage, tt_data)
    return stage


def _create_template(key, version, name, practice_area, extra) -> WorkflowTemplate:
    key = _require_text(key, "key", max_len=100)
    version = _check_version(version)
    stages = extra.pop("stages", None) or []
    fields = _pick(extra, TEMPLATE_FIELDS)
    fields.update(name=name, practice_area=practice_area)
    _validate_template_fields(fields)

    if WorkflowTemplate.query.filter_by(key=key, version=version).first():
        raise ConflictError("WorkflowTemplate", "key@version", f"{key}@{version}")

    tpl = WorkflowTemplate(key=key, version=version, **fields)
    db.session.add(tpl)
    db.session.flush()
    for stage_data in stages:
        _add_stage(tpl, stage_data)
    logger.info("Workflow template draft created: %s@%s (%d stages)", key, version, len(tpl.stages))
    return tpl


def create_template(key: str, version: str, name: str, practice_area: str, **extra) -> WorkflowTemplate:
    """Create a draft template, optionally with nested ``stages`` / ``task_templates``."""
    return run_in_transaction(
        lambda: _create_template(key, version, name, practice_area, dict(extra)),
        label="template create",
    )


def add_stage(template_id: int, **data) -> WorkflowStage:
    return run_in_transaction(
        lambda: _add_stage(get_template_by_id(template_id), data),
        label="template stage add",
    )


def add_task_template(stage_id: int, **data) -> WorkflowTaskTemplate:
    return run_in_transaction(
        lambda: _add_task_template(get_stage(stage_id), data),
        label="task template add",
    )


def _apply(obj, changes: dict) -> None:
    for field, value in changes.items():
        setattr(obj, field, value)


def update_template(template_id: int, **changes) -> WorkflowTemplate:
    def _work():
        tpl = get_template_by_id(template_id)
        _ensure_draft(tpl)
        fields = _pick(changes, TEMPLATE_FIELDS)
        _validate_template_fields(fields)
        _apply(tpl, fields)
        db.session.flush()
        return tpl

    return run_in_transaction(_work, label="template update")


def update_stage(stage_id: int, **changes) -> WorkflowStage:
    def _work():
        stage = get_stage(stage_id)
        _ensure_draft(stage.template, "WorkflowStage")
        fields = _pick(changes, STAGE_FIELDS)
        _validate_stage_fields(fields)
        if "sort_order" in fields and any(
            s.sort_order == fields["sort_order"] and s.id != stage.id for s in stage.template.stages
        ):
            raise ConflictError("WorkflowStage", "sort_order", str(fields["sort_order"]))
        _apply(stage, fields)
        db.session.flush()
        return stage

    return run_in_transaction(_work, label="template stage update")


def update_task_template(task_template_id: int, **changes) -> WorkflowTaskTemplate:
    def _work():
        tt = get_task_template(task_template_id)
        _ensure_draft(tt.stage.template, "WorkflowTaskTemplate")
        fields = _pick(changes, TASK_TEMPLATE_FIELDS)
        _validate_task_template_fields(fields)
        _apply(tt, fields)
        db.session.flush()
        return tt

    return run_in_transaction(_work, label="task template update")


# ── Release & versioning ─────────────────────────────────────────────────────


def release_problems(template: WorkflowTemplate) -> list[str]:
    """Everything that would stop ``template`` from being released."""
    problems = []
    try:
        parse_version(template.version)
    except ValueError as exc:
        problems.append(str(exc))
    if not template.stages:
        problems.append("template has no stages")
    orders = sorted(s.sort_order for s in template.stages)
    if orders and orders != list(range(1, len(orders) + 1)):
        problems.append(f"stage sort orders must be 1..{len(orders)} without gaps, got {orders}")
    for stage in template.stages:
        if stage.gate_type not in GATE_TYPES:
            problems.append(f"stage '{stage.name}' has invalid gate_type {stage.gate_type!r}")
        if stage.completion_criteria not in COMPLETION_CRITERIA:
            problems.append(f"stage '{stage.name}' has invalid completion_criteria {stage.completion_criteria!r}")
        task_orders = [t.sort_order for t in stage.task_templates]
        if len(task_orders) != len(set(task_orders)):
            problems.append(f"stage '{stage.name}' has duplicate task sort orders")
    return problems


def release_template(template_id: int) -> WorkflowTemplate:
    """Validate and release a draft; afterwards it is read-only."""
    def _work():
        tpl = get_template_by_id(template_id)
        _ensure_draft(tpl)
        problems = release_problems(tpl)
        if problems:
            raise ValidationError(
                f"Template {tpl.key}@{tpl.version} cannot be released",
                details={"problems": problems},
            )
        tpl.released_at = datetime.now(timezone.utc)
        db.session.flush()
        logger.info("Workflow template released: %s@%s", tpl.key, tpl.version)
        return tpl

    return run_in_transaction(_work, label="template release")


def create_new_version(template_id: int, new_version: str) -> WorkflowTemplate:
    """Deep-copy ``template_id`` into a new draft ``new_version``; the source is untouched.

    ``new_version`` must be higher than every existing version of the key.
    """
    def _work():
        source = get_template_by_id(template_id)
        version = _check_version(new_version)
        highest = max(t.version_tuple for t in list_versions(source.key))
        if parse_version(version) <= highest:
            raise ValidationError(
                f"New version must be greater than {'.'.join(map(str, highest))}",
                details={"version": version},
            )
        copy = WorkflowTemplate(
            key=source.key,
            version=version,
            name=source.name,
            description=source.description,
            practice_area=source.practice_area,
            sub_types=list(source.sub_types) if source.sub_types is not None else None,
            selection_conditions=dict(source.selection_conditions) if source.selection_conditions else None,
            is_default=source.is_default,
            is_active=True,
        )
        db.session.add(copy)
        for stage in source.stages:
            stage_copy = WorkflowStage(**{f: getattr(stage, f) for f in STAGE_FIELDS})
            for tt in stage.task_templates:
                stage_copy.task_templates.append(
                    WorkflowTaskTemplate(**{f: getattr(tt, f) for f in TASK_TEMPLATE_FIELDS})
                )
            copy.stages.append(stage_copy)
        db.session.flush()
        logger.info("Workflow template %s: draft %s created from %s", source.key, version, source.version)
        return copy

    return run_in_transaction(_work, label="template new version")


def set_template_active(template_id: int, is_active: bool) -> WorkflowTemplate:
    """Retire (or reinstate) a template version for new activations."""
    def _work():
        tpl = get_template_by_id(template_id)
        tpl.is_active = bool(is_active)
        db.session.flush()
        logger.info("Workflow template %s@%s is_active=%s", tpl.key, tpl.version, tpl.is_active)
        return tpl

    return run_in_transaction(_work, label="template activation toggle")
