"""
Default workflow templates installed by ``flask seed-workflow-templates``.

Seeding is idempotent: a key@version that already exists is left alone
(released templates are immutable anyway).
"""

import logging

from matterflow.models.workflow import WorkflowTemplate
from matterflow.services import template_catalog

logger = logging.getLogger(__name__)


def _task(title, days, anchor="stage_started", *, description=None, evidence=True,
          approval=False, priority="high", evidence_types=None, verified=False):
    data = {
        "title": title,
        "is_mandatory": True,
        "requires_evidence": evidence,
        "requires_approval": approval,
        "default_priority": priority,
        "relative_due_days": days,
        "due_date_anchor": anchor,
    }
    if description:
        data["description"] = description
    if evidence_types:
        data["required_evidence_types"] = evidence_types
    if verified:
        data["requires_verified_evidence"] = True
    return data


RESIDENTIAL_PURCHASE = {
    "key": "residential-purchase",
    "version": "1.0.0",
    "name": "Residential Purchase",
    "description": (
        "Standard workflow for residential property purchases including freehold, leasehold, "
        "auction and new-build transactions."
    ),
    "practice_area": "conveyancing",
    "sub_types": ["freehold_purchase", "leasehold_purchase", "auction_purchase", "new_build"],
    "is_default": True,
    "stages": [
        {
            "name": "Client Onboarding & Instruction",
            "description": "Initial client engagement, retainer and file opening",
            "gate_type": "hard",
            "task_templates": [
                _task("Record client instruction", 1, "matter_created",
                      description="Document the client's instructions including property details, "
                                  "purchase price and timescales"),
                _task("Issue client care letter", 2, "matter_created",
                      description="Send engagement letter with terms of business and costs estimate"),
                _task("Complete conflict check", 1, "matter_created", approval=True,
                      description="Check for conflicts of interest against all parties"),
            ],
        },
        {
            "name": "AML / Compliance",
            "description": "Anti-money laundering checks and customer due diligence",
            "gate_type": "hard",
            "task_templates": [
                _task("Verify client identity", 3, verified=True,
                      evidence_types=["id_document", "proof_of_address"],
                      description="Obtain and verify photographic ID and proof of address"),
                _task("Verify source of funds", 5,
                      description="Obtain evidence of source of deposit and completion funds"),
                _task("Complete AML risk assessment", 5, approval=True,
                      description="Assess client and transaction risk level and document findings"),
            ],
        },
        {
            "name": "Investigation / Due Diligence",
            "description": "Title investigation, searches and enquiries",
            "gate_type": "soft",
            "task_templates": [
                _task("Obtain official copies from Land Registry", 2),
                _task("Order property searches", 3),
                _task("Raise enquiries with seller's solicitor", 7),
                _task("Report to client on title", 14),
            ],
        },
        {
            "name": "Mortgage / Lender Compliance",
            "description": "Lender requirements and certificate of title",
            "gate_type": "hard",
            "applicability_conditions": {"has_mortgage": True},
            "task_templates": [
                _task("Review mortgage offer", 3),
                _task("Prepare certificate of title", 7, approval=True),
            ],
        },
        {
            "name": "Contract / Exchange",
            "description": "Contract approval, deposit and exchange",
            "gate_type": "hard",
            "task_templates": [
                _task("Review and approve contract", 7),
                _task("Obtain authority to exchange", 10),
                _task("Exchange contracts", 14),
            ],
        },
        {
            "name": "Completion",
            "description": "Pre-completion, funds transfer and keys",
            "gate_type": "hard",
            "task_templates": [
                _task("Request completion funds from client", 5),
                _task("Send completion funds", 0, approval=True),
                _task("Release keys to client", 0, evidence=False),
            ],
        },
        {
            "name": "Post-Completion",
            "description": "SDLT, registration and file closure",
            "gate_type": "soft",
            "task_templates": [
                _task("Submit SDLT return and pay tax", 14),
                _task("Submit Land Registry application", 20),
            ],
        },
    ],
}

DEFAULT_TEMPLATES = (RESIDENTIAL_PURCHASE,)


def seed_default_templates() -> int:
    """Create and release the default templates that are missing; return how many were added."""
    created = 0
    for entry in DEFAULT_TEMPLATES:
        if WorkflowTemplate.query.filter_by(key=entry["key"], version=entry["version"]).first():
            logger.info("Template %s@%s already present; skipped", entry["key"], entry["version"])
            continue
        data = dict(entry)
        tpl = template_catalog.create_template(
            data.pop("key"), data.pop("version"), data.pop("name"), data.pop("practice_area"), **data,
        )
        template_catalog.release_template(tpl.id)
        created += 1
    return created
