"""matterflow.integrations: collaborator gateways consumed by the workflow engine.

The engine never reaches into identity, matter or evidence storage directly;
it goes through the narrow interfaces in ``collaborators``.  The app factory
installs database-backed defaults in ``app.extensions["workflow"]`` and a
hosting application (or a test) may replace any of them.

Current gateways:
  collaborators.MatterAttributesProvider - matter facts for applicability conditions
  collaborators.RoleChecker              - approver authority checks
  collaborators.EvidenceReader           - evidence rows linked to a task
  collaborators.EventPublisher           - post-commit delivery of workflow events
"""
