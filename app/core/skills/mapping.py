"""Installation mapping policy.

The mapping records, per package workflow, whether it has been materialized
for the installing user. Helpers here never mutate their input: every
operation replaces the whole mapping.
"""

import json
from typing import (
    Dict,
    List,
    Optional,
    Sequence,
)

from app.core.skills.schema import (
    InstallationStatus,
    WorkflowDefinition,
    WorkflowMapping,
    WorkflowMappingEntry,
    WorkflowMappingStatus,
)

# Statuses from which initialize may (re)start materialization
INITIALIZABLE_STATUSES = frozenset(
    {
        InstallationStatus.DOWNLOADED,
        InstallationStatus.PARTIAL_FAILED,
        InstallationStatus.FAILED,
        InstallationStatus.INITIALIZING,
    }
)

UPGRADABLE_STATUSES = frozenset({InstallationStatus.READY, InstallationStatus.PARTIAL_FAILED})


def pending_entry() -> WorkflowMappingEntry:
    """Return an entry for a workflow that has not been materialized yet."""
    return WorkflowMappingEntry(workflow_id=None, status=WorkflowMappingStatus.PENDING)


def ready_entry(workflow_id: str) -> WorkflowMappingEntry:
    """Return an entry for a successfully materialized workflow."""
    return WorkflowMappingEntry(workflow_id=workflow_id, status=WorkflowMappingStatus.READY)


def failed_entry(error: str) -> WorkflowMappingEntry:
    """Return an entry for a workflow whose materialization failed."""
    return WorkflowMappingEntry(workflow_id=None, status=WorkflowMappingStatus.FAILED, error=error)


def build_pending_mapping(workflows: Sequence[WorkflowDefinition]) -> WorkflowMapping:
    """Build a mapping with one pending entry per workflow."""
    return {workflow.skill_workflow_id: pending_entry() for workflow in workflows}


def copy_mapping(mapping: WorkflowMapping) -> WorkflowMapping:
    """Return a deep copy of a mapping, suitable as a rollback snapshot."""
    return {key: entry.model_copy(deep=True) for key, entry in mapping.items()}


def reconcile_mapping(mapping: WorkflowMapping, workflows: Sequence[WorkflowDefinition]) -> WorkflowMapping:
    """Align a mapping with the package's current workflow set.

    Entries for workflows that are no longer in the package are dropped and
    workflows without an entry get a pending one. Existing entries are kept.

    Args:
        mapping: The installation's current mapping.
        workflows: The package's current workflow definitions.

    Returns:
        WorkflowMapping: A new mapping with exactly one entry per workflow.
    """
    reconciled: WorkflowMapping = {}
    for workflow in workflows:
        existing = mapping.get(workflow.skill_workflow_id)
        reconciled[workflow.skill_workflow_id] = existing.model_copy(deep=True) if existing else pending_entry()
    return reconciled


def count_by_status(mapping: WorkflowMapping) -> Dict[WorkflowMappingStatus, int]:
    """Count mapping entries per status."""
    counts = {status: 0 for status in WorkflowMappingStatus}
    for entry in mapping.values():
        counts[entry.status] += 1
    return counts


def aggregate_status(mapping: WorkflowMapping) -> InstallationStatus:
    """Derive the installation status from the outcome of every entry.

    No failures means ``ready``; failures with nothing ready means
    ``failed``; anything else is ``partial_failed``.
    """
    counts = count_by_status(mapping)
    if counts[WorkflowMappingStatus.FAILED] == 0:
        return InstallationStatus.READY
    if counts[WorkflowMappingStatus.READY] == 0:
        return InstallationStatus.FAILED
    return InstallationStatus.PARTIAL_FAILED


def ready_workflow_ids(mapping: WorkflowMapping) -> List[str]:
    """Return the materialized workflow ids of all ready entries."""
    return [
        entry.workflow_id
        for entry in mapping.values()
        if entry.status == WorkflowMappingStatus.READY and entry.workflow_id
    ]


def first_error(mapping: WorkflowMapping) -> Optional[str]:
    """Return the error of the first failed entry, if any."""
    for entry in mapping.values():
        if entry.status == WorkflowMappingStatus.FAILED and entry.error:
            return entry.error
    return None


def mapping_to_json(mapping: WorkflowMapping) -> str:
    """Serialize a mapping to its persisted JSON form.

    ``workflowId`` is always written (null while pending or failed);
    ``error`` only when set.
    """
    data = {}
    for key, entry in mapping.items():
        value = entry.model_dump(by_alias=True, mode="json")
        if value.get("error") is None:
            value.pop("error", None)
        data[key] = value
    return json.dumps(data)


def mapping_from_json(raw: Optional[str]) -> WorkflowMapping:
    """Parse a persisted mapping. An empty value yields an empty mapping."""
    if not raw:
        return {}
    data = json.loads(raw)
    return {key: WorkflowMappingEntry.model_validate(value) for key, value in data.items()}
