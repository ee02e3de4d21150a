"""Dependency resolution for the workflows of a skill package."""

from collections import deque
from typing import (
    Dict,
    List,
    Optional,
    Sequence,
)

from app.core.skills.errors import (
    CircularDependencyError,
    MalformedPackageError,
    MissingDependencyError,
)
from app.core.skills.schema import WorkflowDefinition


def resolve(workflows: Sequence[WorkflowDefinition], skill_id: Optional[str] = None) -> List[WorkflowDefinition]:
    """Order workflows so every workflow comes after all of its dependencies.

    Uses Kahn's algorithm. Among workflows that become ready at the same
    time, the one listed first in ``workflows`` comes first, so the order is
    reproducible across installs.

    Args:
        workflows: The package's workflow definitions.
        skill_id: Package id, used in error messages only.

    Returns:
        List[WorkflowDefinition]: The workflows in materialization order.

    Raises:
        MalformedPackageError: If two workflows share a ``skill_workflow_id``.
        MissingDependencyError: If a dependency is not defined in the package.
        CircularDependencyError: If the dependencies contain a cycle.
    """
    by_id: Dict[str, WorkflowDefinition] = {}
    for workflow in workflows:
        if workflow.skill_workflow_id in by_id:
            raise MalformedPackageError(
                f"Duplicate workflow id {workflow.skill_workflow_id} in skill package {skill_id or '<unknown>'}",
                {"skill_id": skill_id, "skill_workflow_id": workflow.skill_workflow_id},
            )
        by_id[workflow.skill_workflow_id] = workflow

    in_degree: Dict[str, int] = {workflow_id: 0 for workflow_id in by_id}
    successors: Dict[str, List[str]] = {workflow_id: [] for workflow_id in by_id}

    for workflow in workflows:
        for dependency_id in workflow.dependency_ids:
            if dependency_id not in by_id:
                raise MissingDependencyError(skill_id, workflow.skill_workflow_id, dependency_id)
            in_degree[workflow.skill_workflow_id] += 1
            successors[dependency_id].append(workflow.skill_workflow_id)

    queue = deque(workflow_id for workflow_id, degree in in_degree.items() if degree == 0)
    ordered: List[WorkflowDefinition] = []

    while queue:
        current = queue.popleft()
        ordered.append(by_id[current])
        for successor in successors[current]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                queue.append(successor)

    if len(ordered) < len(by_id):
        unresolved = [workflow_id for workflow_id, degree in in_degree.items() if degree > 0]
        raise CircularDependencyError(skill_id, unresolved)

    return ordered
