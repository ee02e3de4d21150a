"""Workflow materialization: turning a package workflow into a user-owned workflow.

Two modes exist. ``clone`` duplicates the source canvas for the installing
user. ``generate`` asks an LLM to rebuild the workflow from the source
canvas, with variable values cleared so the author's inputs never leak to
the installing user.
"""

import json
import uuid
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)

from app.core.logging import logger
from app.core.skills.errors import MaterializationError
from app.core.skills.schema import (
    MaterializationMode,
    User,
)

WORKFLOW_GENERATE_SYSTEM_PROMPT = """You rebuild workflows for a new owner.
You receive the nodes, edges and variables of a source workflow and a short goal.
Respond with ONLY a JSON object of the form:
{"nodes": [...], "edges": [...]}
Keep node ids stable where possible and do not invent variables."""


class WorkflowStore(ABC):
    """Storage for user-owned workflows (canvases)."""

    @abstractmethod
    async def get_raw(self, workflow_id: str) -> Dict[str, Any]:
        """Return a workflow's nodes, edges and variables without an ownership check.

        Raises:
            KeyError: If the workflow does not exist.
        """

    @abstractmethod
    async def duplicate(self, user: User, source_workflow_id: str, title: str) -> str:
        """Copy a workflow into the user's account and return the new id."""

    @abstractmethod
    async def create(self, user: User, title: str, data: Dict[str, Any]) -> str:
        """Create a workflow for the user and return its id."""

    @abstractmethod
    async def delete(self, workflow_id: str) -> None:
        """Soft-delete a workflow."""


class InMemoryWorkflowStore(WorkflowStore):
    """Workflow store kept in a dict, used for local runs and tests."""

    def __init__(self):
        """Initialize an empty store."""
        self._workflows: Dict[str, Dict[str, Any]] = {}

    def seed(self, workflow_id: str, data: Dict[str, Any], uid: str = "system", title: str = "") -> None:
        """Add a source workflow, typically a package author's canvas."""
        self._workflows[workflow_id] = {
            "uid": uid,
            "title": title or workflow_id,
            "nodes": list(data.get("nodes", [])),
            "edges": list(data.get("edges", [])),
            "variables": list(data.get("variables", [])),
            "deleted": False,
        }

    def get(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored record, deleted or not."""
        return self._workflows.get(workflow_id)

    async def get_raw(self, workflow_id: str) -> Dict[str, Any]:
        record = self._workflows.get(workflow_id)
        if record is None or record["deleted"]:
            raise KeyError(f"Workflow '{workflow_id}' not found")
        return {
            "nodes": [dict(n) for n in record["nodes"]],
            "edges": [dict(e) for e in record["edges"]],
            "variables": [dict(v) for v in record["variables"]],
        }

    async def duplicate(self, user: User, source_workflow_id: str, title: str) -> str:
        data = await self.get_raw(source_workflow_id)
        return await self.create(user, title, data)

    async def create(self, user: User, title: str, data: Dict[str, Any]) -> str:
        workflow_id = f"c-{uuid.uuid4().hex[:16]}"
        self.seed(workflow_id, data, uid=user.uid, title=title)
        logger.debug("workflow_created", workflow_id=workflow_id, uid=user.uid, title=title)
        return workflow_id

    async def delete(self, workflow_id: str) -> None:
        record = self._workflows.get(workflow_id)
        if record is None:
            raise KeyError(f"Workflow '{workflow_id}' not found")
        record["deleted"] = True
        logger.info("workflow_deleted", workflow_id=workflow_id)


class WorkflowMaterializer(ABC):
    """Produces a user-owned workflow from a package workflow's source."""

    @abstractmethod
    async def materialize(
        self,
        user: User,
        source_canvas_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> str:
        """Materialize one workflow for the user.

        Args:
            user: The installing user.
            source_canvas_id: The package workflow's source canvas.
            name: Workflow name, used as the new workflow's title.
            description: Optional description.

        Returns:
            str: The new workflow id.

        Raises:
            MaterializationError: If the workflow could not be produced.
        """


def _require_source(source_canvas_id: Optional[str], name: str) -> str:
    if not source_canvas_id:
        raise MaterializationError(f'Workflow "{name}" has no source canvas ID', {"name": name})
    return source_canvas_id


class CloneMaterializer(WorkflowMaterializer):
    """Duplicates the source canvas into the installing user's account."""

    def __init__(self, store: WorkflowStore):
        self._store = store

    async def materialize(
        self,
        user: User,
        source_canvas_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> str:
        source = _require_source(source_canvas_id, name)
        try:
            workflow_id = await self._store.duplicate(user, source, name)
        except Exception as e:
            logger.exception("workflow_clone_failed", source_canvas_id=source, workflow_name=name, error=str(e))
            raise MaterializationError(f'Failed to clone workflow "{name}": {e}') from e

        logger.info("workflow_cloned", source_canvas_id=source, workflow_id=workflow_id, uid=user.uid)
        return workflow_id


class GenerateMaterializer(WorkflowMaterializer):
    """Rebuilds a workflow with an LLM, seeded by the source canvas.

    ``llm`` is any LangChain chat model (anything with ``ainvoke``).
    """

    def __init__(self, store: WorkflowStore, llm: Any):
        self._store = store
        self._llm = llm

    async def materialize(
        self,
        user: User,
        source_canvas_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> str:
        source = _require_source(source_canvas_id, name)
        try:
            raw = await self._store.get_raw(source)
            # The installing user supplies their own values
            variables = [{**variable, "value": []} for variable in raw.get("variables", [])]
            query = description or f"Generate workflow: {name}"

            logger.info(
                "workflow_generation_started",
                source_canvas_id=source,
                node_count=len(raw.get("nodes", [])),
                edge_count=len(raw.get("edges", [])),
                variable_count=len(variables),
            )

            messages: List[BaseMessage] = [
                SystemMessage(content=WORKFLOW_GENERATE_SYSTEM_PROMPT),
                HumanMessage(
                    content=json.dumps(
                        {
                            "goal": query,
                            "nodes": raw.get("nodes", []),
                            "edges": raw.get("edges", []),
                            "variables": variables,
                        }
                    )
                ),
            ]
            response: AIMessage = await self._llm.ainvoke(messages)
            plan = self._parse_workflow_json(response.content)

            workflow_id = await self._store.create(
                user,
                name,
                {"nodes": plan.get("nodes", []), "edges": plan.get("edges", []), "variables": variables},
            )
        except Exception as e:
            logger.exception("workflow_generation_failed", source_canvas_id=source, workflow_name=name, error=str(e))
            raise MaterializationError(f'Failed to generate workflow "{name}": {e}') from e

        logger.info("workflow_generated", source_canvas_id=source, workflow_id=workflow_id, uid=user.uid)
        return workflow_id

    @staticmethod
    def _parse_workflow_json(content: str) -> Dict[str, Any]:
        """Extract the JSON object from an LLM response, handling markdown code blocks."""
        text = content.strip()
        if "```" in text:
            text = text.split("```")[1]
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Generated workflow is not a JSON object")
        return data


class ModeDispatchMaterializer(WorkflowMaterializer):
    """Routes every materialization to the implementation for one mode."""

    def __init__(
        self,
        mode: MaterializationMode,
        clone: WorkflowMaterializer,
        generate: Optional[WorkflowMaterializer] = None,
    ):
        if mode == MaterializationMode.GENERATE and generate is None:
            raise ValueError("generate mode requires a generate materializer")
        self.mode = mode
        self._clone = clone
        self._generate = generate

    async def materialize(
        self,
        user: User,
        source_canvas_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> str:
        if self.mode == MaterializationMode.CLONE:
            return await self._clone.materialize(user, source_canvas_id, name, description)
        if self.mode == MaterializationMode.GENERATE:
            return await self._generate.materialize(user, source_canvas_id, name, description)
        raise ValueError(f"Unknown materialization mode: {self.mode}")
