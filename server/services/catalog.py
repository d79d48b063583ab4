"""Workflow catalog: validated workflow definitions per site.

Backed by the database when one is configured, otherwise by process memory.
Parsed workflows and their static graphs are cached by id.
"""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pydantic import ValidationError

from constants import WORKFLOW_STATUS_ACTIVE
from core.logging import get_logger
from models.nodes import Workflow
from services.execution.errors import NotFoundError, WorkflowValidationError
from services.execution.graph import WorkflowGraph

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


def validate_workflow(data: Dict[str, Any]) -> Workflow:
    """Validate a raw workflow payload.

    Raises:
        WorkflowValidationError: With the pydantic error list attached.
    """
    try:
        return Workflow.model_validate(data)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise WorkflowValidationError(f"Invalid workflow: {len(errors)} error(s)", errors=errors) from e


class WorkflowCatalog:
    """Stores workflows and hands out cached WorkflowGraph views."""

    def __init__(self, database: Optional["Database"] = None):
        self.database = database
        self._workflows: Dict[str, Workflow] = {}
        self._graphs: Dict[str, WorkflowGraph] = {}
        self._completions: Dict[str, int] = {}

    async def save(self, data: Dict[str, Any]) -> Workflow:
        """Validate and store a workflow, replacing any previous version."""
        workflow = validate_workflow(data)

        if self.database is not None:
            saved = await self.database.save_workflow(
                workflow.id, workflow.site_id, workflow.name, workflow.status, workflow.to_dict()
            )
            if not saved:
                raise RuntimeError(f"Failed to persist workflow {workflow.id}")

        self._workflows[workflow.id] = workflow
        self._graphs.pop(workflow.id, None)
        logger.info("Workflow saved", workflow_id=workflow.id, site_id=workflow.site_id,
                    status=workflow.status, nodes=len(workflow.nodes), edges=len(workflow.edges))
        return workflow

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        workflow = self._workflows.get(workflow_id)
        if workflow is not None or self.database is None:
            return workflow

        record = await self.database.get_workflow(workflow_id)
        if record is None:
            return None
        workflow = Workflow.model_validate(record.data)
        self._workflows[workflow_id] = workflow
        return workflow

    async def require(self, workflow_id: str) -> Workflow:
        workflow = await self.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def graph(self, workflow_id: str) -> WorkflowGraph:
        """Static graph for a workflow, built once per stored version."""
        graph = self._graphs.get(workflow_id)
        if graph is None:
            graph = WorkflowGraph(await self.require(workflow_id))
            self._graphs[workflow_id] = graph
        return graph

    def graph_for(self, workflow: Workflow) -> WorkflowGraph:
        graph = self._graphs.get(workflow.id)
        if graph is None or graph.workflow is not workflow:
            graph = WorkflowGraph(workflow)
            self._graphs[workflow.id] = graph
        return graph

    async def active_for_site(self, site_id: str) -> List[Workflow]:
        """Active workflows of a site."""
        if self.database is not None:
            records = await self.database.get_site_workflows(site_id, status=WORKFLOW_STATUS_ACTIVE)
            workflows = []
            for record in records:
                workflow = self._workflows.get(record.id)
                if workflow is None:
                    workflow = Workflow.model_validate(record.data)
                    self._workflows[record.id] = workflow
                workflows.append(workflow)
            return workflows

        return [w for w in self._workflows.values()
                if w.site_id == site_id and w.status == WORKFLOW_STATUS_ACTIVE]

    async def delete(self, workflow_id: str) -> bool:
        self._graphs.pop(workflow_id, None)
        existed = self._workflows.pop(workflow_id, None) is not None
        if self.database is not None:
            existed = await self.database.delete_workflow(workflow_id) or existed
        return existed

    async def increment_completions(self, workflow_id: str) -> int:
        """Bump the workflow completion counter and return the in-process count."""
        # No await between read and write
        self._completions[workflow_id] = self._completions.get(workflow_id, 0) + 1
        count = self._completions[workflow_id]
        if self.database is not None:
            await self.database.increment_workflow_completions(workflow_id)
        return count

    def completions(self, workflow_id: str) -> int:
        return self._completions.get(workflow_id, 0)
