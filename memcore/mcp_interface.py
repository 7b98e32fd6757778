"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.core import MaintenanceJob, MemoryOperation
from .models.errors import MemcoreError
from .services.memory_management import MemoryManagementService
from .utils.config import config
from .utils.logging_config import get_logger
from .utils.timestamp_utils import to_iso

logger = get_logger(__name__)


def _require_owner(owner_id: str) -> None:
    if not owner_id or not owner_id.strip():
        raise ValueError('Owner ID is required')


def _outcome(entry: MemoryOperation) -> Dict[str, Any]:
    return {
        'operation': entry.operation,
        'status': entry.status,
        'target_id': entry.target_id,
        'record_ids': list(entry.result_record_ids),
        'reasoning': entry.reasoning,
    }


def _job(job: MaintenanceJob) -> Dict[str, Any]:
    return {
        'id': job.id,
        'job_type': job.job_type,
        'owner_id': job.owner_id,
        'status': job.status,
        'attempts': job.attempts,
        'last_error': job.last_error,
        'finished_at': to_iso(job.finished_at),
    }


class MemoryTools:
    """Tool implementations exposed over MCP."""

    def __init__(self, memory_service: MemoryManagementService):
        self.memory_service = memory_service

    def remember(self, owner_id: str, text: str) -> List[Dict[str, Any]]:
        """Learn from a note or message.

        Args:
            owner_id: Owner ID
            text: Raw observation to learn from

        Returns:
            One outcome per extracted fact (operation, status, affected record ids, reasoning)
        """
        _require_owner(owner_id)
        try:
            outcomes = self.memory_service.learn(owner_id, text)
            logger.debug(f'MCP remember produced {len(outcomes)} operations for owner {owner_id}')
            return [_outcome(entry) for entry in outcomes]
        except MemcoreError as e:
            logger.error(f'Memory error in MCP remember: {e}')
            raise Exception(f'Remember failed: {e}')

    def recall(self, owner_id: str, query: str, token_budget: Optional[int] = None) -> Dict[str, Any]:
        """Retrieve token-bounded context for a query.

        Args:
            owner_id: Owner ID
            query: Natural language query
            token_budget: Maximum estimated tokens to return

        Returns:
            Summaries or records, with the tokens used and the tier that answered
        """
        _require_owner(owner_id)
        if not query or not query.strip():
            return {'source': 'none', 'tokens_used': 0, 'summaries': [], 'records': []}
        try:
            return self.memory_service.retrieve(owner_id, query, token_budget=token_budget).to_dict()
        except MemcoreError as e:
            logger.error(f'Memory error in MCP recall: {e}')
            raise Exception(f'Recall failed: {e}')

    def forget_memory(self, owner_id: str, record_id: str) -> Dict[str, Any]:
        """Permanently delete a memory at the user's request.

        Args:
            owner_id: Owner ID
            record_id: Record to delete
        """
        _require_owner(owner_id)
        try:
            return _outcome(self.memory_service.forget(owner_id, record_id))
        except MemcoreError as e:
            logger.error(f'Memory error in MCP forget: {e}')
            raise Exception(f'Forget failed: {e}')

    def memory_history(self, owner_id: str, record_id: str) -> List[Dict[str, Any]]:
        """Version chain of a memory, oldest first.

        Args:
            owner_id: Owner ID
            record_id: Any record in the chain
        """
        _require_owner(owner_id)
        try:
            return [record.to_dict() for record in self.memory_service.get_history(owner_id, record_id)]
        except MemcoreError as e:
            logger.error(f'Memory error in MCP history: {e}')
            raise Exception(f'History lookup failed: {e}')

    def run_maintenance(self, owner_id: Optional[str] = None, job_types: Optional[List[str]] = None) -> Dict[str, Any]:
        """Run maintenance jobs now.

        Args:
            owner_id: Restrict to one owner
            job_types: Job types to enqueue first, in order (decay, consolidate, resummarize, reindex, cleanup)
        """
        try:
            return self.memory_service.run_maintenance(owner_id=owner_id, job_types=job_types)
        except (MemcoreError, ValueError) as e:
            logger.error(f'Error in MCP maintenance run: {e}')
            raise Exception(f'Maintenance failed: {e}')

    def failed_jobs(self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Maintenance jobs that exhausted their retries."""
        return [_job(job) for job in self.memory_service.list_failed_jobs(owner_id)]


def build_server(memory_service: MemoryManagementService) -> FastMCP:
    """Create the FastMCP application with every memory tool registered."""
    mcp = FastMCP('Memory Engine')
    tools = MemoryTools(memory_service)
    for tool in (tools.remember, tools.recall, tools.forget_memory, tools.memory_history, tools.run_maintenance, tools.failed_jobs):
        mcp.tool()(tool)
    return mcp


if __name__ == '__main__':
    mcp = build_server(MemoryManagementService())
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
