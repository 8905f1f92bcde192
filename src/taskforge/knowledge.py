from __future__ import annotations

from datetime import datetime, timezone
import logging

from taskforge.domain.knowledge import KnowledgeType, normalize_knowledge_type
from taskforge.errors import ErrorCode
from taskforge.storage.documents import DocumentStore, QueryHit, StoreResult

_log = logging.getLogger(__name__)

KNOWLEDGE_SOURCE = 'pipeline'


def agent_collection(role: str) -> str:
    return f'agent_{role}'


class KnowledgeRecorder:
    """Append phase artifacts to the owning role's collection.

    Recording is a side effect of a phase; a failure here is logged and
    reported in the returned result, never raised.
    """

    def __init__(self, store: DocumentStore, *, source: str = KNOWLEDGE_SOURCE):
        self.store = store
        self.source = source

    async def record(
        self,
        *,
        role: str,
        task_id: str,
        kind: str | KnowledgeType,
        content: str,
        extra: dict | None = None,
    ) -> StoreResult:
        metadata = {
            **dict(extra or {}),
            'type': normalize_knowledge_type(kind),
            'task_id': str(task_id),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'source': self.source,
            'author': role,
        }
        collection = agent_collection(role)
        try:
            result = await self.store.add_document(collection, {'document': content, 'metadata': metadata})
        except Exception as exc:
            _log.error('knowledge_record_failed collection=%s task_id=%s', collection, task_id, exc_info=True)
            return StoreResult(ok=False, message=str(exc), code=ErrorCode.EXTERNAL)
        if not result.ok:
            _log.warning(
                'knowledge_record_rejected collection=%s task_id=%s code=%s message=%s',
                collection,
                task_id,
                result.code.value if result.code else None,
                '; '.join(result.errors) or result.message,
            )
        return result

    async def recall(self, role: str, query: str, *, limit: int = 5, filters: dict | None = None) -> list[QueryHit]:
        return await self.store.query_collection(agent_collection(role), query, limit=limit, filters=filters)

    async def ensure_collections(self, roles) -> None:
        for role in roles:
            await self.store.create_collection(agent_collection(role))
