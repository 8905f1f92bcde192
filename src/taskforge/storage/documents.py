from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from pathlib import Path
import re
from typing import Callable
from uuid import uuid4

from taskforge.errors import ErrorCode, InputValidationError, NotFoundError, TaskforgeError
from taskforge.storage.jsonio import CorruptFileError, aread_json, awrite_json_atomic
from taskforge.storage.locks import LockManager
from taskforge.storage.similarity import rank
from taskforge.storage.validation import process_document

_log = logging.getLogger(__name__)

_COLLECTION_NAME_RE = re.compile(r'^[A-Za-z0-9_.-]+$')
MAX_PAGE_SIZE = 500
STANDARD_COLLECTIONS = ('project_docs', 'framework_api', 'tutorials', 'examples', 'tasks')


@dataclass(frozen=True)
class StoreResult:
    ok: bool
    message: str = ''
    code: ErrorCode | None = None
    id: str | None = None
    ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    created: bool = False

    @classmethod
    def from_error(cls, exc: TaskforgeError, *, errors: list[str] | None = None) -> StoreResult:
        return cls(ok=False, message=exc.message, code=exc.code, errors=list(errors or []))

    def to_dict(self) -> dict:
        return {
            'ok': self.ok,
            'message': self.message,
            'code': (self.code.value if self.code else None),
            'id': self.id,
            'ids': list(self.ids),
            'errors': list(self.errors),
            'created': self.created,
        }


@dataclass(frozen=True)
class QueryHit:
    id: str
    document: str
    metadata: dict
    score: float

    def to_dict(self) -> dict:
        return {'id': self.id, 'document': self.document, 'metadata': dict(self.metadata), 'score': self.score}


@dataclass(frozen=True)
class DocumentPage:
    documents: list[dict]
    total_count: int
    page: int
    total_pages: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            'documents': list(self.documents),
            'total_count': self.total_count,
            'page': self.page,
            'total_pages': self.total_pages,
            'has_more': self.has_more,
        }


def _matches_filters(metadata: dict, filters: dict | None) -> bool:
    if not filters:
        return True
    return all(metadata.get(key) == value for key, value in filters.items())


class DocumentStore:
    """File-backed JSON collections.

    Every mutation goes through the collection's lock and an atomic rewrite.
    Reads are lock-free: a reader may see an older version of a collection but
    never a partially written one.
    """

    def __init__(self, root: Path, *, locks: LockManager, lock_timeout_ms: int | None = None):
        self.root = Path(root)
        self.collections_dir = self.root / 'collections'
        self.locks = locks
        self.lock_timeout_ms = lock_timeout_ms

    def collection_path(self, name: str) -> Path:
        text = str(name or '').strip()
        if not text or text in {'.', '..'} or not _COLLECTION_NAME_RE.match(text):
            raise InputValidationError(f'invalid collection name: {name!r}', field='collection')
        return self.collections_dir / f'{text}.json'

    async def initialize(self, names) -> list[StoreResult]:
        results = []
        for name in names:
            results.append(await self.create_collection(name))
        return results

    async def create_collection(self, name: str) -> StoreResult:
        try:
            path = self.collection_path(name)
            if path.exists():
                return StoreResult(ok=True, message=f'Collection {name} already exists', created=False)
            async with self.locks.hold(path, timeout_ms=self.lock_timeout_ms):
                if path.exists():
                    return StoreResult(ok=True, message=f'Collection {name} already exists', created=False)
                await awrite_json_atomic(path, {'documents': []})
        except TaskforgeError as exc:
            return StoreResult.from_error(exc)
        except OSError as exc:
            _log.error('collection_create_failed name=%s error=%s', name, exc)
            return StoreResult(ok=False, message=str(exc), code=ErrorCode.FILESYSTEM)
        _log.info('collection_created name=%s', name)
        return StoreResult(ok=True, message=f'Collection {name} created', created=True)

    async def delete_collection(self, name: str) -> StoreResult:
        try:
            path = self.collection_path(name)
            async with self.locks.hold(path, timeout_ms=self.lock_timeout_ms):
                if not path.exists():
                    raise NotFoundError(f'Collection {name} not found')
                path.unlink()
        except TaskforgeError as exc:
            return StoreResult.from_error(exc)
        except OSError as exc:
            _log.error('collection_delete_failed name=%s error=%s', name, exc)
            return StoreResult(ok=False, message=str(exc), code=ErrorCode.FILESYSTEM)
        _log.info('collection_deleted name=%s', name)
        return StoreResult(ok=True, message=f'Collection {name} deleted')

    async def add_document(self, collection: str, doc: dict) -> StoreResult:
        result = await self.add_documents(collection, [doc])
        if result.ok:
            return StoreResult(ok=True, message='Document added', id=result.ids[0], ids=result.ids)
        return result

    async def add_documents(self, collection: str, docs: list[dict]) -> StoreResult:
        """Validate every document first; any failure rejects the whole batch."""
        prepared: list[dict] = []
        errors: list[str] = []
        for index, doc in enumerate(docs or []):
            outcome = process_document(doc)
            if not outcome.ok or outcome.document is None:
                prefix = f'[{index}] ' if len(docs) > 1 else ''
                errors.extend(f'{prefix}{message}' for message in outcome.errors)
                continue
            prepared.append(outcome.document)
        if not docs:
            errors.append('At least one document is required')
        if errors:
            return StoreResult(
                ok=False,
                message='Document validation failed',
                code=ErrorCode.VALIDATION,
                errors=errors,
            )

        entries = [
            {'id': uuid4().hex, 'document': item['document'], 'metadata': item['metadata']}
            for item in prepared
        ]

        def append(documents: list[dict]) -> None:
            documents.extend(entries)

        failure = await self._mutate(collection, append, create=True)
        if failure is not None:
            return failure
        ids = [entry['id'] for entry in entries]
        _log.debug('documents_added collection=%s count=%s', collection, len(ids))
        return StoreResult(ok=True, message=f'{len(ids)} document(s) added', id=ids[0], ids=ids)

    async def delete_document(self, collection: str, document_id: str) -> StoreResult:
        def remove(documents: list[dict]) -> None:
            for index, entry in enumerate(documents):
                if entry.get('id') == document_id:
                    del documents[index]
                    return
            raise NotFoundError(f'Document {document_id} not found in {collection}')

        failure = await self._mutate(collection, remove, create=False)
        if failure is not None:
            return failure
        return StoreResult(ok=True, message='Document deleted', id=document_id)

    async def query_collection(
        self,
        collection: str,
        query: str = '',
        *,
        limit: int = 10,
        filters: dict | None = None,
    ) -> list[QueryHit]:
        documents = await self._load_documents(collection)
        filtered = [entry for entry in documents if _matches_filters(dict(entry.get('metadata') or {}), filters)]
        bounded = max(0, int(limit))
        if not str(query or '').strip():
            return [self._hit(entry, 1.0) for entry in filtered[:bounded]]
        ranked = rank(query, ((entry, str(entry.get('document') or '')) for entry in filtered), limit=bounded)
        return [self._hit(entry, score) for entry, score in ranked]

    async def get_document(self, collection: str, document_id: str) -> dict | None:
        for entry in await self._load_documents(collection):
            if entry.get('id') == document_id:
                return dict(entry)
        return None

    async def get_paged(
        self,
        collection: str,
        *,
        limit: int = 50,
        page: int = 1,
        sort_by: str | None = None,
        sort_dir: str = 'desc',
    ) -> DocumentPage:
        documents = await self._load_documents(collection)
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        if sort_by == 'timestamp':
            documents = sorted(
                documents,
                key=lambda entry: str((entry.get('metadata') or {}).get('timestamp') or ''),
                reverse=(str(sort_dir).lower() != 'asc'),
            )
        total = len(documents)
        total_pages = math.ceil(total / limit) if total else 0
        start = (page - 1) * limit
        return DocumentPage(
            documents=[dict(entry) for entry in documents[start:start + limit]],
            total_count=total,
            page=page,
            total_pages=total_pages,
            has_more=(start + limit) < total,
        )

    async def list_collections(self) -> list[dict]:
        if not self.collections_dir.exists():
            return []
        out = []
        for path in sorted(self.collections_dir.glob('*.json')):
            name = path.stem
            out.append({'name': name, 'count': len(await self._load_documents(name))})
        return out

    async def count(self, collection: str) -> int:
        return len(await self._load_documents(collection))

    async def _load_documents(self, collection: str) -> list[dict]:
        try:
            payload = await aread_json(self.collection_path(collection))
        except InputValidationError:
            return []
        except CorruptFileError as exc:
            _log.warning('collection_unreadable collection=%s reason=%s', collection, exc.reason)
            return []
        if payload is None:
            return []
        documents = payload.get('documents')
        return list(documents) if isinstance(documents, list) else []

    async def _mutate(
        self,
        collection: str,
        mutator: Callable[[list[dict]], None],
        *,
        create: bool,
    ) -> StoreResult | None:
        """Run ``mutator`` on the live document list under the collection lock.

        Returns ``None`` on success or a failed StoreResult; nothing is raised.
        """
        try:
            path = self.collection_path(collection)
            async with self.locks.hold(path, timeout_ms=self.lock_timeout_ms):
                payload = await aread_json(path)
                if payload is None:
                    if not create:
                        raise NotFoundError(f'Collection {collection} not found')
                    payload = {'documents': []}
                documents = payload.get('documents')
                if not isinstance(documents, list):
                    raise CorruptFileError(path, 'documents is not a list')
                mutator(documents)
                await awrite_json_atomic(path, payload)
        except TaskforgeError as exc:
            if exc.code is ErrorCode.LOCK_TIMEOUT:
                _log.warning('collection_write_lock_timeout collection=%s', collection)
            return StoreResult.from_error(exc)
        except CorruptFileError as exc:
            _log.error('collection_corrupt collection=%s reason=%s', collection, exc.reason)
            return StoreResult(ok=False, message=str(exc), code=ErrorCode.FILESYSTEM)
        except OSError as exc:
            _log.error('collection_write_failed collection=%s error=%s', collection, exc)
            return StoreResult(ok=False, message=str(exc), code=ErrorCode.FILESYSTEM)
        return None

    @staticmethod
    def _hit(entry: dict, score: float) -> QueryHit:
        return QueryHit(
            id=str(entry.get('id') or ''),
            document=str(entry.get('document') or ''),
            metadata=dict(entry.get('metadata') or {}),
            score=float(score),
        )
