from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys

from taskforge.errors import ErrorCode, InputValidationError, TaskforgeError
from taskforge.main import build_service
from taskforge.service import CreateTaskInput, OrchestratorService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='taskforge', description='Run multi-phase development tasks against a repository')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init', help='Create the standard and per-role collections')

    submit = sub.add_parser('submit', help='Create a task')
    submit.add_argument('description', help='Task description')
    submit.add_argument('--title', default='', help='Optional title (default: first 60 chars of the description)')
    submit.add_argument('--task-id', default='', help='Optional explicit task id')
    submit.add_argument('--enhanced', action=argparse.BooleanOptionalAction, default=True, help='Write files and use git (default: on)')
    submit.add_argument('--create-pr', action='store_true', help='Open a pull request when validation passes')
    submit.add_argument('--start', action='store_true', help='Run the pipeline right after submitting')

    start = sub.add_parser('start', help='Run the pipeline for a submitted task')
    start.add_argument('task_id', help='Task id')

    status = sub.add_parser('status', help='Get task status')
    status.add_argument('task_id', help='Task id')

    tasks = sub.add_parser('tasks', help='List tasks, newest first')
    tasks.add_argument('--limit', type=int, default=20)

    search = sub.add_parser('search', help='Search submitted tasks')
    search.add_argument('query', help='Free text query')
    search.add_argument('--limit', type=int, default=10)

    cancel = sub.add_parser('cancel', help='Cancel a task')
    cancel.add_argument('task_id', help='Task id')

    sub.add_parser('collections', help='List collections with document counts')

    create_collection = sub.add_parser('create-collection', help='Create a collection')
    create_collection.add_argument('name')

    delete_collection = sub.add_parser('delete-collection', help='Delete a collection')
    delete_collection.add_argument('name')

    add_doc = sub.add_parser('add-doc', help='Add a document to a collection')
    add_doc.add_argument('collection')
    source = add_doc.add_mutually_exclusive_group(required=True)
    source.add_argument('--text', default=None, help='Document text')
    source.add_argument('--file', default=None, help='Read document text from a file')
    add_doc.add_argument('--meta', action='append', default=[], help='Metadata in key=value format (repeatable)')

    query = sub.add_parser('query', help='Rank documents in a collection against a query')
    query.add_argument('collection')
    query.add_argument('query', nargs='?', default='')
    query.add_argument('--limit', type=int, default=10)
    query.add_argument('--where', action='append', default=[], help='Metadata filter in key=value format (repeatable)')

    page = sub.add_parser('page', help='Page through a collection')
    page.add_argument('collection')
    page.add_argument('--limit', type=int, default=50)
    page.add_argument('--page', type=int, default=1)
    page.add_argument('--sort-by', default=None, choices=['timestamp'])
    page.add_argument('--sort-dir', default='desc', choices=['asc', 'desc'])

    delete_doc = sub.add_parser('delete-doc', help='Delete one document')
    delete_doc.add_argument('collection')
    delete_doc.add_argument('document_id')

    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _parse_pairs(values: list[str] | None, *, flag_name: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for raw in values or []:
        text = str(raw or '').strip()
        if not text:
            continue
        if '=' not in text:
            raise InputValidationError(f'invalid {flag_name} value: {text} (expected key=value)', field=flag_name)
        key_raw, value_raw = text.split('=', 1)
        key = key_raw.strip()
        if not key:
            raise InputValidationError(f'invalid {flag_name} key: {text}', field=flag_name)
        out[key] = value_raw.strip()
    return out


async def _dispatch(service: OrchestratorService, args: argparse.Namespace):
    command = args.command
    if command == 'init':
        return await service.initialize()
    if command == 'submit':
        view = await service.create_task(
            CreateTaskInput(
                description=args.description,
                title=(args.title.strip() or None),
                use_enhanced=bool(args.enhanced),
                create_pr=bool(args.create_pr),
                task_id=(args.task_id.strip() or None),
            )
        )
        if args.start:
            view = await service.start_task(view.task_id)
        return view.to_dict()
    if command == 'start':
        return (await service.start_task(args.task_id)).to_dict()
    if command == 'status':
        return (await service.get_task(args.task_id)).to_dict()
    if command == 'tasks':
        return [view.to_dict() for view in await service.list_tasks(limit=int(args.limit))]
    if command == 'search':
        return await service.search_tasks(args.query, limit=int(args.limit))
    if command == 'cancel':
        return (await service.cancel_task(args.task_id)).to_dict()

    store = service.store
    if command == 'collections':
        return await store.list_collections()
    if command == 'create-collection':
        return (await store.create_collection(args.name)).to_dict()
    if command == 'delete-collection':
        return (await store.delete_collection(args.name)).to_dict()
    if command == 'add-doc':
        text = args.text if args.text is not None else Path(args.file).read_text(encoding='utf-8')
        metadata = _parse_pairs(args.meta, flag_name='--meta')
        return (await store.add_document(args.collection, {'document': text, 'metadata': metadata})).to_dict()
    if command == 'query':
        filters = _parse_pairs(args.where, flag_name='--where') or None
        hits = await store.query_collection(args.collection, args.query, limit=int(args.limit), filters=filters)
        return [hit.to_dict() for hit in hits]
    if command == 'page':
        result = await store.get_paged(
            args.collection,
            limit=int(args.limit),
            page=int(args.page),
            sort_by=args.sort_by,
            sort_dir=args.sort_dir,
        )
        return result.to_dict()
    if command == 'delete-doc':
        return (await store.delete_document(args.collection, args.document_id)).to_dict()
    raise InputValidationError(f'unsupported command: {command}', field='command')


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        service = build_service()
        payload = asyncio.run(_dispatch(service, args))
    except TaskforgeError as exc:
        print(json.dumps({'code': exc.code.value, 'message': exc.message}, ensure_ascii=True), file=sys.stderr)
        return 1
    except OSError as exc:
        print(json.dumps({'code': ErrorCode.FILESYSTEM.value, 'message': str(exc)}, ensure_ascii=True), file=sys.stderr)
        return 1

    _print_json(payload)
    if isinstance(payload, dict) and payload.get('ok') is False:
        return 1
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
