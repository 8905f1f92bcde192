from __future__ import annotations

import ast
from dataclasses import dataclass, field
import json
import logging

from taskforge.errors import TaskforgeError
from taskforge.plan_parsing import RelevantPaths
from taskforge.storage.files import CODE_EXTENSIONS, WorkspaceFiles

_log = logging.getLogger(__name__)

DEFAULT_FILE_LIMIT = 20
MAX_CONTEXT_FILE_CHARS = 20_000


@dataclass
class CodebaseContext:
    directories: dict[str, list[str]] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    structure: dict[str, dict] = field(default_factory=dict)

    @property
    def summary(self) -> dict:
        return {
            'directory_count': len(self.directories),
            'file_count': len(self.files),
            'class_count': sum(len(item.get('classes', [])) for item in self.structure.values()),
            'function_count': sum(len(item.get('functions', [])) for item in self.structure.values()),
        }

    def describe(self) -> str:
        payload = {
            'directories': sorted(self.directories),
            'files': sorted(self.files),
            'structure': self.structure,
            'summary': self.summary,
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)


def python_structure(source: str) -> dict:
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError):
        return {}
    classes = [node.name for node in tree.body if isinstance(node, ast.ClassDef)]
    functions = [
        node.name
        for node in tree.body
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
    ]
    return {'classes': classes, 'functions': functions}


async def build_codebase_context(
    files: WorkspaceFiles,
    paths: RelevantPaths,
    *,
    file_limit: int = DEFAULT_FILE_LIMIT,
) -> CodebaseContext:
    context = CodebaseContext()
    for directory in paths.directories:
        context.directories[directory] = await files.list_files(directory, recursive=True, extensions=CODE_EXTENSIONS)

    for ref in paths.files[: max(0, int(file_limit))]:
        if not files.exists(ref):
            continue
        try:
            content = await files.read_text(ref)
        except TaskforgeError as exc:
            _log.warning('context_file_skipped path=%s reason=%s', ref, exc.message)
            continue
        context.files[ref] = content[:MAX_CONTEXT_FILE_CHARS]
        if ref.endswith('.py'):
            context.structure[ref] = python_structure(content)
    return context
