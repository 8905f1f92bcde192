from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from uuid import uuid4


class CorruptFileError(ValueError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f'corrupt json file path={path} reason={reason}')
        self.path = Path(path)
        self.reason = reason


def read_json(path: Path) -> dict | None:
    """Return the parsed object, ``None`` when absent, or raise CorruptFileError."""
    target = Path(path)
    if not target.exists():
        return None
    try:
        text = target.read_text(encoding='utf-8')
    except UnicodeDecodeError as exc:
        raise CorruptFileError(target, f'not valid utf-8: {exc.reason} at byte {exc.start}') from exc
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CorruptFileError(target, str(exc)) from exc
    if not isinstance(payload, dict):
        raise CorruptFileError(target, f'expected object got {type(payload).__name__}')
    return payload


def write_json_atomic(path: Path, payload: dict) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f'.{target.name}.{uuid4().hex[:8]}.tmp')
    try:
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding='utf-8')
        os.replace(tmp, target)
    finally:
        if tmp.exists():
            tmp.unlink()


def write_text_atomic(path: Path, content: str) -> None:
    target = Path(path)
    tmp = target.with_name(f'.{target.name}.{uuid4().hex[:8]}.tmp')
    try:
        tmp.write_text(content, encoding='utf-8')
        os.replace(tmp, target)
    finally:
        if tmp.exists():
            tmp.unlink()


async def aread_json(path: Path) -> dict | None:
    return await asyncio.to_thread(read_json, path)


async def awrite_json_atomic(path: Path, payload: dict) -> None:
    await asyncio.to_thread(write_json_atomic, path, payload)
