from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from pathlib import Path
import shutil

from taskforge.errors import FilesystemError, SecurityError
from taskforge.storage import jsonio
from taskforge.storage.locks import LockManager

_log = logging.getLogger(__name__)

PROTECTED_DIRECTORIES = ('.git', 'node_modules')
SAFE_EXTENSIONS = frozenset(
    {
        '.py', '.pyi', '.toml', '.cfg', '.ini',
        '.js', '.jsx', '.ts', '.tsx', '.md', '.json', '.html', '.css', '.scss',
        '.svg', '.yml', '.yaml', '.txt', '.ejs', '.hbs', '.vue', '.svelte',
    }
)
CODE_EXTENSIONS = ('.py', '.js', '.jsx', '.ts', '.tsx', '.vue', '.svelte', '.json', '.md')


def _backup_stamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')


class WorkspaceFiles:
    """Reads and guarded writes inside one repository root."""

    def __init__(
        self,
        repository_root: Path,
        *,
        locks: LockManager,
        backup_dir: Path,
        protected_dirs: tuple[Path, ...] = (),
        safe_extensions: frozenset[str] = SAFE_EXTENSIONS,
        lock_timeout_ms: int | None = None,
    ):
        self.repository_root = Path(repository_root).resolve()
        self.locks = locks
        self.backup_dir = Path(backup_dir).resolve()
        self.safe_extensions = frozenset(ext.lower() for ext in safe_extensions)
        self.lock_timeout_ms = lock_timeout_ms
        protected = [self.repository_root / name for name in PROTECTED_DIRECTORIES]
        protected.extend(Path(item).resolve() for item in protected_dirs)
        protected.append(self.backup_dir)
        self.protected_dirs = tuple(protected)

    def resolve_path(self, path: str | Path) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.repository_root / candidate
        return candidate.resolve(strict=False)

    def relative(self, path: str | Path) -> str:
        resolved = self.resolve_path(path)
        try:
            return resolved.relative_to(self.repository_root).as_posix()
        except ValueError:
            return str(resolved)

    def _is_within(self, path: Path, root: Path) -> bool:
        try:
            path.relative_to(root)
        except ValueError:
            return False
        return True

    def _is_protected(self, path: Path) -> bool:
        return any(self._is_within(path, root) for root in self.protected_dirs)

    def validate_write_path(self, path: str | Path) -> Path:
        resolved = self.resolve_path(path)
        if not self._is_within(resolved, self.repository_root):
            raise SecurityError(
                f'path is outside the repository root: {path}',
                details={'path': str(resolved)},
            )
        if self._is_protected(resolved):
            raise SecurityError(
                f'path targets a protected directory: {path}',
                details={'path': str(resolved)},
            )
        if resolved.suffix.lower() not in self.safe_extensions:
            raise SecurityError(
                f'file extension not allowed: {resolved.suffix or "<none>"}',
                details={'path': str(resolved)},
            )
        return resolved

    def exists(self, path: str | Path) -> bool:
        return self.resolve_path(path).is_file()

    async def read_text(self, path: str | Path) -> str:
        resolved = self.resolve_path(path)
        if not self._is_within(resolved, self.repository_root):
            raise SecurityError(f'path is outside the repository root: {path}', details={'path': str(resolved)})
        try:
            return await asyncio.to_thread(resolved.read_text, encoding='utf-8')
        except OSError as exc:
            raise FilesystemError(f'read failed for {path}: {exc}', details={'path': str(resolved)}) from exc
        except UnicodeDecodeError as exc:
            raise FilesystemError(
                f'file is not valid utf-8: {path}',
                details={'path': str(resolved), 'position': exc.start},
            ) from exc

    async def list_files(
        self,
        directory: str | Path = '.',
        *,
        recursive: bool = True,
        extensions: tuple[str, ...] | None = None,
    ) -> list[str]:
        base = self.resolve_path(directory)
        if not self._is_within(base, self.repository_root) or not base.is_dir():
            return []
        wanted = tuple(ext.lower() for ext in (extensions or ()))

        def walk() -> list[str]:
            found: list[str] = []
            iterator = base.rglob('*') if recursive else base.glob('*')
            for item in iterator:
                if not item.is_file() or self._is_protected(item.resolve(strict=False)):
                    continue
                if wanted and item.suffix.lower() not in wanted:
                    continue
                found.append(item.relative_to(self.repository_root).as_posix())
            return sorted(found)

        return await asyncio.to_thread(walk)

    def _backup(self, target: Path) -> Path | None:
        if not target.is_file():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        backup = self.backup_dir / f'{target.name}.{_backup_stamp()}.bak'
        shutil.copy2(target, backup)
        return backup

    def _restore(self, backup: Path, target: Path) -> bool:
        try:
            shutil.copy2(backup, target)
        except OSError:
            _log.error('file_restore_failed path=%s backup=%s', target, backup, exc_info=True)
            return False
        _log.warning('file_restored path=%s backup=%s', target, backup)
        return True

    def _write(self, target: Path, content: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        jsonio.write_text_atomic(target, content)

    async def write_text(self, path: str | Path, content: str, *, create_backup: bool = True) -> dict:
        """Backup, write, and restore the backup if the write fails.

        Returns ``{'path', 'backup', 'created'}``. Raises SecurityError before
        touching anything, LockTimeoutError when the file is busy, and
        FilesystemError after an attempted restore.
        """
        target = self.validate_write_path(path)
        async with self.locks.hold(target, timeout_ms=self.lock_timeout_ms):
            created = not target.exists()
            backup: Path | None = None
            try:
                if create_backup:
                    backup = await asyncio.to_thread(self._backup, target)
                await asyncio.to_thread(self._write, target, content)
            except OSError as exc:
                restored = False
                if backup is not None:
                    restored = await asyncio.to_thread(self._restore, backup, target)
                raise FilesystemError(
                    f'write failed for {self.relative(target)}: {exc}',
                    details={
                        'path': str(target),
                        'restored_from': (str(backup) if restored and backup else None),
                    },
                ) from exc
        _log.info('file_written path=%s created=%s', self.relative(target), created)
        return {
            'path': self.relative(target),
            'backup': (str(backup) if backup else None),
            'created': created,
        }


def default_backup_dir(data_root: Path) -> Path:
    return Path(data_root) / 'backups'


__all__ = ['CODE_EXTENSIONS', 'PROTECTED_DIRECTORIES', 'SAFE_EXTENSIONS', 'WorkspaceFiles', 'default_backup_dir']
