from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Protocol

import httpx

from taskforge.errors import VcsError

_log = logging.getLogger(__name__)

GITHUB_API_BASE = 'https://api.github.com'
_GITHUB_REMOTE_RE = re.compile(r'github\.com[:/]([^/]+)/([^/]+?)(?:\.git)?/?$')


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    command: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    url: str


class VcsAdapter(Protocol):
    async def is_repository(self) -> bool:
        ...

    async def current_branch(self) -> str:
        ...

    async def is_working_tree_clean(self) -> bool:
        ...

    async def create_branch(self, name: str) -> None:
        ...

    async def stage_files(self, paths: list[str]) -> None:
        ...

    async def staged_files(self) -> list[str]:
        ...

    async def commit(self, message: str) -> str:
        ...

    async def push(self, remote: str, branch: str) -> None:
        ...

    async def open_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequestInfo:
        ...


def parse_github_repo(remote_url: str) -> tuple[str, str] | None:
    match = _GITHUB_REMOTE_RE.search(str(remote_url or '').strip())
    if not match:
        return None
    return match.group(1), match.group(2)


class GitAdapter:
    """git via subprocess, pull requests via the GitHub REST API."""

    def __init__(
        self,
        repository_root: Path,
        *,
        remote: str = 'origin',
        github_token: str | None = None,
        github_api_base: str = GITHUB_API_BASE,
        timeout_seconds: float = 60.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.repository_root = Path(repository_root)
        self.remote = remote
        self.github_token = github_token
        self.github_api_base = github_api_base.rstrip('/')
        self.timeout_seconds = float(timeout_seconds)
        self._http_transport = http_transport

    async def _git(self, *args: str, check: bool = True) -> CommandResult:
        argv = ['git', *args]
        display = ' '.join(argv)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.repository_root),
            )
        except FileNotFoundError as exc:
            raise VcsError('git executable not found', details={'command': display}) from exc
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise VcsError(f'git command timed out: {display}', details={'command': display}) from exc
        result = CommandResult(
            ok=(process.returncode == 0),
            command=display,
            returncode=int(process.returncode or 0),
            stdout=stdout.decode('utf-8', errors='replace').strip(),
            stderr=stderr.decode('utf-8', errors='replace').strip(),
        )
        if check and not result.ok:
            raise VcsError(
                f'git command failed: {display}: {result.stderr or result.stdout}',
                details={'command': display, 'returncode': result.returncode},
            )
        return result

    async def is_repository(self) -> bool:
        if not self.repository_root.is_dir():
            return False
        try:
            result = await self._git('rev-parse', '--is-inside-work-tree', check=False)
        except VcsError:
            return False
        return result.ok and result.stdout == 'true'

    async def current_branch(self) -> str:
        return (await self._git('rev-parse', '--abbrev-ref', 'HEAD')).stdout

    async def is_working_tree_clean(self) -> bool:
        return not (await self._git('status', '--porcelain')).stdout

    async def create_branch(self, name: str) -> None:
        exists = await self._git('rev-parse', '--verify', '--quiet', f'refs/heads/{name}', check=False)
        if exists.ok:
            _log.info('git_branch_exists branch=%s; checking out', name)
            await self._git('checkout', name)
            return
        await self._git('checkout', '-b', name)

    async def stage_files(self, paths: list[str]) -> None:
        if not paths:
            return
        await self._git('add', '--', *paths)

    async def staged_files(self) -> list[str]:
        out = (await self._git('diff', '--cached', '--name-only')).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def commit(self, message: str) -> str:
        await self._git('commit', '-m', message)
        return (await self._git('rev-parse', 'HEAD')).stdout

    async def push(self, remote: str, branch: str) -> None:
        await self._git('push', '-u', remote, branch)

    async def remote_url(self, remote: str | None = None) -> str:
        return (await self._git('remote', 'get-url', remote or self.remote)).stdout

    async def open_pull_request(self, *, title: str, body: str, head: str, base: str = 'main') -> PullRequestInfo:
        if not self.github_token:
            raise VcsError('GitHub token is not configured')
        if not title or not head:
            raise VcsError('pull request title and head branch are required')
        url = await self.remote_url()
        parsed = parse_github_repo(url)
        if parsed is None:
            raise VcsError(f'could not parse GitHub repository from remote URL: {url}')
        owner, repo = parsed
        async with httpx.AsyncClient(
            base_url=self.github_api_base,
            headers={
                'Authorization': f'Bearer {self.github_token}',
                'Accept': 'application/vnd.github+json',
                'X-GitHub-Api-Version': '2022-11-28',
            },
            timeout=30.0,
            transport=self._http_transport,
        ) as client:
            try:
                response = await client.post(
                    f'/repos/{owner}/{repo}/pulls',
                    json={'title': title, 'body': body, 'head': head, 'base': base},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise VcsError(
                    f'GitHub API error {exc.response.status_code}: {exc.response.text[:300]}',
                    details={'status_code': exc.response.status_code},
                ) from exc
            except httpx.HTTPError as exc:
                raise VcsError(f'GitHub API request failed: {exc}') from exc
        data = response.json()
        info = PullRequestInfo(number=int(data['number']), url=str(data.get('html_url') or ''))
        _log.info('pull_request_opened repo=%s/%s number=%s', owner, repo, info.number)
        return info
