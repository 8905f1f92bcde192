from __future__ import annotations

from taskforge.adapters import CommandCompletionRunner
from taskforge.config import Settings, load_settings
from taskforge.executor import StepExecutor
from taskforge.knowledge import KnowledgeRecorder
from taskforge.observability import configure_observability
from taskforge.repository import FileTaskRepository
from taskforge.roles import RoleRegistry
from taskforge.run_registry import RunRegistry
from taskforge.service import OrchestratorService
from taskforge.storage.documents import DocumentStore
from taskforge.storage.files import WorkspaceFiles, default_backup_dir
from taskforge.storage.locks import LockManager
from taskforge.vcs import GitAdapter
from taskforge.workflow import PipelineOrchestrator


def build_service(settings: Settings | None = None) -> OrchestratorService:
    settings = settings or load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    locks = LockManager(default_timeout_ms=settings.lock_timeout_ms)
    store = DocumentStore(settings.data_root, locks=locks)
    repository = FileTaskRepository(settings.data_root / 'tasks', locks=locks)
    registry = RunRegistry()
    roles = RoleRegistry()
    files = WorkspaceFiles(
        settings.repository_root,
        locks=locks,
        backup_dir=default_backup_dir(settings.data_root),
        protected_dirs=(settings.data_root,),
    )
    overrides = {}
    if settings.completion_command:
        overrides[settings.completion_provider] = settings.completion_command
    runner = CommandCompletionRunner(
        command_overrides=overrides,
        default_provider=settings.completion_provider,
        default_model=settings.completion_model,
        default_timeout_seconds=settings.completion_timeout_seconds,
        dry_run=settings.dry_run,
        timeout_retries=settings.completion_retries,
        cwd=settings.repository_root,
    )
    recorder = KnowledgeRecorder(store)
    executor = StepExecutor(
        completion=runner,
        files=files,
        recorder=recorder,
        repository=repository,
        roles=roles,
        completion_timeout_seconds=settings.completion_timeout_seconds,
    )
    vcs = GitAdapter(
        settings.repository_root,
        remote=settings.git_remote,
        github_token=settings.github_token,
        github_api_base=settings.github_api_base,
        timeout_seconds=settings.git_timeout_seconds,
    )
    orchestrator = PipelineOrchestrator(
        repository=repository,
        registry=registry,
        completion=runner,
        recorder=recorder,
        executor=executor,
        files=files,
        vcs=vcs,
        roles=roles,
        completion_timeout_seconds=settings.completion_timeout_seconds,
        pr_base_branch=settings.pr_base_branch,
        git_remote=settings.git_remote,
        context_file_limit=settings.context_file_limit,
    )
    return OrchestratorService(
        repository=repository,
        store=store,
        registry=registry,
        orchestrator=orchestrator,
        recorder=recorder,
        roles=roles,
    )
