from __future__ import annotations

from dataclasses import dataclass
import re

DEFAULT_ROLE = 'Developer'


@dataclass(frozen=True)
class SpecialistRole:
    name: str
    title: str
    description: str
    provider: str | None = None
    model: str | None = None
    temperature: float = 0.2

    @property
    def collection(self) -> str:
        return f'agent_{self.name}'

    @property
    def system_prompt(self) -> str:
        return f'You are the {self.name} specialist, a {self.title.lower()}. {self.description}'


DEFAULT_ROLES: tuple[SpecialistRole, ...] = (
    SpecialistRole('Admin', 'Project coordinator', 'You analyze incoming tasks and coordinate the other specialists.'),
    SpecialistRole('Analyzer', 'Performance optimization specialist', 'You map the codebase and find where work must happen.'),
    SpecialistRole('Browser', 'Frontend architecture expert', 'You own client-side code, UI components and rendering.'),
    SpecialistRole('Bundler', 'Build system specialist', 'You own build, bundling and packaging configuration.'),
    SpecialistRole('Config', 'Configuration and planning specialist', 'You turn analyses into concrete implementation plans.'),
    SpecialistRole('Developer', 'General software engineer', 'You implement changes that no narrower specialist owns.'),
    SpecialistRole('Generator', 'Scaffolding specialist', 'You generate new modules from templates and conventions.'),
    SpecialistRole('Git', 'Repository management specialist', 'You write commit messages and pull request descriptions.'),
    SpecialistRole('Pipeline', 'CI/CD specialist', 'You maintain continuous integration workflows.'),
    SpecialistRole('Docs', 'Documentation writer', 'You write and update user and developer documentation.'),
    SpecialistRole('Server', 'Backend architecture expert', 'You own server code, APIs, controllers and routes.'),
    SpecialistRole('Testbed', 'Testbed project maintainer', 'You maintain sample projects used for manual verification.'),
    SpecialistRole('Types', 'Type system designer', 'You own type definitions and interfaces.'),
    SpecialistRole('Utils', 'Utility library maintainer', 'You own shared helpers and utility functions.'),
    SpecialistRole('Validator', 'Quality assurance specialist', 'You review implementations and tests for correctness.'),
    SpecialistRole('Version', 'Release and dependency specialist', 'You manage versions, packages and dependencies.'),
)

# First match wins; order matters.
ROLE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ('frontend', 'Browser'),
    ('browser', 'Browser'),
    ('client', 'Browser'),
    ('render', 'Browser'),
    ('view', 'Browser'),
    ('component', 'Browser'),
    ('server', 'Server'),
    ('backend', 'Server'),
    ('api', 'Server'),
    ('controller', 'Server'),
    ('route', 'Server'),
    ('build', 'Bundler'),
    ('bundle', 'Bundler'),
    ('webpack', 'Bundler'),
    ('vite', 'Bundler'),
    ('type', 'Types'),
    ('interface', 'Types'),
    ('typescript', 'Types'),
    ('utility', 'Utils'),
    ('util', 'Utils'),
    ('helper', 'Utils'),
    ('test', 'Validator'),
    ('validation', 'Validator'),
    ('verify', 'Validator'),
    ('document', 'Docs'),
    ('documentation', 'Docs'),
    ('generate', 'Generator'),
    ('scaffold', 'Generator'),
    ('template', 'Generator'),
    ('git', 'Git'),
    ('branch', 'Git'),
    ('commit', 'Git'),
    ('pr', 'Git'),
    ('pull request', 'Git'),
    ('version', 'Version'),
    ('dependency', 'Version'),
    ('package', 'Version'),
    ('analyze', 'Analyzer'),
    ('performance', 'Analyzer'),
    ('optimize', 'Analyzer'),
    ('config', 'Config'),
    ('configuration', 'Config'),
    ('setting', 'Config'),
)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Short keywords ("pr", "api", "git") only count as whole words.
    if len(keyword) <= 3:
        return re.compile(rf'\b{re.escape(keyword)}\b')
    return re.compile(rf'\b{re.escape(keyword)}')


_KEYWORD_PATTERNS = tuple((_keyword_pattern(keyword), role) for keyword, role in ROLE_KEYWORDS)


def resolve_role(description: str, *, default: str = DEFAULT_ROLE) -> str:
    text = str(description or '').lower()
    for pattern, role in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return role
    return default


class RoleRegistry:
    def __init__(self, roles: tuple[SpecialistRole, ...] = DEFAULT_ROLES):
        self._roles = {role.name: role for role in roles}
        if DEFAULT_ROLE not in self._roles:
            raise ValueError(f'role registry must include {DEFAULT_ROLE}')

    def names(self) -> list[str]:
        return list(self._roles)

    def get(self, name: str) -> SpecialistRole:
        return self._roles.get(name) or self._roles[DEFAULT_ROLE]

    def for_step(self, description: str) -> SpecialistRole:
        return self.get(resolve_role(description))

    def collections(self) -> list[str]:
        return [role.collection for role in self._roles.values()]
