"""Template repositories.

A template supplies the configuration code for a deployment plus the
variables it declares. Two backends are provided:
- DirectoryTemplateRepository: templates/{id}.yaml files
- HttpTemplateRepository: GET {server}/templates/{id} returning JSON
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import requests

from resolver.base import (
    ResolverBase,
    ResolverError,
    TemplateInvalidError,
    TemplateNotFoundError,
)

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class TemplateVariable:
    """A variable declared by a template."""
    name: str
    type: str = 'string'
    description: str = ''
    default: Any = _MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING

    @classmethod
    def from_dict(cls, data: dict) -> 'TemplateVariable':
        if not isinstance(data, dict) or not data.get('name'):
            raise ValueError(f"variable entry needs a name: {data!r}")
        return cls(
            name=str(data['name']),
            type=str(data.get('type', 'string')),
            description=str(data.get('description', '')),
            default=data['default'] if 'default' in data else _MISSING,
        )


@dataclass
class Template:
    """Configuration template for a deployment."""
    id: str
    terraform_code: str
    name: str = ''
    description: str = ''
    variables: list[TemplateVariable] = field(default_factory=list)

    @classmethod
    def from_dict(cls, template_id: str, data: dict) -> 'Template':
        """Build a Template from a repository document.

        Accepts both snake_case and the camelCase keys used by the
        dashboard API (terraformCode).

        Raises:
            TemplateInvalidError: If code is missing or variables are malformed
        """
        code = data.get('terraform_code', data.get('terraformCode'))
        if not code or not isinstance(code, str):
            raise TemplateInvalidError(template_id, "missing terraform_code")
        raw_vars = data.get('variables') or []
        if not isinstance(raw_vars, list):
            raise TemplateInvalidError(template_id, "variables must be a list")
        try:
            variables = [TemplateVariable.from_dict(v) for v in raw_vars]
        except ValueError as e:
            raise TemplateInvalidError(template_id, str(e)) from e
        return cls(
            id=template_id,
            terraform_code=code,
            name=str(data.get('name', template_id)),
            description=str(data.get('description', '')),
            variables=variables,
        )


class TemplateRepository(Protocol):
    """Source of deployment templates."""

    def get(self, template_id: str) -> Template:
        """Return the template or raise TemplateNotFoundError."""


class DirectoryTemplateRepository(ResolverBase):
    """Templates stored as {root}/{id}.yaml."""

    def get(self, template_id: str) -> Template:
        # Template ids are file stems; reject anything path-like
        if not template_id or '/' in template_id or template_id.startswith('.'):
            raise TemplateNotFoundError(template_id)
        data = self._load_yaml(self.root / f"{template_id}.yaml")
        if data is None:
            raise TemplateNotFoundError(template_id)
        return Template.from_dict(template_id, data)

    def list_templates(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob('*.yaml') if p.is_file())


class HttpTemplateRepository:
    """Templates served by a template API."""

    def __init__(self, server: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        """Initialize repository.

        Args:
            server: Base URL (e.g., https://dashboard:5000/api)
            timeout: Request timeout in seconds
            session: Optional requests session (for connection reuse)
        """
        self.server = server.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def get(self, template_id: str) -> Template:
        url = f"{self.server}/templates/{template_id}"
        try:
            resp = self.session.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise ResolverError("E310", f"Cannot connect to {self.server}") from e
        except requests.exceptions.Timeout as e:
            raise ResolverError("E311", f"Timeout fetching template {template_id}") from e

        if resp.status_code == 404:
            raise TemplateNotFoundError(template_id)
        if resp.status_code != 200:
            raise ResolverError("E312", f"Unexpected response for template {template_id}: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise TemplateInvalidError(template_id, "response is not JSON") from e
        logger.debug(f"Fetched template {template_id} from {self.server}")
        return Template.from_dict(template_id, data)


def create_template_repository(config) -> TemplateRepository:
    """Pick the template backend from driver configuration.

    Raises:
        ResolverError: If neither a directory nor a server is configured
    """
    if config.template_server:
        return HttpTemplateRepository(config.template_server)
    if config.templates_dir:
        return DirectoryTemplateRepository(Path(config.templates_dir))
    raise ResolverError("E300", "No template source configured (templates_dir or template_server)")
