"""Resolver package for deployment templates."""

from resolver.base import (
    ResolverError,
    TemplateNotFoundError,
    TemplateInvalidError,
    ResolverBase,
)
from resolver.templates import (
    Template,
    TemplateVariable,
    TemplateRepository,
    DirectoryTemplateRepository,
    HttpTemplateRepository,
    create_template_repository,
)

__all__ = [
    "ResolverError",
    "TemplateNotFoundError",
    "TemplateInvalidError",
    "ResolverBase",
    "Template",
    "TemplateVariable",
    "TemplateRepository",
    "DirectoryTemplateRepository",
    "HttpTemplateRepository",
    "create_template_repository",
]
