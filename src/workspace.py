"""Per-deployment working directories.

Each deployment owns one directory under the configured working_dir:

    {working_dir}/{name}/
        main.tf                 template code, verbatim
        variables.tf.json       declared variables (JSON configuration syntax)
        provider.tf.json        provider and version constraints
        terraform.tfvars.json   caller-supplied values
        .terraform/             written by init
        tfplan                  plan artifact consumed by apply
        drift-plan              plan artifact written by drift detection
        terraform.tfstate       owned by the tool; never written here

Generated files are regenerated idempotently on every plan.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from config import validate_deployment_name
from resolver.templates import Template

logger = logging.getLogger(__name__)

MAIN_FILE = 'main.tf'
VARIABLES_FILE = 'variables.tf.json'
PROVIDER_FILE = 'provider.tf.json'
TFVARS_FILE = 'terraform.tfvars.json'
PLAN_FILE = 'tfplan'
DRIFT_PLAN_FILE = 'drift-plan'
STATE_FILE = 'terraform.tfstate'

MANAGED_BY = 'deploy-driver'


def render_variables(template: Template, region: str) -> dict:
    """Build variables.tf.json content.

    aws_region and environment are always declared; template variables
    with the same name replace them.
    """
    variables: dict[str, dict] = {
        'aws_region': {
            'description': 'AWS region',
            'type': 'string',
            'default': region,
        },
        'environment': {
            'description': 'Environment name',
            'type': 'string',
        },
    }
    for var in template.variables:
        block: dict[str, Any] = {'description': var.description, 'type': var.type}
        if var.has_default:
            block['default'] = var.default
        variables[var.name] = block
    return {'variable': variables}


def render_provider(deployment_name: str) -> dict:
    """Build provider.tf.json content."""
    return {
        'terraform': {
            'required_version': '>= 1.0',
            'required_providers': {
                'aws': {'source': 'hashicorp/aws', 'version': '>= 4.0'},
            },
        },
        'provider': {
            'aws': {
                'region': '${var.aws_region}',
                'default_tags': {
                    'tags': {
                        'Environment': '${var.environment}',
                        'ManagedBy': MANAGED_BY,
                        'Deployment': deployment_name,
                    },
                },
            },
        },
    }


def render_tfvars(environment: str, variables: dict) -> dict:
    """Build terraform.tfvars.json content; caller values win."""
    return {'environment': environment, **variables}


def _dump(data: dict) -> str:
    return json.dumps(data, indent=2, sort_keys=True) + '\n'


class Workspace:
    """Working directory slot for one deployment."""

    def __init__(self, root: Path, name: str):
        """Initialize workspace.

        Args:
            root: Configured working_dir holding all deployments
            name: Deployment name (validated; becomes the directory name)
        """
        self.name = validate_deployment_name(name)
        self.path = Path(root) / name

    def __repr__(self) -> str:
        return f"Workspace({self.path})"

    @property
    def plan_path(self) -> Path:
        return self.path / PLAN_FILE

    @property
    def state_path(self) -> Path:
        return self.path / STATE_FILE

    def exists(self) -> bool:
        return self.path.is_dir()

    def has_plan(self) -> bool:
        return self.plan_path.is_file()

    def clear_plan(self) -> None:
        """Remove the plan artifact, if any."""
        try:
            self.plan_path.unlink()
            logger.debug(f"Removed plan artifact {self.plan_path}")
        except FileNotFoundError:
            pass

    def materialize(
        self,
        template: Template,
        environment: str,
        variables: dict,
        region: str = 'us-east-1',
    ) -> list[Path]:
        """Write generated configuration into the working directory.

        Files whose content is unchanged are left untouched. The tool's
        state file is never written.

        Returns:
            Paths that were (re)written
        """
        self.path.mkdir(parents=True, exist_ok=True)
        files = {
            MAIN_FILE: template.terraform_code if template.terraform_code.endswith('\n')
            else template.terraform_code + '\n',
            VARIABLES_FILE: _dump(render_variables(template, region)),
            PROVIDER_FILE: _dump(render_provider(self.name)),
            TFVARS_FILE: _dump(render_tfvars(environment, variables)),
        }
        written = []
        for filename, content in files.items():
            if self._write_if_changed(self.path / filename, content):
                written.append(self.path / filename)
        logger.info(f"Materialized {len(written)} of {len(files)} config files in {self.path}")
        return written

    def _write_if_changed(self, path: Path, content: str) -> bool:
        try:
            if path.read_text(encoding='utf-8') == content:
                return False
        except FileNotFoundError:
            pass
        fd, tmp = tempfile.mkstemp(dir=self.path, prefix=f'.{path.name}.')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return True

    def read_state(self) -> Optional[dict]:
        """Read the tool's state file; None if never applied.

        Raises:
            ValueError: If the file is not valid JSON
        """
        try:
            text = self.state_path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None
        return json.loads(text)
