"""Pre-flight validation checks for the driver.

Catches environment problems before any operation runs: a missing or
broken tool binary, an unwritable working directory, or an unreachable
template source. Each check returns a list of error messages (empty if
valid) with a hint on how to fix it.
"""

import json
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

import requests

from config import DriverConfig

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tool binary
# -----------------------------------------------------------------------------

def find_tool(tool_path: str) -> Optional[str]:
    """Resolve the tool binary to an absolute path, or None."""
    if os.sep in tool_path:
        return tool_path if os.access(tool_path, os.X_OK) else None
    return shutil.which(tool_path)


def get_tool_version(binary: str, timeout: float = 30.0) -> tuple[bool, str]:
    """Ask the tool for its version.

    Returns:
        (success, version_or_error) tuple
    """
    try:
        proc = subprocess.run(
            [binary, 'version', '-json'],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        return False, f"{binary} version timed out after {timeout:.0f}s"
    except OSError as e:
        return False, f"Cannot run {binary}: {e}"

    if proc.returncode != 0:
        return False, f"{binary} version exited {proc.returncode}: {proc.stderr.strip()[:200]}"
    try:
        data = json.loads(proc.stdout)
        return True, str(data.get('terraform_version', 'unknown'))
    except json.JSONDecodeError:
        # Older releases have no -json; first line reads "OpenTofu v1.6.0"
        first = proc.stdout.strip().splitlines()[0] if proc.stdout.strip() else 'unknown'
        return True, first.split()[-1].lstrip('v')


def validate_tool(tool_path: str) -> tuple[list[str], Optional[str]]:
    """Check the tool binary exists and reports a version.

    Returns:
        (errors, version) tuple
    """
    binary = find_tool(tool_path)
    if binary is None:
        return [
            f"Tool binary '{tool_path}' not found\n"
            f"  Install OpenTofu or Terraform, or set tool_path / TERRAFORM_PATH"
        ], None
    ok, version = get_tool_version(binary)
    if not ok:
        return [version], None
    logger.info(f"Found {binary} ({version})")
    return [], version


# -----------------------------------------------------------------------------
# Working directory
# -----------------------------------------------------------------------------

def validate_directory_writable(path: Path, label: str) -> list[str]:
    """Check a directory exists (creating it if needed) and is writable."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix='.preflight-'):
            pass
    except OSError as e:
        return [
            f"{label} {path} is not writable: {e.strerror or e}\n"
            f"  Check ownership and permissions of {path}"
        ]
    return []


# -----------------------------------------------------------------------------
# Template source
# -----------------------------------------------------------------------------

def validate_template_server(server: str, timeout: float = 10.0) -> list[str]:
    """Check the template server answers HTTP requests."""
    url = f"{server.rstrip('/')}/templates"
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.exceptions.ConnectionError:
        return [
            f"Cannot connect to template server {server}\n"
            f"  Check: server is running, URL and port are correct"
        ]
    except requests.exceptions.Timeout:
        return [f"Timeout connecting to template server {server}"]

    if resp.status_code >= 500:
        return [f"Template server {server} returned {resp.status_code}"]
    return []


def validate_templates_dir(templates_dir: Path) -> tuple[list[str], int]:
    """Check the templates directory exists.

    Returns:
        (errors, template_count) tuple
    """
    if not templates_dir.is_dir():
        return [
            f"Templates directory {templates_dir} does not exist\n"
            f"  Set templates_dir in deploy-driver.yaml or DEPLOY_DRIVER_TEMPLATES"
        ], 0
    return [], len(list(templates_dir.glob('*.yaml')))


# -----------------------------------------------------------------------------
# Preflight
# -----------------------------------------------------------------------------

def run_preflight_checks(config: DriverConfig) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Returns:
        (success, results) tuple where results maps each category to
        {'passed': [...], 'failed': [...]}
    """
    results: dict[str, dict[str, list[str]]] = {
        'tool': {'passed': [], 'failed': []},
        'workspace': {'passed': [], 'failed': []},
        'templates': {'passed': [], 'failed': []},
    }

    tool_errors, version = validate_tool(config.tool_path)
    if tool_errors:
        results['tool']['failed'].extend(tool_errors)
    else:
        results['tool']['passed'].append(f"{config.tool_path} {version}")

    for path, label in ((config.working_dir, 'Working directory'), (config.state_dir, 'State directory')):
        errors = validate_directory_writable(path, label)
        if errors:
            results['workspace']['failed'].extend(errors)
        else:
            results['workspace']['passed'].append(f"{label} {path} writable")

    if config.template_server:
        errors = validate_template_server(config.template_server)
        if errors:
            results['templates']['failed'].extend(errors)
        else:
            results['templates']['passed'].append(f"Template server {config.template_server} reachable")
    elif config.templates_dir is not None:
        errors, count = validate_templates_dir(config.templates_dir)
        if errors:
            results['templates']['failed'].extend(errors)
        else:
            results['templates']['passed'].append(f"{count} template(s) in {config.templates_dir}")
    else:
        results['templates']['failed'].append(
            "No template source configured\n"
            "  Set templates_dir or template_server in deploy-driver.yaml"
        )

    all_failed = [item for category in results.values() for item in category['failed']]
    return len(all_failed) == 0, results


def format_preflight_results(results: dict) -> str:
    """Format preflight check results for display."""
    lines = ["\nPreflight checks:\n"]

    category_names = {
        'tool': 'Infrastructure tool',
        'workspace': 'Working directories',
        'templates': 'Templates',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                # Multi-line errors carry a hint after the first line
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    if all(len(cat['failed']) == 0 for cat in results.values()):
        lines.append("All checks passed. Ready for deployments.")
    else:
        lines.append("Some checks failed. Fix issues before running operations.")

    return '\n'.join(lines)
