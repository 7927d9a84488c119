"""Common utilities and types for network provisioning."""

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Context key holding the short-lived access token. Leading underscore keeps it
# out of reports and saved context files.
ACCESS_TOKEN_KEY = '_access_token'


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    continue_on_failure: bool = False


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except Exception as e:
        return -1, '', str(e)


def run_json_command(
    cmd: list[str],
    timeout: int = 120,
    env: Optional[dict] = None
) -> tuple[int, Any, str]:
    """Run a command that prints JSON and return (returncode, data, stderr).

    data is None when the command fails or prints something that is not JSON.
    """
    rc, out, err = run_command(cmd, timeout=timeout, env=env)
    if rc != 0:
        return rc, None, err
    try:
        return rc, json.loads(out or 'null'), err
    except json.JSONDecodeError as e:
        return -1, None, f'Invalid JSON from {cmd[0]}: {e}'


def credential_env(context: dict, base: Optional[dict] = None) -> dict:
    """Build a subprocess environment carrying the pipeline credential.

    Both terraform's google provider and gcloud pick up a raw access token
    from these variables, so no credential file is written to disk.
    """
    env = dict(base if base is not None else os.environ)
    token = context.get(ACCESS_TOKEN_KEY)
    if token:
        env['GOOGLE_OAUTH_ACCESS_TOKEN'] = token
        env['CLOUDSDK_AUTH_ACCESS_TOKEN'] = token
    return env
