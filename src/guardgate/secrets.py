"""Secrets loader with file-permission enforcement.

One file per secret in a secrets directory. A secret that is missing, empty,
or readable/writable by others is rejected with InsecureSecretsError and the
caller must not start.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

REQUIRED_SECRETS = (
    "LOCAL_STATE_SECRET",
    "CUSTODY_API_KEY",
)

SECRETS_DIR_ENV_VAR = "GUARDGATE_SECRETS_DIR"
DEFAULT_SECRETS_DIR = "secrets"


class InsecureSecretsError(Exception):
    """Raised when secret files are missing, empty or have insecure permissions."""


def _permission_problem(path: Path) -> str:
    mode = os.stat(path).st_mode
    if mode & stat.S_IROTH:
        return "Secret file is world-readable: {} mode={} (run: chmod o-r {})".format(path, oct(mode), path)
    if mode & stat.S_IWOTH:
        return "Secret file is world-writable: {} mode={} (run: chmod o-w {})".format(path, oct(mode), path)
    return ""


def secrets_dir() -> str:
    return os.environ.get(SECRETS_DIR_ENV_VAR, DEFAULT_SECRETS_DIR)


def load_secrets(secret_dir: str, required: Iterable[str] = REQUIRED_SECRETS) -> Dict[str, str]:
    """Read each required secret from ``secret_dir/<NAME>``.

    All problems are collected and reported together.
    """
    root = Path(secret_dir)
    if not root.is_dir():
        raise InsecureSecretsError("Secrets directory does not exist: {}".format(root))

    loaded = {}  # type: Dict[str, str]
    problems = []  # type: List[str]

    for name in required:
        path = root / name
        if not path.is_file():
            problems.append("Missing required secret file: {}".format(path))
            continue
        problem = _permission_problem(path)
        if problem:
            problems.append(problem)
            continue
        value = path.read_text(encoding="utf-8").strip()
        if not value:
            problems.append("Secret file is empty: {}".format(path))
            continue
        loaded[name] = value

    if problems:
        raise InsecureSecretsError("Secrets validation failed:\n  " + "\n  ".join(problems))

    logger.info("Loaded %d secret(s) from %s", len(loaded), root)
    return loaded
