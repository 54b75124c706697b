"""Bearer-token storage for the command-line front end.

The token lives in ``~/.config/app-operator/config.json``; the directory is
created with mode 0700 and the file written with mode 0600.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

_CONFIG_DIR_NAME = "app-operator"
_CONFIG_FILE_NAME = "config.json"


class NotLoggedInError(Exception):
    """No usable token is stored; the user must run ``login`` first."""


def config_path() -> Path:
    return Path.home() / ".config" / _CONFIG_DIR_NAME / _CONFIG_FILE_NAME


def issue_token(username: str, password: str) -> str:
    """Return the token for a username/password pair.

    There is no identity provider behind the front door; the token only has
    to be present and well-formed.
    """
    if not username or not password:
        raise ValueError("username and password are required")
    return f"simulated-token-{username}-{password}"


def save_token(token: str, path: Path | None = None) -> Path:
    target = path or config_path()
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(target.parent, 0o700)
    fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump({"token": token}, fh)
    os.chmod(target, 0o600)
    return target


def load_token(path: Path | None = None) -> str:
    """Read the stored token.

    Raises:
        NotLoggedInError: The file is missing, unreadable or holds no token.
    """
    target = path or config_path()
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise NotLoggedInError("not logged in; run 'appctl login' first") from exc
    except (OSError, ValueError) as exc:
        raise NotLoggedInError(f"cannot read credentials from {target}: {exc}") from exc

    token = data.get("token") if isinstance(data, dict) else None
    if not isinstance(token, str) or not token:
        raise NotLoggedInError("stored credentials hold no token; run 'appctl login' again")
    return token
