from __future__ import annotations

import logging
import os
import shutil
import uuid
from collections.abc import Iterable, Mapping
from pathlib import Path

from ctrader_live_feed.auth.credentials import Credentials
from ctrader_live_feed.core.time_utils import to_epoch_seconds

logger = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str) -> Path:
    """Replace ``path`` with ``content`` so readers see the old or the new file, never a mix."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with tmp_path.open("w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        if path.exists():
            shutil.copymode(path, tmp_path)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def _line_key(line: str) -> str | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key = stripped.split("=", maxsplit=1)[0].strip()
    if key.startswith("export "):
        key = key[len("export ") :].strip()
    return key


def render_env(lines: Iterable[str], updates: Mapping[str, str]) -> str:
    """Apply ``updates`` to dotenv ``lines``, leaving every other line untouched.

    The first assignment of an updated key is rewritten in place, later
    duplicates are dropped and keys not present yet are appended.
    """
    pending = dict(updates)
    rendered: list[str] = []
    for line in lines:
        key = _line_key(line)
        if key is None or key not in updates:
            rendered.append(line)
            continue
        if key in pending:
            prefix = "export " if line.lstrip().startswith("export ") else ""
            rendered.append(f"{prefix}{key}={pending.pop(key)}")
    rendered.extend(f"{key}={value}" for key, value in pending.items())
    return "\n".join(rendered) + "\n"


class EnvCredentialStore:
    def __init__(self, path: Path, *, prefix: str = "CTRADER_") -> None:
        self._path = path
        self._prefix = prefix

    @property
    def path(self) -> Path:
        return self._path

    def save(self, credentials: Credentials) -> Path:
        updates = {
            f"{self._prefix}ACCESS_TOKEN": credentials.access_token,
            f"{self._prefix}REFRESH_TOKEN": credentials.refresh_token,
        }
        expires_at = to_epoch_seconds(credentials.expires_at)
        if expires_at is not None:
            updates[f"{self._prefix}TOKEN_EXPIRES_AT"] = str(expires_at)

        existing = self._path.read_text(encoding="utf-8").splitlines() if self._path.exists() else []
        atomic_write_text(self._path, render_env(existing, updates))
        logger.info("Credentials persisted", extra={"path": str(self._path), "keys": sorted(updates)})
        return self._path
