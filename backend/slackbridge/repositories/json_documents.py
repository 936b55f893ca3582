from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import ConfigStoreError


def read_json_document(path: Path) -> Any | None:
    """Decoded JSON at `path`, or None when the file does not exist."""
    p = Path(path)
    if not p.exists():
        return None
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigStoreError(message=f"Failed to read {p.name}", code="read_failed", cause=e) from e
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigStoreError(message=f"{p.name} is not valid JSON", code="invalid_json", cause=e) from e


def write_json_document(path: Path, doc: Any, *, private: bool = False) -> None:
    """
    Rewrite the whole document at `path` (temp file + atomic replace).

    `private` restricts the file to the owner; used for anything holding tokens.
    """
    p = Path(path)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", dir=str(p.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(doc, fh, indent=2)
                fh.write("\n")
            if private:
                os.chmod(tmp, 0o600)
            os.replace(tmp, p)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise ConfigStoreError(message=f"Failed to save {p.name}", code="write_failed", cause=e) from e
