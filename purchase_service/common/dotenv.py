from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Iterable


def _is_allowed_key(key: str, allow_keys: Optional[set[str]], allow_prefixes: Optional[tuple[str, ...]]) -> bool:
    if allow_keys is None and allow_prefixes is None:
        return True
    if allow_keys is not None and key in allow_keys:
        return True
    if allow_prefixes is not None:
        return any(key.startswith(p) for p in allow_prefixes)
    return False


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    # inline comment after an unquoted value
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value


def load_dotenv(
    path: str | Path,
    *,
    override: bool = False,
    allow_keys: Optional[Iterable[str]] = None,
    allow_prefixes: Optional[Iterable[str]] = None,
) -> bool:
    """Load KEY=VALUE lines from a .env file into os.environ.

    - `export KEY=VALUE` is accepted, blank lines and `#` comments are skipped.
    - Existing variables win unless override=True.
    - allow_keys / allow_prefixes restrict which keys are loaded, so a shared
      .env cannot inject unrelated settings into the service.

    Returns True if the file existed and was processed.
    """
    p = Path(path)
    if not p.is_file():
        return False

    keys: Optional[set[str]] = set(allow_keys) if allow_keys is not None else None
    prefixes: Optional[tuple[str, ...]] = tuple(allow_prefixes) if allow_prefixes is not None else None

    for raw in p.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or not _is_allowed_key(key, keys, prefixes):
            continue
        if not override and key in os.environ:
            continue
        os.environ[key] = _unquote(value.strip())

    return True


def load_dotenv_auto(
    *,
    env_file: Optional[str] = None,
    override: bool = False,
    allow_keys: Optional[Iterable[str]] = None,
    allow_prefixes: Optional[Iterable[str]] = None,
) -> Optional[Path]:
    """Load the first .env found, in this order:

    1) PURCHASE_SERVICE_ENV_FILE or the env_file argument
    2) ./.env in the current working directory
    3) the repository root's .env

    Returns the loaded path, or None when nothing was found.
    """
    candidates: list[Path] = []
    env_path = os.getenv("PURCHASE_SERVICE_ENV_FILE") or env_file
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path.cwd() / ".env")
    # <repo>/purchase_service/common/dotenv.py -> parents[2] is <repo>
    candidates.append(Path(__file__).resolve().parents[2] / ".env")

    for candidate in candidates:
        if load_dotenv(candidate, override=override, allow_keys=allow_keys, allow_prefixes=allow_prefixes):
            return candidate
    return None
