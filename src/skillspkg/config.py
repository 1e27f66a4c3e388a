from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_MANIFEST_PATH = ".skillspkg.toml"
DEFAULT_GOPROXY = "https://proxy.golang.org,direct"
DEFAULT_HTTP_TIMEOUT_S = 30.0
DEFAULT_GO_MOD_PATH = "go.mod"


@dataclass(frozen=True)
class Config:
    goproxy: str | None = None  # GOPROXY-style chain; None means DEFAULT_GOPROXY
    temp_dir: str | None = None  # staging root for downloads
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    max_workers: int | None = None
    go_mod_path: str = DEFAULT_GO_MOD_PATH


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLSPKG_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skills-pkg") / "config.json"


def manifest_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLSPKG_MANIFEST"):
        return Path(env).expanduser()
    return Path(DEFAULT_MANIFEST_PATH)


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def apply_env(cfg: Config) -> Config:
    """Environment overrides the config file."""
    goproxy = os.getenv("GOPROXY") or cfg.goproxy
    temp_dir = os.getenv("SKILLSPKG_TEMP_DIR") or cfg.temp_dir
    timeout_s: Any = os.getenv("SKILLSPKG_HTTP_TIMEOUT_S") or cfg.http_timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.http_timeout_s
    return Config(
        goproxy=goproxy,
        temp_dir=temp_dir,
        http_timeout_s=timeout_s_f,
        max_workers=cfg.max_workers,
        go_mod_path=cfg.go_mod_path,
    )
