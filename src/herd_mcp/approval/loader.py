"""Layered loading of auto-approve configuration."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .models import AutoApproveConfig, PolicyDefaults, RepoConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "auto-approve.yaml"
REPO_CONFIG_DIR = ".herd"

_SECTION = re.compile(r"^## Auto-Approve\s*$", re.MULTILINE)
_NEXT_HEADING = re.compile(r"^##?\s+", re.MULTILINE)
_BASH_ALLOW = re.compile(r"""^bash:\s*["'](.+?)["']$""")
_BASH_DENY = re.compile(r"""^deny-bash:\s*["'](.+?)["']$""")
_TOOL_ALLOW = re.compile(r"^allow:\s*([\w.:-]+)$")
_TOOL_DENY = re.compile(r"^deny:\s*([\w.:-]+)$")


class PolicyConfigError(RuntimeError):
    """Raised when an auto-approve configuration file cannot be read or validated."""


def apply_layer(config: AutoApproveConfig, layer: RepoConfig) -> AutoApproveConfig:
    """Apply ``layer`` on top of ``config``.

    Keys set by the layer replace the corresponding keys below it; lists are
    not merged. ``inherit: none`` starts from empty defaults.
    """

    base = PolicyDefaults() if layer.inherit == "none" else config.defaults
    defaults = base.model_copy(update=layer.overrides())
    return config.model_copy(update={"defaults": defaults})


def parse_task_overrides(document: str) -> RepoConfig | None:
    """Parse the ``## Auto-Approve`` section of a task's markdown document.

    Recognised list items::

        - bash: "npm test"
        - deny-bash: "git push"
        - allow: Edit
        - deny: WebFetch

    Returns ``None`` when the section is absent or sets nothing.
    """

    match = _SECTION.search(document)
    if match is None:
        return None
    start = match.end()
    following = _NEXT_HEADING.search(document, start)
    section = document[start : following.start() if following else len(document)]

    collected: dict[str, list[str]] = {}
    rules = (
        (_BASH_ALLOW, "bash_allow_patterns"),
        (_BASH_DENY, "bash_deny_patterns"),
        (_TOOL_ALLOW, "allow"),
        (_TOOL_DENY, "deny"),
    )
    for line in section.splitlines():
        stripped = line.strip()
        if not stripped.startswith("-"):
            continue
        item = stripped[1:].strip()
        for pattern, key in rules:
            found = pattern.match(item)
            if found:
                collected.setdefault(key, []).append(found.group(1))
                break
        else:
            logger.debug("Ignoring unrecognised auto-approve line", extra={"line": item})

    if not collected:
        return None
    return RepoConfig.model_validate(collected)


class AutoApproveLoader:
    """Loads auto-approve policy from the global, repository and task layers."""

    def __init__(self, global_config_dir: Path) -> None:
        self._global_config_dir = Path(global_config_dir)

    @property
    def global_config_path(self) -> Path:
        return self._global_config_dir / CONFIG_FILENAME

    @staticmethod
    def repo_config_path(repo_path: Path) -> Path:
        return Path(repo_path) / REPO_CONFIG_DIR / CONFIG_FILENAME

    def load_global(self) -> AutoApproveConfig | None:
        return self._read(self.global_config_path, AutoApproveConfig)

    def load_repo(self, repo_path: Path) -> RepoConfig | None:
        return self._read(self.repo_config_path(repo_path), RepoConfig)

    def load(self, repo_path: Path, task_document: str | None = None) -> AutoApproveConfig:
        """Return the effective configuration for ``repo_path``.

        Layers, lowest precedence first: the global file, the global file's
        ``repos`` entry for the repository (or its closest ancestor), the
        repository's own file, and the task document's inline section.
        """

        repo_path = Path(repo_path)
        config = AutoApproveConfig()

        global_config = self.load_global()
        if global_config is not None:
            config = global_config
            repo_override = self._global_repo_override(global_config, repo_path)
            if repo_override is not None:
                config = apply_layer(config, repo_override)

        repo_config = self.load_repo(repo_path)
        if repo_config is not None:
            config = apply_layer(config, repo_config)

        if task_document:
            task_layer = parse_task_overrides(task_document)
            if task_layer is not None:
                config = apply_layer(config, task_layer)

        logger.debug(
            "Loaded auto-approve configuration",
            extra={
                "repo_path": str(repo_path),
                "allow": config.defaults.allow,
                "deny": config.defaults.deny,
            },
        )
        return config

    @staticmethod
    def _global_repo_override(config: AutoApproveConfig, repo_path: Path) -> RepoConfig | None:
        if not config.repos:
            return None
        target = str(repo_path)
        best: tuple[int, RepoConfig] | None = None
        for raw_path, layer in config.repos.items():
            candidate = str(Path(raw_path).expanduser()).rstrip("/") or "/"
            if target == candidate or target.startswith(candidate.rstrip("/") + "/"):
                if best is None or len(candidate) > best[0]:
                    best = (len(candidate), layer)
        return best[1] if best else None

    @staticmethod
    def _read(path: Path, model: type[BaseModel]) -> Any:
        if not path.exists():
            return None
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise PolicyConfigError(f"Failed to read auto-approve config {path}: {exc}") from exc

        if document is None:
            return None
        try:
            return model.model_validate(document)
        except ValidationError as exc:
            raise PolicyConfigError(f"Invalid auto-approve config in {path}: {exc}") from exc


def load_auto_approve_config(
    repo_path: Path,
    global_config_dir: Path,
    task_document: str | None = None,
) -> AutoApproveConfig:
    """Convenience wrapper for loading the layered configuration."""

    loader = AutoApproveLoader(global_config_dir)
    return loader.load(repo_path, task_document)


__all__ = [
    "AutoApproveLoader",
    "PolicyConfigError",
    "apply_layer",
    "load_auto_approve_config",
    "parse_task_overrides",
]
