"""
Runtime configuration.

CommanderConfig collects the knobs that are not fixed by the run mode:
backend selection, concurrency, launch staggering, review-gate behaviour and
CLI binary locations. `CommanderConfig.from_env()` reads COMMANDER_* variables
after loading a local .env file.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .models import DEFAULT_WORKER_MODEL, Model

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass
class CommanderConfig:
    backend: str = "cli"                    # "cli" | "api"
    max_concurrency: int = 3
    stagger_seconds: float = 0.8            # n-th task in a wave waits n × this
    stream_throttle: float = 0.08           # min gap between streaming snapshots
    auto_approve: bool = False              # skip the review gate
    partial_counts_as_success: bool = True  # partial critical result avoids the all-failed error
    default_worker_model: Model = DEFAULT_WORKER_MODEL
    permission_mode: Optional[str] = "bypassPermissions"
    claude_bin: str = "claude"
    gemini_bin: str = "gemini"
    cwd: Optional[str] = None
    mcp_config: Optional[str] = None

    def __post_init__(self) -> None:
        if self.backend not in ("cli", "api"):
            raise ValueError(f"backend must be 'cli' or 'api', got {self.backend!r}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.stagger_seconds < 0 or self.stream_throttle < 0:
            raise ValueError("stagger_seconds and stream_throttle must be >= 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CommanderConfig":
        if environ is None:
            load_dotenv()
            environ = os.environ
        kwargs = {}
        for name, parse in (
            ("backend", str),
            ("max_concurrency", int),
            ("stagger_seconds", float),
            ("stream_throttle", float),
            ("auto_approve", _parse_bool),
            ("partial_counts_as_success", _parse_bool),
            ("default_worker_model", Model),
            ("permission_mode", str),
            ("claude_bin", str),
            ("gemini_bin", str),
            ("cwd", str),
            ("mcp_config", str),
        ):
            var = f"COMMANDER_{name.upper()}"
            if var == "COMMANDER_DEFAULT_WORKER_MODEL":
                var = "COMMANDER_DEFAULT_MODEL"
            raw = environ.get(var)
            if raw is None:
                continue
            try:
                kwargs[name] = parse(raw.strip())
            except ValueError as exc:
                raise ValueError(f"Invalid {var}={raw!r}: {exc}") from exc
        return cls(**kwargs)


def _parse_bool(raw: str) -> bool:
    value = raw.lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {raw!r}")
