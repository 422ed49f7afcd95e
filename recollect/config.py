"""
recollect.config

Typed loaders for run configuration and per-assertion options.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .io_utils import read_yaml_mapping

Action = Literal["prompt", "accept", "reject"]
Target = Literal["auto_assert", "assert"]


class Options(BaseModel):
    """
    Options attached to each assertion. Overridable per module, class or
    test through the `recollect` marker.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    action: Action = "prompt"
    default_pattern: Literal["infer", "first", "last"] = "infer"
    force_update: bool = False
    target: Target = "auto_assert"
    diff_context: int = 3
    callee: str = "auto_assert"

    @field_validator("diff_context")
    @classmethod
    def _non_negative_context(cls, value: int) -> int:
        if value < 0:
            raise ValueError("diff_context must be >= 0")
        return value

    @property
    def forced(self) -> bool:
        return self.force_update or self.target == "assert"

    def merged(self, overrides: Dict[str, Any]) -> "Options":
        if not overrides:
            return self
        return Options.model_validate({**self.model_dump(), **overrides})


class RunConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    options: Options = Field(default_factory=Options)
    order: Literal["newest_first", "oldest_first"] = "newest_first"
    failure_status: int = 1
    dry_run: bool = False
    journal: Optional[str] = None


_RUN_KEYS = {"order", "failure_status", "dry_run", "journal"}


def load_run_config(path: str | Path | None = None, *, overrides: Dict[str, Any] | None = None) -> RunConfig:
    """
    Load a YAML run config and apply command-line overrides on top.
    Override keys naming a run-level field go to the run, the rest to
    the default assertion options. `None` overrides are ignored.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        data = read_yaml_mapping(Path(path), label="recollect config")

    options = dict(data.pop("options", None) or {})
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in _RUN_KEYS:
            data[key] = value
        else:
            options[key] = value
    data["options"] = options
    return RunConfig.model_validate(data)


def resolve_options(base: Options, layers: Iterable[Dict[str, Any]]) -> Options:
    """
    Fold option layers onto `base`, farthest first, so the last layer wins.
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return base.merged(merged)
