from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pool_gateway.catalogs.paths import CatalogDataPaths
from pool_gateway.utils.yaml_utils import load_yaml_dict

THINKING_SUFFIX = "-thinking"
IMAGE_SUFFIX = "-image"


class CatalogValidationError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Model catalog validation failed:\n" + "\n".join(
            f"- {item}" for item in errors
        )
        super().__init__(message)


class ModelCatalogEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    upstream_model: str | None = None
    supports_thinking: bool = False
    is_image_model: bool = False
    thinking_config: bool = True
    drop_top_p_when_thinking: bool = False
    rejected_parameters: list[str] = Field(default_factory=list)


class ModelCatalogDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = 1
    rejected_prefixes: list[str] = Field(default_factory=list)
    models: list[ModelCatalogEntry] = Field(default_factory=list)
    quota_groups: list[list[str]] = Field(default_factory=list)


@dataclass(slots=True, frozen=True)
class ModelCapability:
    name: str
    upstream_model: str
    supports_thinking: bool
    is_image_model: bool
    thinking_config: bool
    drop_top_p_when_thinking: bool
    rejected_parameters: frozenset[str]
    quota_group: tuple[str, ...]
    known: bool

    def rejects(self, parameter: str) -> bool:
        return parameter in self.rejected_parameters


class ModelCapabilityTable:
    """Per-model request behavior, declared in YAML and resolved once per name."""

    def __init__(
        self,
        entries: dict[str, ModelCatalogEntry],
        *,
        quota_groups: list[list[str]] | None = None,
        rejected_prefixes: list[str] | None = None,
    ) -> None:
        self._entries = dict(entries)
        self._rejected_prefixes = tuple(rejected_prefixes or ())
        self._groups: dict[str, tuple[str, ...]] = {}
        for group in quota_groups or []:
            members = tuple(dict.fromkeys(group))
            for member in members:
                self._groups[member] = members
        self._cache: dict[str, ModelCapability] = {}

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> ModelCapabilityTable:
        document = ModelCatalogDocument.model_validate(payload)
        errors: list[str] = []
        entries: dict[str, ModelCatalogEntry] = {}
        for entry in document.models:
            if entry.id in entries:
                errors.append(f"duplicate model id '{entry.id}'")
            entries[entry.id] = entry
        for group in document.quota_groups:
            if len(group) < 2:
                errors.append(f"quota group {group!r} needs at least two models")
        if errors:
            raise CatalogValidationError(errors)
        return cls(
            entries,
            quota_groups=document.quota_groups,
            rejected_prefixes=document.rejected_prefixes,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> ModelCapabilityTable:
        return cls.from_document(load_yaml_dict(path))

    @property
    def model_ids(self) -> list[str]:
        return sorted(self._entries)

    def is_rejected_completion_model(self, model: str) -> bool:
        base = _base_model_name(model)
        return any(base.startswith(prefix) for prefix in self._rejected_prefixes)

    def lookup(self, model: str) -> ModelCapability:
        cached = self._cache.get(model)
        if cached is not None:
            return cached
        capability = self._resolve(model)
        self._cache[model] = capability
        return capability

    def quota_group(self, model: str) -> tuple[str, ...]:
        return self.lookup(model).quota_group

    def _resolve(self, model: str) -> ModelCapability:
        group = self._groups.get(model, (model,))
        entry = self._entries.get(model)
        if entry is not None:
            return ModelCapability(
                name=model,
                upstream_model=entry.upstream_model or model,
                supports_thinking=entry.supports_thinking,
                is_image_model=entry.is_image_model,
                thinking_config=entry.thinking_config,
                drop_top_p_when_thinking=entry.drop_top_p_when_thinking,
                rejected_parameters=frozenset(entry.rejected_parameters),
                quota_group=group,
                known=True,
            )

        # Unknown names fall back to what the naming convention implies.
        thinking = model.endswith(THINKING_SUFFIX)
        return ModelCapability(
            name=model,
            upstream_model=model,
            supports_thinking=thinking,
            is_image_model=model.endswith(IMAGE_SUFFIX),
            thinking_config=True,
            drop_top_p_when_thinking=thinking and "claude" in model,
            rejected_parameters=frozenset(),
            quota_group=group,
            known=False,
        )


def _base_model_name(model: str) -> str:
    _, _, suffix = model.rpartition("/")
    return suffix.strip()


def load_capability_table(path: str | None = None) -> ModelCapabilityTable:
    if path:
        return ModelCapabilityTable.from_path(path)
    return load_internal_capability_table()


@lru_cache
def load_internal_capability_table() -> ModelCapabilityTable:
    return ModelCapabilityTable.from_path(CatalogDataPaths.models_yaml())
