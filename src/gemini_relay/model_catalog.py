import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

import yaml

from .error_handler import ResolutionError

lib_logger = logging.getLogger("gemini_relay")

DEFAULT_MODEL = "gemini-1.5-flash-latest"


@dataclass(frozen=True)
class ModelConfig:
    """Per-model settings. Rate figures are informational and not enforced."""

    fallback_model: str = ""
    rpm: int = 0
    tpm: int = 0
    rpd: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ModelConfig":
        data = data or {}
        return cls(
            fallback_model=data.get("fallback_model") or data.get("FallbackModel") or "",
            rpm=int(data.get("rpm", data.get("RPM", 0)) or 0),
            tpm=int(data.get("tpm", data.get("TPM", 0)) or 0),
            rpd=int(data.get("rpd", data.get("RPD", 0)) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fallback_model": self.fallback_model,
            "rpm": self.rpm,
            "tpm": self.tpm,
            "rpd": self.rpd,
        }


class ModelCatalog:
    """
    Maps model ids to their fallback model and resolves requested names to a
    concrete configured model.

    The catalog may contain fallback cycles (A -> B -> A). Breaking them is the
    caller's job; the controller never tries one model twice per request.
    """

    def __init__(
        self,
        models: Optional[Dict[str, Union[ModelConfig, Dict[str, Any], str, None]]] = None,
        default_model: str = DEFAULT_MODEL,
    ):
        self._models: Dict[str, ModelConfig] = {}
        for name, config in (models or {}).items():
            if isinstance(config, ModelConfig):
                self._models[name] = config
            elif isinstance(config, str):
                self._models[name] = ModelConfig(fallback_model=config)
            else:
                self._models[name] = ModelConfig.from_dict(config)
        self.default_model = default_model

    @classmethod
    def from_yaml(
        cls, path: Union[str, Path], default_model: str = DEFAULT_MODEL
    ) -> "ModelCatalog":
        """
        Loads a catalog from a YAML file shaped as
        `models: {<id>: {fallback_model: <id>, rpm: .., tpm: .., rpd: ..}}`.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        models = data.get("models", {}) or {}
        lib_logger.info(f"Loaded {len(models)} model(s) from {path}")
        return cls(models, default_model=data.get("default_model", default_model))

    def __contains__(self, model: str) -> bool:
        return model in self._models

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def get(self, model: str) -> Optional[ModelConfig]:
        return self._models.get(model)

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: config.to_dict() for name, config in self._models.items()}

    def resolve(self, name: Optional[str]) -> str:
        """
        Resolves a requested model name to a configured model id.

        Order: empty name -> default; exact key; reverse alias (an entry whose
        fallback equals `name`, provided that fallback is itself configured);
        default model.

        Raises:
            ResolutionError: When nothing matches and the default model is
                not configured
        """
        if not name:
            if self.default_model in self._models:
                return self.default_model
            raise ResolutionError(
                f"No model requested and default model '{self.default_model}' is not configured."
            )

        if name in self._models:
            return name

        # Reverse alias rule. Only reachable when `name` is not itself a key,
        # and then the matching fallback can never be a key either, so this
        # branch does not currently resolve anything. Kept pending product
        # confirmation of the intended rule.
        for config in self._models.values():
            if config.fallback_model == name and config.fallback_model in self._models:
                return config.fallback_model

        if self.default_model in self._models:
            lib_logger.info(
                f"Unknown model '{name}', using default '{self.default_model}'"
            )
            return self.default_model

        raise ResolutionError(f"Cannot resolve model name for {name}.")

    def fallback_of(self, model: Optional[str]) -> Optional[str]:
        """
        Returns the configured fallback for `model`, or None when there is no
        entry, the fallback is empty, or it points back at the model itself.
        """
        if not model:
            return None
        config = self._models.get(model)
        if config is None or not config.fallback_model:
            return None
        if config.fallback_model == model:
            return None
        return config.fallback_model
