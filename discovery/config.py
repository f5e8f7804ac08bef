from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional, TypeAlias

from discovery.constants import (
    COI_HORIZON_DAYS,
    COI_MAX_KEY_PHRASES,
    COI_NEGATIVE_PENALTY,
    COI_RELEVANCE_WEIGHT,
    COI_THRESHOLD,
    COI_TOO_SIMILAR_THRESHOLD,
    CORE_KEEP_TOP,
    CORE_MAX_ACTIVE_DOCUMENTS,
    CORE_MAX_AGE_DAYS,
    CORE_MAX_DOCUMENTS,
    CORE_PAGE_SIZE,
    CORE_REQUEST_NEW,
    CORE_SEARCH_PAGE_SIZE,
    CORE_SELECT_TOP_KEY_PHRASES,
    EMBEDDING_MODEL_DIR,
    PROVIDER_BASE_URL,
    SEMANTIC_MAX_DAYS,
    SEMANTIC_MAX_DISSIMILARITY,
    SEMANTIC_THRESHOLD,
)
from discovery.errors import ConfigError
from discovery.models import Market

CONFIG_DIR = Path.home() / ".config" / "discovery_engine"
CONFIG_FILE = CONFIG_DIR / "config.json"


def load_config() -> dict:
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(key: str, value: Any) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)


@dataclass(frozen=True)
class MaxDissimilarity:
    """Stop merging clusters at the first step at or above this dissimilarity."""

    value: float


@dataclass(frozen=True)
class MaxClusters:
    """Keep merging clusters until at most this many remain."""

    value: int


Criterion: TypeAlias = MaxDissimilarity | MaxClusters


@dataclass(frozen=True)
class SemanticFilterConfig:
    max_days: float = SEMANTIC_MAX_DAYS
    threshold: float = SEMANTIC_THRESHOLD
    criterion: Criterion = MaxDissimilarity(SEMANTIC_MAX_DISSIMILARITY)

    def __post_init__(self) -> None:
        if self.max_days < 0:
            raise ConfigError(f"max_days must be non-negative, got {self.max_days}")
        if not 0.0 <= self.threshold <= 1.0:
            raise ConfigError(f"threshold must be in [0, 1], got {self.threshold}")
        match self.criterion:
            case MaxDissimilarity(value) if value < 0:
                raise ConfigError(f"max_dissimilarity must be non-negative, got {value}")
            case MaxClusters(value) if value < 0:
                raise ConfigError(f"max_clusters must be non-negative, got {value}")


@dataclass(frozen=True)
class CoiConfig:
    threshold: float = COI_THRESHOLD
    horizon: timedelta = timedelta(days=COI_HORIZON_DAYS)
    max_key_phrases: int = COI_MAX_KEY_PHRASES
    relevance_weight: float = COI_RELEVANCE_WEIGHT
    negative_penalty: float = COI_NEGATIVE_PENALTY
    too_similar_threshold: float = COI_TOO_SIMILAR_THRESHOLD

    def __post_init__(self) -> None:
        if not -1.0 <= self.threshold <= 1.0:
            raise ConfigError(f"coi threshold must be in [-1, 1], got {self.threshold}")
        if self.horizon <= timedelta(0):
            raise ConfigError("coi horizon must be positive")
        if self.max_key_phrases < 0:
            raise ConfigError("max_key_phrases must be non-negative")
        if not 0.0 <= self.relevance_weight <= 1.0:
            raise ConfigError(
                f"relevance_weight must be in [0, 1], got {self.relevance_weight}"
            )
        if self.negative_penalty < 0:
            raise ConfigError("negative_penalty must be non-negative")


@dataclass(frozen=True)
class CoreConfig:
    select_top: int = CORE_SELECT_TOP_KEY_PHRASES
    keep_top: int = CORE_KEEP_TOP
    request_new: int = CORE_REQUEST_NEW
    max_documents: int = CORE_MAX_DOCUMENTS
    page_size: int = CORE_PAGE_SIZE
    search_page_size: int = CORE_SEARCH_PAGE_SIZE
    max_age_days: int = CORE_MAX_AGE_DAYS
    max_active_documents: int = CORE_MAX_ACTIVE_DOCUMENTS

    def __post_init__(self) -> None:
        for name in (
            "select_top",
            "keep_top",
            "request_new",
            "max_documents",
            "max_age_days",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be non-negative")
        if self.page_size < 1 or self.search_page_size < 1:
            raise ConfigError("page sizes must be at least 1")
        if self.max_active_documents < 1:
            raise ConfigError("max_active_documents must be at least 1")


@dataclass(frozen=True)
class AiConfig:
    coi: CoiConfig = field(default_factory=CoiConfig)
    semantic: SemanticFilterConfig = field(default_factory=SemanticFilterConfig)
    core: CoreConfig = field(default_factory=CoreConfig)


def ai_config_from_json(text: Optional[str]) -> AiConfig:
    """Merge a JSON document over the default AI configuration.

    Unknown keys are ignored. Values of the wrong type or out of range raise
    ConfigError.
    """
    config = AiConfig()
    if not text:
        return config
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid AI config JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError("AI config must be a JSON object")

    try:
        coi_raw = _section(raw, "coi")
        coi = config.coi
        if "horizon_days" in coi_raw:
            coi = replace(coi, horizon=timedelta(days=float(coi_raw["horizon_days"])))
        coi = replace(
            coi,
            **_pick(
                coi_raw,
                {
                    "threshold": float,
                    "max_key_phrases": int,
                    "relevance_weight": float,
                    "negative_penalty": float,
                    "too_similar_threshold": float,
                },
            ),
        )

        semantic_raw = _section(raw, "semantic")
        semantic = replace(
            config.semantic,
            **_pick(semantic_raw, {"max_days": float, "threshold": float}),
        )
        if "max_clusters" in semantic_raw:
            semantic = replace(
                semantic, criterion=MaxClusters(int(semantic_raw["max_clusters"]))
            )
        elif "max_dissimilarity" in semantic_raw:
            semantic = replace(
                semantic,
                criterion=MaxDissimilarity(float(semantic_raw["max_dissimilarity"])),
            )

        core = replace(
            config.core,
            **_pick(
                _section(raw, "core"),
                {
                    "select_top": int,
                    "keep_top": int,
                    "request_new": int,
                    "max_documents": int,
                    "page_size": int,
                    "search_page_size": int,
                    "max_age_days": int,
                    "max_active_documents": int,
                },
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid AI config value: {e}") from e

    return AiConfig(coi=coi, semantic=semantic, core=core)


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"AI config section {name!r} must be an object")
    return section


def _pick(raw: dict, fields: dict[str, type]) -> dict[str, Any]:
    return {key: cast(raw[key]) for key, cast in fields.items() if key in raw}


@dataclass
class EndpointConfig:
    """Provider settings shared by all stack operations.

    Mutated only by the engine while it holds its write lock.
    """

    api_key: str
    api_base_url: str = PROVIDER_BASE_URL
    markets: list[Market] = field(default_factory=list)
    trusted_sources: list[str] = field(default_factory=list)
    excluded_sources: list[str] = field(default_factory=list)
    page_size: int = CORE_PAGE_SIZE
    max_age_days: int = CORE_MAX_AGE_DAYS


@dataclass
class InitConfig:
    """Configuration settings to initialize the discovery engine."""

    api_key: str
    api_base_url: str = PROVIDER_BASE_URL
    markets: list[Market] = field(default_factory=list)
    trusted_sources: list[str] = field(default_factory=list)
    excluded_sources: list[str] = field(default_factory=list)
    model_dir: str = EMBEDDING_MODEL_DIR
    ai_config: Optional[str] = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> InitConfig:
        if "api_key" not in d:
            raise ConfigError("api_key is required")
        markets_raw = d.get("markets", [])
        if not isinstance(markets_raw, list):
            raise ConfigError("markets must be a list")
        markets: list[Market] = []
        for m in markets_raw:
            if not isinstance(m, dict) or not {"country_code", "lang_code"} <= m.keys():
                raise ConfigError(f"Invalid market: {m!r}")
            markets.append(Market(str(m["country_code"]), str(m["lang_code"])))
        ai_config = d.get("ai_config")
        if isinstance(ai_config, dict):
            ai_config = json.dumps(ai_config)
        return cls(
            api_key=str(d["api_key"]),
            api_base_url=str(d.get("api_base_url", PROVIDER_BASE_URL)),
            markets=markets,
            trusted_sources=[str(s) for s in d.get("trusted_sources", [])],
            excluded_sources=[str(s) for s in d.get("excluded_sources", [])],
            model_dir=str(d.get("model_dir", EMBEDDING_MODEL_DIR)),
            ai_config=ai_config,
        )

    def endpoint(self, core: CoreConfig) -> EndpointConfig:
        return EndpointConfig(
            api_key=self.api_key,
            api_base_url=self.api_base_url,
            markets=list(self.markets),
            trusted_sources=list(self.trusted_sources),
            excluded_sources=list(self.excluded_sources),
            page_size=core.page_size,
            max_age_days=core.max_age_days,
        )


def load_init_config() -> InitConfig:
    """Build the init config from the saved user config file."""
    return InitConfig.from_dict(load_config())
