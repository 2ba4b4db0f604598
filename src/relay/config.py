import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .normalize import CHUNK_TRANSFORMS, COMPLETION_TRANSFORMS, ChunkTransform, CompletionTransform

logger = logging.getLogger(__name__)

ROUTES_FILENAME = "routes.yaml"
DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config")
DEFAULT_UPSTREAM_TIMEOUT = 60.0


@dataclass(frozen=True)
class RouteDescriptor:
    prefix: str
    target: str
    headers: Mapping[str, str] = field(default_factory=dict)
    transform_completion: Optional[CompletionTransform] = None
    transform_chunk: Optional[ChunkTransform] = None

    def __post_init__(self) -> None:
        if not self.prefix:
            raise ValueError("route prefix must be a non-empty string")
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))


@dataclass(frozen=True)
class RouteTable:
    routes: tuple[RouteDescriptor, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "routes", tuple(self.routes))

    def __iter__(self):
        return iter(self.routes)

    def __len__(self) -> int:
        return len(self.routes)

    def find(self, path: str) -> Optional[RouteDescriptor]:
        for route in self.routes:
            if path.startswith(route.prefix):
                return route
        return None


@dataclass(frozen=True)
class Settings:
    config_dir: str
    upstream_timeout: Optional[float]
    cors_allow_origins: tuple[str, ...]
    host: str
    port: int
    log_level: str


class _RouteModel(BaseModel):
    prefix: str = Field(min_length=1)
    target: str = Field(min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    transform_completion: Optional[str] = None
    transform_chunk: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("target")
    @classmethod
    def _absolute_target(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("target must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("transform_completion")
    @classmethod
    def _known_completion_transform(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in COMPLETION_TRANSFORMS:
            available = ", ".join(sorted(COMPLETION_TRANSFORMS))
            raise ValueError(f"unknown completion transform '{value}'. Available: {available}")
        return value

    @field_validator("transform_chunk")
    @classmethod
    def _known_chunk_transform(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in CHUNK_TRANSFORMS:
            available = ", ".join(sorted(CHUNK_TRANSFORMS))
            raise ValueError(f"unknown chunk transform '{value}'. Available: {available}")
        return value


class _RoutesFileModel(BaseModel):
    routes: list[_RouteModel]

    model_config = ConfigDict(extra="forbid")


def _warn_overlapping_prefixes(routes: tuple[RouteDescriptor, ...]) -> None:
    for position, route in enumerate(routes):
        for earlier in routes[:position]:
            if route.prefix.startswith(earlier.prefix):
                logger.warning(
                    "routes.overlap prefix=%s shadowed_by=%s", route.prefix, earlier.prefix
                )


def build_route_table(data: object) -> RouteTable:
    try:
        parsed = _RoutesFileModel.model_validate(data or {})
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc
    routes = tuple(
        RouteDescriptor(
            prefix=model.prefix,
            target=model.target,
            headers=model.headers,
            transform_completion=(
                COMPLETION_TRANSFORMS[model.transform_completion]
                if model.transform_completion
                else None
            ),
            transform_chunk=(
                CHUNK_TRANSFORMS[model.transform_chunk] if model.transform_chunk else None
            ),
        )
        for model in parsed.routes
    )
    _warn_overlapping_prefixes(routes)
    return RouteTable(routes)


def load_routes(config_dir: str) -> RouteTable:
    routes_path = os.path.join(config_dir, ROUTES_FILENAME)
    with open(routes_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return build_route_table(data)


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_var_as_int(name: str, *, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings() -> Settings:
    timeout = _env_var_as_float("RELAY_UPSTREAM_TIMEOUT", default=DEFAULT_UPSTREAM_TIMEOUT)
    return Settings(
        config_dir=os.environ.get("RELAY_CONFIG_DIR", DEFAULT_CONFIG_DIR),
        upstream_timeout=timeout or None,
        cors_allow_origins=tuple(_parse_env_list(os.environ.get("RELAY_CORS_ALLOW_ORIGINS", ""))),
        host=os.environ.get("RELAY_HOST", "0.0.0.0"),
        port=_env_var_as_int("RELAY_PORT", default=8888),
        log_level=os.environ.get("RELAY_LOG_LEVEL", "INFO").upper(),
    )
