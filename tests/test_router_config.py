from __future__ import annotations

import logging
from pathlib import Path

import pytest

from src.relay.config import DEFAULT_UPSTREAM_TIMEOUT, build_route_table, load_routes, load_settings
from src.relay.normalize import normalize_chunk, normalize_completion

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def write_routes(tmp_path: Path, text: str) -> str:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "routes.yaml").write_text(text, encoding="utf-8")
    return str(config_dir)


def test_load_routes_builds_descriptors_in_order(tmp_path):
    config_dir = write_routes(
        tmp_path,
        """
routes:
  - prefix: /runanytime
    target: https://runanytime.hxi.me/v1/
    headers:
      User-Agent: Mozilla/5.0
    transform_completion: strict
    transform_chunk: strict
  - prefix: /plain
    target: http://localhost:9000/api
""",
    )

    table = load_routes(config_dir)
    first, second = table.routes

    assert first.prefix == "/runanytime"
    assert first.target == "https://runanytime.hxi.me/v1"
    assert dict(first.headers) == {"User-Agent": "Mozilla/5.0"}
    assert first.transform_completion is normalize_completion
    assert first.transform_chunk is normalize_chunk
    assert second.headers == {}
    assert second.transform_completion is None
    assert second.transform_chunk is None


def test_repository_routes_file_loads():
    table = load_routes(str(PROJECT_ROOT / "config"))

    assert [route.prefix for route in table] == ["/runanytime", "/example-nonstandard"]


def test_unknown_transform_is_rejected(tmp_path):
    config_dir = write_routes(
        tmp_path,
        """
routes:
  - prefix: /x
    target: https://x.example/v1
    transform_chunk: lenient
""",
    )

    with pytest.raises(ValueError) as excinfo:
        load_routes(config_dir)

    message = str(excinfo.value)
    assert "transform_chunk" in message
    assert "lenient" in message


@pytest.mark.parametrize(
    "route_yaml, fragment",
    [
        ("  - prefix: ''\n    target: https://x.example", "prefix"),
        ("  - prefix: /x\n    target: x.example/v1", "target"),
        ("  - prefix: /x", "target"),
        ("  - prefix: /x\n    target: https://x.example\n    retries: 3", "retries"),
    ],
)
def test_invalid_route_entries_are_rejected(tmp_path, route_yaml, fragment):
    config_dir = write_routes(tmp_path, "routes:\n" + route_yaml + "\n")

    with pytest.raises(ValueError) as excinfo:
        load_routes(config_dir)

    assert fragment in str(excinfo.value)


def test_missing_routes_key_is_rejected():
    with pytest.raises(ValueError) as excinfo:
        build_route_table({})

    assert "routes" in str(excinfo.value)


def test_overlapping_prefixes_are_warned_not_rejected(caplog):
    with caplog.at_level(logging.WARNING, logger="src.relay.config"):
        table = build_route_table(
            {
                "routes": [
                    {"prefix": "/a", "target": "https://a.example"},
                    {"prefix": "/a/b", "target": "https://b.example"},
                ]
            }
        )

    assert len(table) == 2
    assert "routes.overlap prefix=/a/b shadowed_by=/a" in caplog.text


def test_settings_defaults(monkeypatch):
    for name in (
        "RELAY_CONFIG_DIR",
        "RELAY_UPSTREAM_TIMEOUT",
        "RELAY_CORS_ALLOW_ORIGINS",
        "RELAY_HOST",
        "RELAY_PORT",
        "RELAY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = load_settings()

    assert settings.upstream_timeout == DEFAULT_UPSTREAM_TIMEOUT
    assert settings.cors_allow_origins == ()
    assert settings.port == 8888
    assert settings.log_level == "INFO"


def test_settings_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("RELAY_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("RELAY_UPSTREAM_TIMEOUT", "0")
    monkeypatch.setenv("RELAY_CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("RELAY_PORT", "not-a-port")
    monkeypatch.setenv("RELAY_LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.config_dir == str(tmp_path)
    assert settings.upstream_timeout is None
    assert settings.cors_allow_origins == ("https://a.example", "https://b.example")
    assert settings.port == 8888
    assert settings.log_level == "DEBUG"


def test_negative_timeout_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("RELAY_UPSTREAM_TIMEOUT", "-5")

    assert load_settings().upstream_timeout == DEFAULT_UPSTREAM_TIMEOUT
