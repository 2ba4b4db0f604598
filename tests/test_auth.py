import pytest
from starlette.datastructures import Headers

from src.relay.auth import extract_credential


def test_bearer_prefix_is_stripped() -> None:
    assert extract_credential(Headers({"authorization": "Bearer sk-user-key-123"})) == "sk-user-key-123"


def test_missing_header_yields_empty_string() -> None:
    assert extract_credential(Headers({})) == ""
    assert extract_credential({}) == ""


@pytest.mark.parametrize("value", ["sk-raw-key", "bearer sk-lower", "Basic dXNlcjpwYXNz", "Bearer", ""])
def test_values_without_bearer_prefix_pass_through(value: str) -> None:
    assert extract_credential(Headers({"authorization": value})) == value


def test_only_one_bearer_prefix_is_stripped() -> None:
    assert extract_credential(Headers({"authorization": "Bearer Bearer x"})) == "Bearer x"


def test_plain_mapping_with_canonical_header_name() -> None:
    assert extract_credential({"Authorization": "Bearer abc"}) == "abc"


def test_extraction_is_idempotent_without_prefix() -> None:
    once = extract_credential(Headers({"authorization": "Bearer token"}))

    assert extract_credential({"authorization": once}) == once
