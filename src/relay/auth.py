from collections.abc import Mapping

BEARER_PREFIX = "Bearer "


def extract_credential(headers: Mapping[str, str]) -> str:
    """Recover the caller's credential from the ``Authorization`` header.

    The value is used for a single upstream call and must never be logged or stored.
    """
    auth_header = headers.get("authorization")
    if auth_header is None:
        auth_header = headers.get("Authorization") or ""
    if auth_header.startswith(BEARER_PREFIX):
        return auth_header[len(BEARER_PREFIX):]
    return auth_header
