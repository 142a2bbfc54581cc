"""Derive the ``host:port`` identity of a connection target from its DSN."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from .errors import InvalidConnectionString

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5432

URL_SCHEMES = frozenset({"postgres", "postgresql", "opengauss", "gaussdb"})

_KEYWORD_PAIR = re.compile(
    r"\s*(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>'(?:[^'\\]|\\.)*'|[^\s']*)\s*"
)


def parse_fingerprint(dsn: str) -> str:
    """Return ``host:port`` for a URL-form or keyword-form connection string."""

    text = dsn.strip()
    if not text:
        raise InvalidConnectionString("Connection string is empty.")
    if "://" in text:
        return _from_url(text)
    options = _parse_keywords(text)
    host = options.get("host") or DEFAULT_HOST
    port = options.get("port") or str(DEFAULT_PORT)
    return f"{host}:{port}"


def _from_url(text: str) -> str:
    parts = urlsplit(text)
    if parts.scheme.lower() not in URL_SCHEMES:
        raise InvalidConnectionString(f"Unsupported connection scheme '{parts.scheme}'.")
    try:
        port = parts.port
    except ValueError as exc:
        raise InvalidConnectionString(f"Invalid port in connection URL: {exc}") from exc
    host = parts.hostname or DEFAULT_HOST
    return f"{host}:{port or DEFAULT_PORT}"


def _parse_keywords(text: str) -> dict[str, str]:
    options: dict[str, str] = {}
    pos = 0
    while pos < len(text):
        match = _KEYWORD_PAIR.match(text, pos)
        if match is None or match.end() == pos:
            raise InvalidConnectionString(f"Malformed connection string near {text[pos:pos + 20]!r}.")
        options[match.group("key")] = _unquote(match.group("value"))
        pos = match.end()
    return options


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


__all__ = ["DEFAULT_HOST", "DEFAULT_PORT", "URL_SCHEMES", "parse_fingerprint"]
