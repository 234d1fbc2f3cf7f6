"""Decoding of loosely formatted ``allorad`` output.

Depending on the node version and flags, queries print JSON, YAML or plain
text. Each helper below tries a fixed list of strategies in order; every
strategy returns ``None`` when it does not apply, and the helper returns
``None`` when none matched so callers never mistake "unparseable" for a
real answer.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, TypeVar

import yaml

__all__ = ["decode_document", "extract_bool", "extract_height", "extract_addresses", "first_match"]

T = TypeVar("T")
Strategy = Callable[[str], Optional[T]]


def first_match(text: str, strategies: Sequence[Strategy[T]]) -> Optional[T]:
    for strategy in strategies:
        result = strategy(text)
        if result is not None:
            return result
    return None


def _json_strategy(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _yaml_strategy(text: str) -> Optional[Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    # A bare scalar is not a document
    return data if isinstance(data, (dict, list)) else None


def decode_document(text: str) -> Optional[Any]:
    """Return the JSON or YAML document in ``text``."""

    text = (text or "").strip()
    if not text:
        return None
    return first_match(text, (_json_strategy, _yaml_strategy))


def _coerce_bool(raw: Any) -> Optional[bool]:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    return None


def _lookup(data: Any, keys: Iterable[str]) -> Optional[Any]:
    if not isinstance(data, Mapping):
        return None
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def extract_bool(text: str, keys: Sequence[str]) -> Optional[bool]:
    """Read a boolean answer published under one of ``keys``."""

    def structured(raw: str) -> Optional[bool]:
        document = decode_document(raw)
        if isinstance(document, bool):
            return document
        return _coerce_bool(_lookup(document, keys))

    def keyed_regex(raw: str) -> Optional[bool]:
        for key in keys:
            match = re.search(rf"\b{re.escape(key)}\"?\s*[:=]\s*\"?(true|false)\b", raw, re.IGNORECASE)
            if match:
                return match.group(1).lower() == "true"
        return None

    def bare_regex(raw: str) -> Optional[bool]:
        match = re.search(r"\b(true|false)\b", raw, re.IGNORECASE)
        return match.group(1).lower() == "true" if match else None

    return first_match(text or "", (structured, keyed_regex, bare_regex))


def extract_height(text: str) -> Optional[int]:
    """Read a block height from ``query block`` style output."""

    def structured(raw: str) -> Optional[int]:
        document = decode_document(raw)
        if isinstance(document, int) and not isinstance(document, bool):
            return document
        for candidate in (
            _lookup(document, ("height",)),
            _lookup(_lookup(document, ("header",)), ("height",)),
            _lookup(_lookup(_lookup(document, ("block",)), ("header",)), ("height",)),
            _lookup(_lookup(_lookup(document, ("sdk_block",)), ("header",)), ("height",)),
        ):
            if candidate is None:
                continue
            try:
                return int(str(candidate).strip().strip('"'))
            except ValueError:
                continue
        return None

    def keyed_regex(raw: str) -> Optional[int]:
        match = re.search(r"\bheight\"?:\s*\"?(\d+)\"?", raw)
        return int(match.group(1)) if match else None

    def digits(raw: str) -> Optional[int]:
        stripped = raw.strip()
        if stripped.isdigit():
            return int(stripped)
        match = re.search(r"\b(\d{3,})\b", raw)
        return int(match.group(1)) if match else None

    return first_match(text or "", (structured, keyed_regex, digits))


def extract_addresses(text: str, keys: Sequence[str], prefix: str = "allo1") -> Optional[List[str]]:
    """Collect worker addresses from list-shaped output."""

    def structured(raw: str) -> Optional[List[str]]:
        document = decode_document(raw)
        entries = _lookup(document, keys) if isinstance(document, Mapping) else document
        if not isinstance(entries, list):
            return None
        found: List[str] = []
        for entry in entries:
            if isinstance(entry, str):
                found.append(entry)
            elif isinstance(entry, Mapping):
                address = _lookup(entry, ("address", "inferer", "worker", "actor"))
                if isinstance(address, str):
                    found.append(address)
        return found

    def regex(raw: str) -> Optional[List[str]]:
        found = re.findall(rf"\b{re.escape(prefix)}[0-9a-z]{{20,}}\b", raw)
        return list(dict.fromkeys(found)) if found else None

    return first_match(text or "", (structured, regex))
