"""Stable identifier minting for system-level entities.

Identifiers are derived from an entity kind and a human name. The mapping is
append-only for the lifetime of a registry: an identifier is never
reassigned or deleted. Two different spellings that normalize to the same
body are told apart by a numeric suffix assigned in first-seen order::

    >>> registry = IdentifierRegistry()
    >>> registry.mint("component", "Login Button")
    'COMP-LOGIN-BUTTON'
    >>> registry.mint("component", "login-button")
    'COMP-LOGIN-BUTTON_2'
    >>> registry.mint("component", "Login Button")
    'COMP-LOGIN-BUTTON'
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger("storyloom.registry")


class EntityKind(str, Enum):
    COMPONENT = "component"
    STATE_MODEL = "stateModel"
    EVENT = "event"
    DATA_FLOW = "dataFlow"


ENTITY_PREFIX: Dict[EntityKind, str] = {
    EntityKind.COMPONENT: "COMP-",
    EntityKind.STATE_MODEL: "C-STATE-",
    EntityKind.EVENT: "E-",
    EntityKind.DATA_FLOW: "DF-",
}

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")


def normalize_name(canonical_name: str) -> str:
    """Upper-case ``canonical_name`` and join its alphanumeric runs with ``-``."""
    if not isinstance(canonical_name, str):
        return ""
    return _NON_ALNUM.sub("-", canonical_name.strip().upper()).strip("-")


def base_identifier(kind: EntityKind, canonical_name: str) -> str:
    prefix = ENTITY_PREFIX[kind]
    body = normalize_name(canonical_name)
    return f"{prefix}{body}" if body else prefix.rstrip("-")


@dataclass(frozen=True, slots=True)
class MintedIdentifier:
    kind: EntityKind
    canonical_name: str
    identifier: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "entityKind": self.kind.value,
            "canonicalName": self.canonical_name,
            "id": self.identifier,
        }


def _coerce_kind(kind: Union[EntityKind, str]) -> EntityKind:
    if isinstance(kind, EntityKind):
        return kind
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValueError(
            f"Unknown entity kind '{kind}'. Expected one of: {', '.join(k.value for k in EntityKind)}"
        ) from None


class IdentifierRegistry:
    """Append-only (kind, name) → identifier map. Single writer.

    ``mint`` is serialized with a lock so collision suffixes depend only on
    the order names are first seen, not on thread interleaving.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_name: Dict[Tuple[EntityKind, str], str] = {}
        self._by_base: Dict[str, List[str]] = {}
        self._order: List[MintedIdentifier] = []

    def mint(self, kind: Union[EntityKind, str], canonical_name: str) -> str:
        """Return the stable identifier for ``(kind, canonical_name)``, minting it on first sight."""
        entity_kind = _coerce_kind(kind)
        name = canonical_name if isinstance(canonical_name, str) else ""
        with self._lock:
            existing = self._by_name.get((entity_kind, name))
            if existing is not None:
                return existing

            base = base_identifier(entity_kind, name)
            holders = self._by_base.setdefault(base, [])
            identifier = base if not holders else f"{base}_{len(holders) + 1}"
            holders.append(name)
            self._by_name[(entity_kind, name)] = identifier
            self._order.append(MintedIdentifier(entity_kind, name, identifier))

        logger.debug(f"Minted {identifier} for {entity_kind.value} '{name}'")
        return identifier

    def lookup(self, kind: Union[EntityKind, str], canonical_name: str) -> Optional[str]:
        """Return the identifier for an already-minted name, without minting."""
        key = (_coerce_kind(kind), canonical_name)
        with self._lock:
            return self._by_name.get(key)

    def entries(self) -> List[MintedIdentifier]:
        """Every minted identifier in first-seen order."""
        with self._lock:
            return list(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, identifier: object) -> bool:
        return any(entry.identifier == identifier for entry in self._order)

    def freeze(self) -> "FrozenIdentifierRegistry":
        """Return an immutable view of everything minted so far."""
        with self._lock:
            return FrozenIdentifierRegistry(dict(self._by_name), list(self._order))

    def reset(self) -> None:
        """Forget every identifier. Only for test isolation."""
        with self._lock:
            self._by_name.clear()
            self._by_base.clear()
            self._order.clear()


class FrozenIdentifierRegistry:
    """Read-only registry handed to stages that run after discovery."""

    def __init__(self, by_name: Dict[Tuple[EntityKind, str], str], order: List[MintedIdentifier]):
        self._by_name: Mapping[Tuple[EntityKind, str], str] = MappingProxyType(by_name)
        self._order = tuple(order)

    def lookup(self, kind: Union[EntityKind, str], canonical_name: str) -> Optional[str]:
        return self._by_name.get((_coerce_kind(kind), canonical_name))

    def entries(self) -> List[MintedIdentifier]:
        return list(self._order)

    def identifiers(self, kind: Optional[Union[EntityKind, str]] = None) -> List[str]:
        wanted = _coerce_kind(kind) if kind is not None else None
        return [e.identifier for e in self._order if wanted is None or e.kind is wanted]

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, identifier: object) -> bool:
        return any(entry.identifier == identifier for entry in self._order)
