"""
Local persistent store.

One JSON document per network, under ``<datadir>/<network>/heritage-db.json``.
Every write replaces the whole file atomically.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger

from heritage_cli.errors import EntityNotFoundError, NameConflictError, StoreError
from heritage_cli.models import EntityKind, Network

DB_FILENAME = "heritage-db.json"
DEFAULT_ITEM_NAME = "default"

# Top-level namespace of each entity kind in the document
NAMESPACES = {
    EntityKind.WALLET: "wallet",
    EntityKind.HEIR_WALLET: "heirwallet",
    EntityKind.HEIR: "heir",
}


class Database:
    """
    Named-entity store with a default-name register per entity kind and a
    free-form item area (tokens, stored defaults, local wallet states).
    """

    def __init__(self, datadir: Path, network: Network):
        self.network = network
        self.path = Path(datadir) / network.value / DB_FILENAME
        self._data = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreError(f"Corrupted database file {self.path}: {e}") from e

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".heritage-db-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Database written to {self.path}")

    def _namespace(self, kind: EntityKind) -> dict[str, Any]:
        return self._data.setdefault(NAMESPACES[kind], {})

    # Named entities

    def load(self, kind: EntityKind, name: str) -> dict[str, Any]:
        record = self._data.get(NAMESPACES[kind], {}).get(name)
        if record is None:
            raise EntityNotFoundError(kind.value, name)
        return record

    def save(self, kind: EntityKind, name: str, record: dict[str, Any]) -> None:
        self._namespace(kind)[name] = record
        self._flush()

    def create(self, kind: EntityKind, name: str, record: dict[str, Any]) -> None:
        self.verify_name_is_free(kind, name)
        self.save(kind, name, record)

    def rename(self, kind: EntityKind, old_name: str, new_name: str) -> None:
        self.verify_name_is_free(kind, new_name)
        namespace = self._namespace(kind)
        if old_name not in namespace:
            raise EntityNotFoundError(kind.value, old_name)
        namespace[new_name] = namespace.pop(old_name)
        if self.get_default_name(kind) == old_name:
            self._data.setdefault("default_names", {})[NAMESPACES[kind]] = new_name
        self._flush()

    def delete(self, kind: EntityKind, name: str) -> None:
        namespace = self._namespace(kind)
        if name not in namespace:
            raise EntityNotFoundError(kind.value, name)
        del namespace[name]
        self._flush()

    def list_names(self, kind: EntityKind) -> list[str]:
        return sorted(self._data.get(NAMESPACES[kind], {}))

    def all_items(self, kind: EntityKind) -> list[tuple[str, dict[str, Any]]]:
        return sorted(self._data.get(NAMESPACES[kind], {}).items())

    def verify_name_is_free(self, kind: EntityKind, name: str) -> None:
        if name in self._data.get(NAMESPACES[kind], {}):
            raise NameConflictError(kind.value, name)

    # Default names

    def get_default_name(self, kind: EntityKind) -> str:
        return self._data.get("default_names", {}).get(NAMESPACES[kind], DEFAULT_ITEM_NAME)

    def set_default_name(self, kind: EntityKind, name: str) -> None:
        self._data.setdefault("default_names", {})[NAMESPACES[kind]] = name
        self._flush()

    # Free-form items

    def get_item(self, key: str) -> Any:
        return self._data.get("items", {}).get(key)

    def set_item(self, key: str, value: Any) -> None:
        self._data.setdefault("items", {})[key] = value
        self._flush()

    def delete_item(self, key: str) -> bool:
        items = self._data.get("items", {})
        if key not in items:
            return False
        del items[key]
        self._flush()
        return True
