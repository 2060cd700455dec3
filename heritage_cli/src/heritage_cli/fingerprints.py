"""
Reverse index from key fingerprints to the named entities owning them.

Display only: it annotates transaction summaries and the ``fingerprints``
command, and is never used to authorize anything.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import TYPE_CHECKING

from loguru import logger

from heritage_cli.entities import ENTITY_TYPES, Entity
from heritage_cli.errors import HeritageCliError
from heritage_cli.models import EntityKind, Fingerprint

if TYPE_CHECKING:
    from heritage_cli.store import Database

# Merge order of the entity kinds
KIND_ORDER = (EntityKind.HEIR, EntityKind.HEIR_WALLET, EntityKind.WALLET)

FingerprintIndex = dict[Fingerprint, list[str]]


def label(entity: Entity) -> str:
    return f"{entity.kind.value}:{entity.name}"


def build(entities: Iterable[Entity]) -> FingerprintIndex:
    """
    Map each fingerprint to the labels of its owners, in discovery order.

    Entities whose fingerprint cannot be resolved are left out.
    """
    index: FingerprintIndex = {}
    for entity in entities:
        try:
            fingerprint = entity.fingerprint()
        except HeritageCliError as e:
            logger.debug(f"No fingerprint for {label(entity)}: {e}")
            continue
        index.setdefault(fingerprint, []).append(label(entity))
    return index


def _load_kind(db: Database, kind: EntityKind) -> list[Entity]:
    entities: list[Entity] = []
    entity_type = ENTITY_TYPES[kind]
    for name, record in db.all_items(kind):
        try:
            entities.append(entity_type.from_record(name, record))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping unreadable {kind.value} {name}: {e}")
    return entities


async def collect(db: Database) -> FingerprintIndex:
    """Read the three entity kinds concurrently and index them."""
    loaded = await asyncio.gather(
        *(asyncio.to_thread(_load_kind, db, kind) for kind in KIND_ORDER)
    )
    return build(entity for entities in loaded for entity in entities)


def annotate(fingerprints: Iterable[Fingerprint], index: FingerprintIndex) -> dict[str, list[str]]:
    """Owner labels of each given fingerprint (empty list when unknown)."""
    return {fp: index.get(fp, []) for fp in fingerprints}
