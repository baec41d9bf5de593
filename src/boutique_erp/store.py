"""Entity store backends for the boutique ERP.

The business layer only talks to the store through five calls (``get``,
``list``, ``insert``, ``update`` and ``delete``) keyed by
:class:`~boutique_erp.constants.EntityKind`. Two backends implement them:

* :class:`MemoryStore` keeps every row in ordered dictionaries. A fresh
  instance always starts its id sequences at 1.
* :class:`WorkbookStore` loads the openpyxl master workbook into memory and
  mirrors each mutation into the matching worksheet so that ``save`` can
  write the file back.

Ids are handed out per kind, monotonically, and are never reused, even after
a row is deleted.
"""

from __future__ import annotations

from dataclasses import fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EntityKind
from .data_manager import EntityRow


class EntityStore(Protocol):
    """Request/response contract shared by every store backend."""

    def get(self, kind: EntityKind, entity_id: int) -> Optional[EntityRow]:
        ...

    def list(self, kind: EntityKind) -> List[EntityRow]:
        ...

    def insert(self, kind: EntityKind, data: Mapping[str, Any]) -> EntityRow:
        ...

    def update(self, kind: EntityKind, entity_id: int, changes: Mapping[str, Any]) -> Optional[EntityRow]:
        ...

    def delete(self, kind: EntityKind, entity_id: int) -> bool:
        ...

    def save(self) -> None:
        ...


def _field_names(kind: EntityKind) -> set[str]:
    return {f.name for f in fields(data_manager.ROW_TYPES[kind])}


class MemoryStore:
    """Dictionary-backed store with store-owned id sequences."""

    def __init__(self) -> None:
        self._rows: Dict[EntityKind, Dict[int, EntityRow]] = {kind: {} for kind in EntityKind}
        self._sequences: Dict[EntityKind, int] = {kind: 1 for kind in EntityKind}

    def get(self, kind: EntityKind, entity_id: int) -> Optional[EntityRow]:
        return self._rows[kind].get(entity_id)

    def list(self, kind: EntityKind) -> List[EntityRow]:
        """Return every row of ``kind`` in insertion order."""

        return [*self._rows[kind].values()]

    def insert(self, kind: EntityKind, data: Mapping[str, Any]) -> EntityRow:
        """Create a row of ``kind`` from ``data`` and assign it the next id.

        Raises:
            KeyError: If ``data`` carries an ``id`` or names an unknown field.
        """

        self._check_fields(kind, data)
        entity_id = self._sequences[kind]
        row = data_manager.ROW_TYPES[kind](id=entity_id, **data)
        self._sequences[kind] = entity_id + 1
        self._rows[kind][entity_id] = row
        log.debug("Inserted %s row %d", kind.value, entity_id)
        return row

    def update(self, kind: EntityKind, entity_id: int, changes: Mapping[str, Any]) -> Optional[EntityRow]:
        """Merge ``changes`` into an existing row; ``None`` when it is absent."""

        self._check_fields(kind, changes)
        current = self._rows[kind].get(entity_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        self._rows[kind][entity_id] = updated
        return updated

    def delete(self, kind: EntityKind, entity_id: int) -> bool:
        return self._rows[kind].pop(entity_id, None) is not None

    def next_id(self, kind: EntityKind) -> int:
        """Peek at the id the next insert of ``kind`` will receive."""

        return self._sequences[kind]

    def save(self) -> None:
        """Nothing to persist for a purely in-memory store."""

    @staticmethod
    def _check_fields(kind: EntityKind, data: Mapping[str, Any]) -> None:
        if "id" in data:
            raise KeyError(f"{kind.value} ids are assigned by the store")
        unknown = set(data) - _field_names(kind)
        if unknown:
            raise KeyError(f"Unknown {kind.value} field(s): {', '.join(sorted(unknown))}")


class WorkbookStore(MemoryStore):
    """Memory store mirrored into an openpyxl workbook.

    Reads are served from memory. Inserts, updates and deletes are applied to
    memory first and then written to the worksheet for the same kind; the
    ``Sequences`` sheet tracks the next id per kind so that deleted ids stay
    retired across reloads.
    """

    def __init__(self, workbook: Workbook, data_file: Optional[Path] = None) -> None:
        super().__init__()
        self.workbook = workbook
        self.data_file = data_file

        stored_sequences = data_manager.read_sequences(workbook)
        for kind in EntityKind:
            rows = self._rows[kind]
            for row in data_manager.iter_records(workbook, kind):
                rows[row.id] = row
            highest = max(rows, default=0)
            self._sequences[kind] = max(stored_sequences[kind], highest + 1)
        log.debug(
            "Loaded workbook store (%s)",
            ", ".join(f"{kind.value}={len(self._rows[kind])}" for kind in EntityKind),
        )

    @classmethod
    def open(cls, data_file: Path) -> "WorkbookStore":
        """Load the workbook at ``data_file`` into a new store."""

        workbook = data_manager.open_workbook(data_file)
        return cls(workbook, data_file=Path(data_file))

    def insert(self, kind: EntityKind, data: Mapping[str, Any]) -> EntityRow:
        row = super().insert(kind, data)
        data_manager.append_record(self.workbook, kind, row)
        data_manager.write_sequence(self.workbook, kind, self._sequences[kind])
        return row

    def update(self, kind: EntityKind, entity_id: int, changes: Mapping[str, Any]) -> Optional[EntityRow]:
        row = super().update(kind, entity_id, changes)
        if row is not None and changes:
            data_manager.update_record(self.workbook, kind, entity_id, field_values=dict(changes))
        return row

    def delete(self, kind: EntityKind, entity_id: int) -> bool:
        removed = super().delete(kind, entity_id)
        if removed:
            data_manager.delete_record(self.workbook, kind, entity_id)
        return removed

    def save(self) -> None:
        """Write the workbook back to ``data_file``.

        Raises:
            ValueError: If the store was built without a destination path.
        """

        if self.data_file is None:
            raise ValueError("WorkbookStore has no data file to save to")
        data_manager.save_workbook(self.workbook, self.data_file)


__all__ = ["EntityStore", "MemoryStore", "WorkbookStore"]
