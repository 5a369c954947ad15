"""Seed data runner.

Seed files are YAML documents, applied in filename order::

    # seeds/001_roles.yaml
    table: roles
    key: [name]
    rows:
      - {name: admin, description: Administrator}
      - {name: user, description: Regular user}

A row is inserted only when no row with the same key values exists, so a
second run against an already seeded database inserts nothing. Table and
column names are validated as plain identifiers before they reach SQL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from shipwright.core.errors import SeedError
from shipwright.core.logging import get_logger
from shipwright.startup.database import Database

logger = get_logger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise SeedError(f"Invalid SQL identifier in seed data: {name!r}")
    return f'"{name}"'


@dataclass
class SeedFile:
    path: Path
    table: str
    key: list[str]
    rows: list[dict[str, Any]]

    @classmethod
    def load(cls, path: Path) -> SeedFile:
        """Parse and validate a seed file.

        Raises:
            SeedError: Unreadable YAML or a document missing table/key/rows
        """
        try:
            doc = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise SeedError(f"Cannot read seed file {path.name}: {exc}", seed_file=path.name, cause=exc) from exc

        if not isinstance(doc, dict) or not doc.get("table"):
            raise SeedError(f"Seed file {path.name} must define 'table'", seed_file=path.name)
        key = doc.get("key")
        if isinstance(key, str):
            key = [key]
        if not key or not isinstance(key, list):
            raise SeedError(f"Seed file {path.name} must define 'key'", seed_file=path.name)
        rows = doc.get("rows") or []
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise SeedError(f"Seed file {path.name}: 'rows' must be a list of mappings", seed_file=path.name)

        for row in rows:
            missing = [k for k in key if k not in row]
            if missing:
                raise SeedError(
                    f"Seed file {path.name}: row {row!r} lacks key column(s) {missing}",
                    seed_file=path.name,
                )
        return cls(path=path, table=doc["table"], key=list(key), rows=rows)


@dataclass
class SeedResult:
    """Rows inserted per seed file."""

    inserted: dict[str, int] = field(default_factory=dict)

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())


def discover_seeds(seeds_dir: Path) -> list[Path]:
    if not seeds_dir.is_dir():
        return []
    return sorted(p for p in seeds_dir.iterdir() if p.suffix in (".yaml", ".yml"))


class SeedRunner:
    """Applies seed files idempotently.

    Example::

        result = SeedRunner(db, Path("seeds")).apply()
        result.total_inserted  # 0 on an already seeded database
    """

    def __init__(self, db: Database, seeds_dir: Path | str) -> None:
        self._db = db
        self._seeds_dir = Path(seeds_dir)

    def apply(self) -> SeedResult:
        """Apply every seed file, one transaction per file.

        Raises:
            SeedError: On the first file that cannot be applied
        """
        result = SeedResult()
        for path in discover_seeds(self._seeds_dir):
            seed = SeedFile.load(path)
            result.inserted[path.name] = self._apply_file(seed)
            logger.info("seed.applied", seed_file=path.name, table=seed.table, inserted=result.inserted[path.name])
        return result

    def _apply_file(self, seed: SeedFile) -> int:
        table = quote_identifier(seed.table)
        key_clause = " AND ".join(f"{quote_identifier(k)} = ?" for k in seed.key)
        inserted = 0
        try:
            for row in seed.rows:
                key_values = [row[k] for k in seed.key]
                if self._db.query(f"SELECT 1 FROM {table} WHERE {key_clause}", key_values):
                    continue
                columns = list(row)
                column_list = ", ".join(quote_identifier(c) for c in columns)
                values = ", ".join("?" for _ in columns)
                self._db.execute(
                    f"INSERT INTO {table} ({column_list}) VALUES ({values})",
                    [row[c] for c in columns],
                )
                inserted += 1
            self._db.commit()
        except SeedError:
            self._db.rollback()
            raise
        except Exception as exc:
            self._db.rollback()
            logger.error("seed.failed", seed_file=seed.path.name, error=str(exc))
            raise SeedError(
                f"Seed file {seed.path.name} failed: {exc}", seed_file=seed.path.name, cause=exc
            ) from exc
        return inserted


__all__ = ["SeedFile", "SeedResult", "SeedRunner", "discover_seeds", "quote_identifier"]
