"""
Dependency analysis over the SQLite catalog.

Only sqlite_master and PRAGMA output are read, never table data. Catalog read
failures are retried once and then surface as CatalogUnavailableError; callers
must treat that as blocking.
"""

import re
import sqlite3
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .config import CATALOG_RETRY_ATTEMPTS, CATALOG_RETRY_BACKOFF_SEC
from .db import quote_identifier
from .errors import CatalogUnavailableError
from .naming import is_deprecated_name
from .schema import Dependent, DependencyKind, Element, ElementKind

from util.logging import logger


def references(sql: Optional[str], name: str) -> bool:
    """Check whether SQL text references an identifier as a whole word."""
    if not sql:
        return False
    pattern = r'(?<![A-Za-z0-9_])["`\[]?%s["`\]]?(?![A-Za-z0-9_])' % re.escape(name)
    return re.search(pattern, sql, re.IGNORECASE) is not None


class CatalogReader:
    """Reads schema metadata from the target database."""

    def __init__(self, connect: Callable[[], sqlite3.Connection],
                 retry_attempts: int = CATALOG_RETRY_ATTEMPTS,
                 retry_backoff: float = CATALOG_RETRY_BACKOFF_SEC):
        self._connect = connect
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    def _read(self, operation: str, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        attempt = 0
        while True:
            try:
                conn = self._connect()
                try:
                    return fn(conn)
                finally:
                    conn.close()
            except sqlite3.Error as e:
                if attempt >= self.retry_attempts:
                    logger.error(f"Catalog query '{operation}' failed after {attempt + 1} attempt(s): {e}")
                    raise CatalogUnavailableError(f"Catalog query '{operation}' failed: {e}") from e
                attempt += 1
                logger.warning(f"Catalog query '{operation}' failed ({e}); retry {attempt}/{self.retry_attempts}")
                time.sleep(self.retry_backoff * attempt)

    # Raw catalog access

    @staticmethod
    def _objects(conn: sqlite3.Connection, obj_type: Optional[str] = None) -> List[Tuple[str, str, str, Optional[str]]]:
        query = "SELECT type, name, tbl_name, sql FROM sqlite_master WHERE name NOT LIKE 'sqlite_%'"
        params: Tuple = ()
        if obj_type:
            query += " AND type = ?"
            params = (obj_type,)
        return conn.execute(query + " ORDER BY rowid", params).fetchall()

    @staticmethod
    def _columns(conn: sqlite3.Connection, table: str) -> List[Tuple]:
        # cid, name, type, notnull, dflt_value, pk
        return conn.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()

    @staticmethod
    def _foreign_keys(conn: sqlite3.Connection, table: str) -> Dict[int, Dict[str, Any]]:
        keys: Dict[int, Dict[str, Any]] = {}
        # id, seq, table, from, to, on_update, on_delete, match
        for row in conn.execute(f"PRAGMA foreign_key_list({quote_identifier(table)})").fetchall():
            fk = keys.setdefault(row[0], {"table": row[2], "from": [], "to": []})
            fk["from"].append(row[3])
            fk["to"].append(row[4])
        return keys

    @staticmethod
    def _index_columns(conn: sqlite3.Connection, index: str) -> List[str]:
        return [row[2] for row in conn.execute(f"PRAGMA index_info({quote_identifier(index)})").fetchall()]

    @staticmethod
    def _find(objects, name: str, obj_type: Optional[str] = None):
        for row in objects:
            if row[1].lower() == name.lower() and (obj_type is None or row[0] == obj_type):
                return row
        return None

    # Element lookups

    def element_exists(self, element: Element, live_name: Optional[str] = None) -> bool:
        live = live_name or element.name

        def lookup(conn):
            if element.kind == ElementKind.TABLE:
                return self._find(self._objects(conn, "table"), live) is not None
            if element.kind == ElementKind.INDEX:
                return self._find(self._objects(conn, "index"), live) is not None
            columns = [c[1].lower() for c in self._columns(conn, element.owner)]
            return live.lower() in columns

        return self._read("element_exists", lookup)

    def name_exists(self, element: Element, candidate: str) -> bool:
        """Check whether an identifier is already taken where the element lives."""
        def lookup(conn):
            if element.kind == ElementKind.COLUMN:
                return candidate.lower() in [c[1].lower() for c in self._columns(conn, element.owner)]
            return self._find(self._objects(conn), candidate) is not None

        return self._read("name_exists", lookup)

    def list_names(self) -> List[str]:
        """All table, index and column names in the schema."""
        def lookup(conn):
            names = []
            for obj_type, name, _tbl, _sql in self._objects(conn):
                names.append(name)
                if obj_type == "table":
                    names.extend(c[1] for c in self._columns(conn, name))
            return names

        return self._read("list_names", lookup)

    def element_sql(self, element: Element, live_name: Optional[str] = None) -> List[str]:
        """DDL that defines the element (empty for columns)."""
        live = live_name or element.name

        def lookup(conn):
            if element.kind == ElementKind.COLUMN:
                return []
            row = self._find(self._objects(conn, element.kind.value), live)
            return [row[3]] if row and row[3] else []

        return self._read("element_sql", lookup)

    def index_table(self, index_name: str) -> Optional[str]:
        def lookup(conn):
            row = self._find(self._objects(conn, "index"), index_name)
            return row[2] if row else None

        return self._read("index_table", lookup)

    def column_definition(self, table: str, column: str) -> Optional[Dict[str, Any]]:
        def lookup(conn):
            for cid, name, col_type, notnull, default, pk in self._columns(conn, table):
                if name.lower() == column.lower():
                    return {"name": name, "type": col_type, "notnull": bool(notnull),
                            "default": default, "pk": bool(pk)}
            return None

        return self._read("column_definition", lookup)

    def table_columns(self, table: str) -> List[str]:
        return self._read("table_columns", lambda conn: [c[1] for c in self._columns(conn, table)])

    # Dependency analysis

    def find_dependents(self, element: Element, live_name: Optional[str] = None) -> List[Dependent]:
        """
        Find everything in the catalog that references an element.

        Args:
            element: Element identity
            live_name: Name the element is currently visible under (defaults to element.name)

        Returns:
            Direct dependents; an empty list means nothing references the element

        Raises:
            CatalogUnavailableError: if the catalog cannot be read
        """
        live = live_name or element.name

        if element.kind == ElementKind.TABLE:
            return self._read("find_dependents", lambda conn: self._table_dependents(conn, live))
        if element.kind == ElementKind.COLUMN:
            return self._read("find_dependents", lambda conn: self._column_dependents(conn, element.owner, live))
        # nothing in SQLite can reference an index by name
        return []

    def _table_dependents(self, conn: sqlite3.Connection, table: str) -> List[Dependent]:
        objects = self._objects(conn)
        dependents: List[Dependent] = []

        for obj_type, name, tbl_name, sql in objects:
            if obj_type == "table":
                for fk in self._foreign_keys(conn, name).values():
                    if fk["table"].lower() != table.lower():
                        continue
                    dependents.append(Dependent(
                        name=f"{name}({', '.join(fk['from'])})",
                        kind=DependencyKind.FOREIGN_KEY,
                        depends_on=table,
                        owner=name,
                        deprecated=is_deprecated_name(name),
                    ))
            elif obj_type == "view" and references(sql, table):
                dependents.append(Dependent(
                    name=name, kind=DependencyKind.VIEW, depends_on=table,
                    definition=sql, deprecated=is_deprecated_name(name),
                ))
            elif obj_type == "trigger":
                owned = tbl_name.lower() == table.lower()
                if owned or references(sql, table):
                    dependents.append(Dependent(
                        name=name, kind=DependencyKind.TRIGGER, depends_on=table, owner=tbl_name,
                        definition=sql, owned=owned,
                        deprecated=is_deprecated_name(name) or (not owned and is_deprecated_name(tbl_name)),
                    ))
            elif obj_type == "index" and sql and tbl_name.lower() == table.lower():
                dependents.append(Dependent(
                    name=name, kind=DependencyKind.INDEX, depends_on=table, owner=tbl_name,
                    definition=sql, owned=True,
                ))

        return dependents

    def _column_dependents(self, conn: sqlite3.Connection, table: str, column: str) -> List[Dependent]:
        objects = self._objects(conn)
        dependents: List[Dependent] = []
        pk_columns = [c[1] for c in self._columns(conn, table) if c[5]]

        for fk_id, fk in self._foreign_keys(conn, table).items():
            if any(col.lower() == column.lower() for col in fk["from"]):
                dependents.append(Dependent(
                    name=f"{table}({', '.join(fk['from'])}) -> {fk['table']}",
                    kind=DependencyKind.FOREIGN_KEY, depends_on=column, owner=table,
                ))

        for obj_type, name, tbl_name, sql in objects:
            if obj_type == "table":
                for fk in self._foreign_keys(conn, name).values():
                    if fk["table"].lower() != table.lower():
                        continue
                    targets = [t if t else pk for t, pk in zip(fk["to"], pk_columns or [None] * len(fk["to"]))]
                    if any(t and t.lower() == column.lower() for t in targets):
                        dependents.append(Dependent(
                            name=f"{name}({', '.join(fk['from'])})",
                            kind=DependencyKind.FOREIGN_KEY, depends_on=column, owner=name,
                            deprecated=is_deprecated_name(name),
                        ))
            elif obj_type == "index" and sql and tbl_name.lower() == table.lower():
                if column.lower() in [c.lower() for c in self._index_columns(conn, name) if c]:
                    dependents.append(Dependent(
                        name=name, kind=DependencyKind.INDEX, depends_on=column, owner=tbl_name,
                        definition=sql, deprecated=is_deprecated_name(name),
                    ))
            elif obj_type in ("view", "trigger") and references(sql, column):
                if tbl_name.lower() == table.lower() or references(sql, table):
                    kind = DependencyKind.VIEW if obj_type == "view" else DependencyKind.TRIGGER
                    dependents.append(Dependent(
                        name=name, kind=kind, depends_on=column,
                        owner=tbl_name if obj_type == "trigger" else None,
                        definition=sql, deprecated=is_deprecated_name(name),
                    ))

        return dependents

    def find_dependents_transitive(self, element: Element, live_name: Optional[str] = None) -> List[Dependent]:
        """
        Direct dependents plus views and triggers that reference them, breadth first.

        Cycles (self-references, diamonds) are visited once. The result is ordered
        by depth, which is the order restoration must follow.
        """
        direct = self.find_dependents(element, live_name)

        def expand(conn):
            objects = self._objects(conn)
            seen: Set[Tuple[str, str]] = {(d.kind.value, d.name.lower()) for d in direct}
            result = list(direct)
            queue = deque(d for d in direct if d.kind in (DependencyKind.VIEW, DependencyKind.TRIGGER))

            while queue:
                parent = queue.popleft()
                for obj_type, name, tbl_name, sql in objects:
                    if obj_type not in ("view", "trigger") or name.lower() == parent.name.lower():
                        continue
                    if not references(sql, parent.name):
                        continue
                    kind = DependencyKind.VIEW if obj_type == "view" else DependencyKind.TRIGGER
                    key = (kind.value, name.lower())
                    if key in seen:
                        continue
                    seen.add(key)
                    child = Dependent(
                        name=name, kind=kind, depends_on=parent.name,
                        owner=tbl_name if obj_type == "trigger" else None,
                        definition=sql, depth=parent.depth + 1,
                        deprecated=is_deprecated_name(name),
                    )
                    result.append(child)
                    queue.append(child)

            return sorted(result, key=lambda d: d.depth)

        if not any(d.kind in (DependencyKind.VIEW, DependencyKind.TRIGGER) for d in direct):
            return direct
        return self._read("find_dependents_transitive", expand)


_DDL_HEADER_RE = re.compile(
    r'^(?P<head>\s*CREATE\s+(?:UNIQUE\s+)?(?:TEMP\s+|TEMPORARY\s+)?(?P<type>TABLE|INDEX|VIEW|TRIGGER)\s+)'
    r'(?P<exists>IF\s+NOT\s+EXISTS\s+)?'
    r'(?P<name>"(?:[^"]|"")+"|`[^`]+`|\[[^\]]+\]|[A-Za-z0-9_]+)',
    re.IGNORECASE,
)


def retarget_ddl(sql: str, new_name: str) -> str:
    """Rewrite the object name in a CREATE statement."""
    match = _DDL_HEADER_RE.match(sql)
    if not match:
        raise ValueError(f"Unrecognized CREATE statement: {sql[:60]}")
    return sql[:match.start("name")] + quote_identifier(new_name) + sql[match.end("name"):]


def with_if_not_exists(sql: str) -> str:
    """Make a CREATE statement idempotent."""
    match = _DDL_HEADER_RE.match(sql)
    if not match or match.group("exists"):
        return sql
    return sql[:match.end("head")] + "IF NOT EXISTS " + sql[match.end("head"):]
