"""Schema snapshots: prompt context for the translator and structural diffs for DDL previews."""

from __future__ import annotations

from dataclasses import dataclass, field

from db import Database, DatabaseError, Dialect, DriverError


@dataclass(frozen=True)
class Column:
    name: str
    data_type: str
    nullable: bool = True
    default: str | None = None

    def describe(self) -> str:
        text = f"{self.name} {self.data_type} {'NULL' if self.nullable else 'NOT NULL'}"
        if self.default is not None:
            text += f" DEFAULT {self.default}"
        return text


@dataclass(frozen=True)
class ForeignKey:
    columns: tuple[str, ...]
    references_table: str
    references_columns: tuple[str, ...]

    def describe(self) -> str:
        return (
            f"({', '.join(self.columns)}) -> "
            f"{self.references_table}({', '.join(self.references_columns)})"
        )


@dataclass(frozen=True)
class Index:
    name: str
    columns: tuple[str, ...]
    unique: bool = False

    def describe(self) -> str:
        text = f"{self.name} ({', '.join(self.columns)})"
        return f"{text} UNIQUE" if self.unique else text


@dataclass
class Table:
    name: str
    columns: list[Column] = field(default_factory=list)
    primary_key: tuple[str, ...] = ()
    foreign_keys: list[ForeignKey] = field(default_factory=list)
    indexes: list[Index] = field(default_factory=list)


@dataclass
class Schema:
    tables: list[Table] = field(default_factory=list)

    def table_map(self) -> dict[str, Table]:
        return {table.name: table for table in self.tables}

    def to_prompt_string(self) -> str:
        """Return a compact schema summary to send to the LLM."""
        lines: list[str] = []
        for table in self.tables:
            lines.append(f"Table: {table.name}")
            lines.append("  Columns:")
            lines.extend(f"    - {col.describe()}" for col in table.columns)
            if table.primary_key:
                lines.append(f"  Primary Key: ({', '.join(table.primary_key)})")
            if table.foreign_keys:
                lines.append("  Foreign Keys:")
                lines.extend(f"    - {fk.describe()}" for fk in table.foreign_keys)
            if table.indexes:
                lines.append("  Indexes:")
                lines.extend(f"    - {index.describe()}" for index in table.indexes)
            lines.append("")
        return "\n".join(lines) if lines else "(no tables found)"

    def diff(self, after: Schema) -> list[str]:
        """Describe how `after` differs from this snapshot, one change per line."""
        before_tables = self.table_map()
        after_tables = after.table_map()
        changes: list[str] = []

        for name in sorted(after_tables.keys() - before_tables.keys()):
            cols = ", ".join(col.describe() for col in after_tables[name].columns)
            changes.append(f"+ table {name} ({cols})")
        for name in sorted(before_tables.keys() - after_tables.keys()):
            changes.append(f"- table {name}")

        for name in sorted(before_tables.keys() & after_tables.keys()):
            changes.extend(_table_diff(before_tables[name], after_tables[name]))
        return changes


def _table_diff(before: Table, after: Table) -> list[str]:
    changes: list[str] = []
    old_cols = {col.name: col for col in before.columns}
    new_cols = {col.name: col for col in after.columns}

    for col in after.columns:
        if col.name not in old_cols:
            changes.append(f"+ column {after.name}.{col.describe()}")
    for col in before.columns:
        if col.name not in new_cols:
            changes.append(f"- column {before.name}.{col.name}")
        elif new_cols[col.name] != col:
            changes.append(
                f"~ column {before.name}.{col.describe()} -> {new_cols[col.name].describe()}"
            )

    if before.primary_key != after.primary_key:
        changes.append(
            f"~ primary key {before.name}: "
            f"({', '.join(before.primary_key)}) -> ({', '.join(after.primary_key)})"
        )
    for fk in after.foreign_keys:
        if fk not in before.foreign_keys:
            changes.append(f"+ foreign key {after.name} {fk.describe()}")
    for fk in before.foreign_keys:
        if fk not in after.foreign_keys:
            changes.append(f"- foreign key {before.name} {fk.describe()}")

    old_indexes = {index.name: index for index in before.indexes}
    new_indexes = {index.name: index for index in after.indexes}
    for index in after.indexes:
        if index.name not in old_indexes:
            changes.append(f"+ index {after.name}.{index.describe()}")
        elif old_indexes[index.name] != index:
            changes.append(
                f"~ index {after.name}.{old_indexes[index.name].describe()} -> {index.describe()}"
            )
    for index in before.indexes:
        if index.name not in new_indexes:
            changes.append(f"- index {before.name}.{index.name}")
    return changes


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _introspect_sqlite(database: Database) -> Schema:
    names = database.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' "
        "AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    tables: list[Table] = []
    for (name,) in names.rows:
        info = database.execute(f"PRAGMA table_info({_quote(name)})")
        table = Table(name=name)
        pk_positions: list[tuple[int, str]] = []
        # cid, name, type, notnull, dflt_value, pk
        for _cid, col_name, col_type, notnull, default, pk in info.rows:
            table.columns.append(
                Column(
                    name=col_name,
                    data_type=col_type or "",
                    nullable=not notnull,
                    default=None if default is None else str(default),
                )
            )
            if pk:
                pk_positions.append((pk, col_name))
        table.primary_key = tuple(col for _, col in sorted(pk_positions))

        fks = database.execute(f"PRAGMA foreign_key_list({_quote(name)})")
        grouped: dict[int, list[tuple]] = {}
        # id, seq, table, from, to, on_update, on_delete, match
        for row in fks.rows:
            grouped.setdefault(row[0], []).append(row)
        for _fk_id, rows in sorted(grouped.items()):
            rows.sort(key=lambda r: r[1])
            table.foreign_keys.append(
                ForeignKey(
                    columns=tuple(r[3] for r in rows),
                    references_table=rows[0][2],
                    references_columns=tuple(r[4] or "" for r in rows),
                )
            )

        # seq, name, unique, origin, partial
        for _seq, index_name, unique, origin, *_rest in database.execute(
            f"PRAGMA index_list({_quote(name)})"
        ).rows:
            if origin == "pk":
                continue
            # seqno, cid, name
            info = sorted(database.execute(f"PRAGMA index_info({_quote(index_name)})").rows)
            table.indexes.append(
                Index(index_name, tuple(r[2] or "(expression)" for r in info), bool(unique))
            )
        table.indexes.sort(key=lambda index: index.name)
        tables.append(table)
    return Schema(tables=tables)


def _excluded(schemas: tuple[str, ...], column: str) -> str:
    if not schemas:
        return "1 = 1"
    quoted = ", ".join(f"'{s}'" for s in schemas)
    return f"{column} NOT IN ({quoted})"


def _index_sql(dialect: Dialect) -> str:
    """Rows of (schema, table, index, unique, column), in key order. Primary keys are left out."""
    if dialect.name == "postgresql":
        return (
            "SELECT n.nspname, t.relname, i.relname, ix.indisunique, "
            "COALESCE(a.attname, '(expression)') "
            "FROM pg_index ix "
            "JOIN pg_class i ON i.oid = ix.indexrelid "
            "JOIN pg_class t ON t.oid = ix.indrelid "
            "JOIN pg_namespace n ON n.oid = t.relnamespace "
            "CROSS JOIN LATERAL unnest(ix.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord) "
            "LEFT JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum "
            f"WHERE NOT ix.indisprimary AND {_excluded(dialect.system_schemas, 'n.nspname')} "
            "ORDER BY n.nspname, t.relname, i.relname, k.ord"
        )
    if dialect.name == "mssql":
        return (
            "SELECT s.name, t.name, i.name, i.is_unique, c.name "
            "FROM sys.indexes i "
            "JOIN sys.tables t ON t.object_id = i.object_id "
            "JOIN sys.schemas s ON s.schema_id = t.schema_id "
            "JOIN sys.index_columns ic ON ic.object_id = i.object_id AND ic.index_id = i.index_id "
            "JOIN sys.columns c ON c.object_id = ic.object_id AND c.column_id = ic.column_id "
            "WHERE i.is_primary_key = 0 AND i.name IS NOT NULL AND ic.is_included_column = 0 "
            "ORDER BY s.name, t.name, i.name, ic.key_ordinal"
        )
    return (
        "SELECT table_schema, table_name, index_name, non_unique = 0, column_name "
        "FROM information_schema.statistics "
        f"WHERE index_name <> 'PRIMARY' AND {_excluded(dialect.system_schemas, 'table_schema')} "
        "ORDER BY table_schema, table_name, index_name, seq_in_index"
    )


def _introspect_information_schema(database: Database) -> Schema:
    dialect = database.dialect
    tables: dict[str, Table] = {}

    columns = database.execute(
        "SELECT table_schema, table_name, column_name, data_type, is_nullable, column_default "
        "FROM information_schema.columns "
        f"WHERE {_excluded(dialect.system_schemas, 'table_schema')} "
        "ORDER BY table_schema, table_name, ordinal_position"
    )
    for schema_name, table_name, col_name, data_type, is_nullable, default in columns.rows:
        full_name = f"{schema_name}.{table_name}"
        table = tables.setdefault(full_name, Table(name=full_name))
        table.columns.append(
            Column(
                name=col_name,
                data_type=data_type,
                nullable=str(is_nullable).upper() == "YES",
                default=None if default is None else str(default),
            )
        )

    pks = database.execute(
        "SELECT tc.table_schema, tc.table_name, kcu.column_name "
        "FROM information_schema.table_constraints tc "
        "JOIN information_schema.key_column_usage kcu "
        "ON tc.constraint_name = kcu.constraint_name "
        "AND tc.table_schema = kcu.table_schema "
        "AND tc.table_name = kcu.table_name "
        "WHERE tc.constraint_type = 'PRIMARY KEY' "
        f"AND {_excluded(dialect.system_schemas, 'tc.table_schema')} "
        "ORDER BY tc.table_schema, tc.table_name, kcu.ordinal_position"
    )
    pk_map: dict[str, list[str]] = {}
    for schema_name, table_name, col_name in pks.rows:
        pk_map.setdefault(f"{schema_name}.{table_name}", []).append(col_name)
    for full_name, cols in pk_map.items():
        if full_name in tables:
            tables[full_name].primary_key = tuple(cols)

    if dialect.name == "mysql":
        fk_sql = (
            "SELECT table_schema, table_name, column_name, "
            "referenced_table_schema, referenced_table_name, referenced_column_name "
            "FROM information_schema.key_column_usage "
            "WHERE referenced_table_name IS NOT NULL "
            f"AND {_excluded(dialect.system_schemas, 'table_schema')}"
        )
    else:
        fk_sql = (
            "SELECT tc.table_schema, tc.table_name, kcu.column_name, "
            "ccu.table_schema, ccu.table_name, ccu.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "ON tc.constraint_name = kcu.constraint_name "
            "AND tc.table_schema = kcu.table_schema "
            "JOIN information_schema.constraint_column_usage ccu "
            "ON ccu.constraint_name = tc.constraint_name "
            "AND ccu.table_schema = tc.table_schema "
            "WHERE tc.constraint_type = 'FOREIGN KEY' "
            f"AND {_excluded(dialect.system_schemas, 'tc.table_schema')}"
        )
    for schema_name, table_name, col_name, ref_schema, ref_table, ref_col in database.execute(fk_sql).rows:
        full_name = f"{schema_name}.{table_name}"
        if full_name in tables:
            tables[full_name].foreign_keys.append(
                ForeignKey(
                    columns=(col_name,),
                    references_table=f"{ref_schema}.{ref_table}",
                    references_columns=(ref_col,),
                )
            )

    grouped_indexes: dict[tuple[str, str], Index] = {}
    for schema_name, table_name, index_name, unique, col_name in database.execute(
        _index_sql(dialect)
    ).rows:
        key = (f"{schema_name}.{table_name}", index_name)
        index = grouped_indexes.get(key, Index(index_name, (), bool(unique)))
        grouped_indexes[key] = Index(index_name, (*index.columns, col_name), index.unique)
    for (full_name, _), index in grouped_indexes.items():
        if full_name in tables:
            tables[full_name].indexes.append(index)

    return Schema(tables=[tables[name] for name in sorted(tables)])


def introspect_schema(database: Database) -> Schema:
    """Read tables, columns, keys and indexes from the live connection."""
    try:
        if database.dialect.name == "sqlite":
            return _introspect_sqlite(database)
        return _introspect_information_schema(database)
    except DriverError as exc:
        raise DatabaseError(f"Could not read the database schema: {exc}", sql=exc.sql) from exc
