"""Tests for schema snapshot comparison.

Covers table/column/index/foreign-key detection, structural matching of
renamed indexes and constraints, item ordering, symmetry, and summary counts.
"""

from db_sync.schema.comparator import column_changes, diff_schemas, foreign_key_key, index_key
from db_sync.schema.models import (
    ColumnDefinition,
    Dialect,
    DiffKind,
    ForeignKeyDefinition,
    IndexDefinition,
    SchemaSnapshot,
    TableDefinition,
)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _col(name: str, data_type: str = "integer", **kwargs) -> ColumnDefinition:
    return ColumnDefinition(name=name, data_type=data_type, native_type=kwargs.pop("native_type", data_type), **kwargs)


def _users(*extra_columns: ColumnDefinition, indexes=None) -> TableDefinition:
    return TableDefinition(
        name="users",
        schema="public",
        columns=[_col("id", nullable=False, is_primary_key=True), _col("name", "text"), *extra_columns],
        indexes=indexes or [],
    )


def _snapshot(*tables: TableDefinition, schema: str = "public") -> SchemaSnapshot:
    return SchemaSnapshot(schema=schema, dialect=Dialect.POSTGRES, tables=list(tables))


# ==================================================================
# Tables and columns
# ==================================================================


class TestTableAndColumnDetection:
    """Detect added/removed tables and column changes."""

    def test_identical_snapshots_produce_empty_diff(self) -> None:
        """Comparing a snapshot with itself yields no items."""
        snap = _snapshot(_users())
        diff = diff_schemas(snap, snap)
        assert diff.is_empty
        assert diff.summary.total == 0

    def test_table_added_and_removed(self) -> None:
        """Tables only in source are added; tables only in target are removed."""
        source = _snapshot(_users(), TableDefinition(name="orders", columns=[_col("id")]))
        target = _snapshot(_users(), TableDefinition(name="legacy", columns=[_col("id")]))
        diff = diff_schemas(source, target)

        kinds = {(item.kind, item.table) for item in diff.items}
        assert (DiffKind.TABLE_ADDED, "orders") in kinds
        assert (DiffKind.TABLE_REMOVED, "legacy") in kinds
        assert diff.summary.tables_added == 1
        assert diff.summary.tables_removed == 1

    def test_column_removed_in_source(self) -> None:
        """A column the target has but the source lacks is reported as removed."""
        source = _snapshot(_users())
        target = _snapshot(_users(_col("email", "varchar")))
        diff = diff_schemas(source, target)

        assert len(diff.items) == 1
        item = diff.items[0]
        assert item.kind == DiffKind.COLUMN_REMOVED
        assert item.table == "users"
        assert item.name == "email"
        assert item.target.data_type == "varchar"
        assert item.source is None

    def test_column_modified_lists_changes(self) -> None:
        """Type, nullability, and default changes are listed on the item."""
        source = _snapshot(_users(_col("age", "bigint", nullable=False, default="0")))
        target = _snapshot(_users(_col("age", "integer", nullable=True)))
        diff = diff_schemas(source, target)

        item = diff.of_kind(DiffKind.COLUMN_MODIFIED)[0]
        assert item.changes == ["data_type", "nullable", "default"]
        assert item.source.data_type == "bigint"
        assert item.target.data_type == "integer"

    def test_type_comparison_is_case_insensitive(self) -> None:
        """Canonical types differing only in case are equal."""
        assert column_changes(_col("a", "TEXT"), _col("a", "text")) == []

    def test_default_whitespace_ignored(self) -> None:
        """Defaults are compared after trimming surrounding whitespace."""
        assert column_changes(_col("a", default=" 0 "), _col("a", default="0")) == []

    def test_item_schema_is_target_schema(self) -> None:
        """Items carry the target schema name."""
        source = _snapshot(_users(_col("email", "text")), schema="app")
        target = _snapshot(_users(), schema="staging")
        diff = diff_schemas(source, target)
        assert diff.items[0].schema_name == "staging"
        assert diff.source_schema == "app"
        assert diff.target_schema == "staging"


# ==================================================================
# Indexes and foreign keys
# ==================================================================


class TestStructuralMatching:
    """Indexes and foreign keys are matched by structure, not by name."""

    def test_renamed_index_not_reported(self) -> None:
        """Same columns and uniqueness under a different name is no difference."""
        source = _snapshot(_users(indexes=[IndexDefinition(name="ix_a", columns=["name"])]))
        target = _snapshot(_users(indexes=[IndexDefinition(name="ix_b", columns=["name"])]))
        assert diff_schemas(source, target).is_empty

    def test_uniqueness_change_is_add_and_remove(self) -> None:
        """Uniqueness is part of the index identity."""
        source = _snapshot(_users(indexes=[IndexDefinition(name="ix", columns=["name"], is_unique=True)]))
        target = _snapshot(_users(indexes=[IndexDefinition(name="ix", columns=["name"])]))
        diff = diff_schemas(source, target)
        assert [i.kind for i in diff.items] == [DiffKind.INDEX_ADDED, DiffKind.INDEX_REMOVED]

    def test_index_method_change_is_modification(self) -> None:
        """A matched index with a different method is modified."""
        source = _snapshot(_users(indexes=[IndexDefinition(name="ix", columns=["name"], method="hash")]))
        target = _snapshot(_users(indexes=[IndexDefinition(name="ix", columns=["name"])]))
        diff = diff_schemas(source, target)
        assert diff.items[0].kind == DiffKind.INDEX_MODIFIED
        assert diff.items[0].changes == ["method"]

    def test_primary_indexes_ignored(self) -> None:
        """Primary-key indexes belong to the table and are not diffed."""
        source = _snapshot(_users(indexes=[IndexDefinition(name="users_pkey", columns=["id"], is_primary=True)]))
        target = _snapshot(_users())
        assert diff_schemas(source, target).is_empty

    def test_index_key_sorts_columns(self) -> None:
        """Column order does not change the index identity."""
        a = IndexDefinition(name="a", columns=["x", "y"])
        b = IndexDefinition(name="b", columns=["y", "x"])
        assert index_key(a) == index_key(b)

    def test_foreign_key_key_ignores_referenced_schema(self) -> None:
        """Foreign keys into differently named schemas still match."""
        a = ForeignKeyDefinition(name="a", columns=["user_id"], referenced_schema="app",
                                 referenced_table="users", referenced_columns=["id"])
        b = ForeignKeyDefinition(name="b", columns=["user_id"], referenced_schema="staging",
                                 referenced_table="users", referenced_columns=["id"])
        assert foreign_key_key(a) == foreign_key_key(b)

    def test_foreign_key_action_change_is_modification(self) -> None:
        """A matched foreign key with a different ON DELETE action is modified."""
        def orders(on_delete: str) -> TableDefinition:
            return TableDefinition(
                name="orders",
                columns=[_col("id"), _col("user_id")],
                foreign_keys=[
                    ForeignKeyDefinition(name="fk_user", columns=["user_id"], referenced_table="users",
                                         referenced_columns=["id"], on_delete=on_delete)
                ],
            )

        diff = diff_schemas(_snapshot(_users(), orders("cascade")), _snapshot(_users(), orders("NO ACTION")))
        item = diff.of_kind(DiffKind.FK_MODIFIED)[0]
        assert item.changes == ["on_delete"]
        assert item.source.on_delete == "CASCADE"

    def test_unknown_fk_action_normalized(self) -> None:
        """Unrecognized referential actions normalize to NO ACTION."""
        fk = ForeignKeyDefinition(name="fk", referenced_table="t", on_delete="whatever", on_update="set_null")
        assert fk.on_delete == "NO ACTION"
        assert fk.on_update == "SET NULL"


# ==================================================================
# Ordering and symmetry
# ==================================================================


class TestOrderingAndSymmetry:
    """Diff ordering and symmetric behavior."""

    def test_creations_before_removals_within_table(self) -> None:
        """Within a table, added columns come before removed columns."""
        source = _snapshot(_users(_col("email", "text")))
        target = TableDefinition(name="users", columns=[_col("id", nullable=False, is_primary_key=True),
                                                        _col("name", "text"), _col("legacy")])
        diff = diff_schemas(source, _snapshot(target))
        assert [i.kind for i in diff.items] == [DiffKind.COLUMN_ADDED, DiffKind.COLUMN_REMOVED]

    def test_tables_in_name_order(self) -> None:
        """Items are grouped by table in name order."""
        source = _snapshot(
            TableDefinition(name="zeta", columns=[_col("id")]),
            TableDefinition(name="alpha", columns=[_col("id")]),
        )
        diff = diff_schemas(source, _snapshot())
        assert [i.table for i in diff.items] == ["alpha", "zeta"]

    def test_diff_is_symmetric(self) -> None:
        """Swapping sides turns additions into removals and vice versa."""
        a = _snapshot(_users(_col("email", "text")), TableDefinition(name="orders", columns=[_col("id")]))
        b = _snapshot(_users())
        forward = diff_schemas(a, b)
        backward = diff_schemas(b, a)

        assert forward.summary.columns_added == backward.summary.columns_removed == 1
        assert forward.summary.tables_added == backward.summary.tables_removed == 1
        assert forward.summary.total == backward.summary.total

    def test_summary_counts_match_items(self) -> None:
        """Summary total equals the number of items."""
        source = _snapshot(_users(_col("email", "text"), indexes=[IndexDefinition(name="ix", columns=["name"])]))
        target = _snapshot(_users(_col("legacy")))
        diff = diff_schemas(source, target)
        assert diff.summary.total == len(diff.items) == 3
