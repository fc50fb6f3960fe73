"""Tests for dependency-ordered dump/restore."""

import pytest

from db_sync.backup.dump_restore import build_dump_restore_plan, run_dump_restore
from db_sync.data.scheduler import CancellationToken
from db_sync.errors import InvalidPlan
from db_sync.schema.models import (
    ColumnDefinition,
    Dialect,
    ForeignKeyDefinition,
    MigrationScript,
    SchemaSnapshot,
    TableDefinition,
)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _table(name: str, *references: str, nullable_refs: bool = False) -> TableDefinition:
    columns = [ColumnDefinition(name="id", data_type="integer", nullable=False, is_primary_key=True)]
    columns += [ColumnDefinition(name=f"{ref}_id", data_type="integer", nullable=nullable_refs) for ref in references]
    return TableDefinition(
        name=name,
        columns=columns,
        foreign_keys=[
            ForeignKeyDefinition(name=f"fk_{name}_{ref}", columns=[f"{ref}_id"],
                                 referenced_table=ref, referenced_columns=["id"])
            for ref in references
        ],
    )


def _blog_snapshot() -> SchemaSnapshot:
    return SchemaSnapshot(
        schema="public",
        dialect=Dialect.POSTGRES,
        tables=[_table("comments", "posts"), _table("posts", "authors"), _table("authors")],
    )


def _blog_rows() -> dict[str, list[dict]]:
    return {
        "authors": [{"id": 1}, {"id": 2}],
        "posts": [{"id": 10, "authors_id": 1}, {"id": 11, "authors_id": 2}],
        "comments": [{"id": 100, "posts_id": 10}],
    }


# ==================================================================
# Planning
# ==================================================================


class TestBuildPlan:
    """Plan construction from a snapshot."""

    def test_tables_in_dependency_order(self) -> None:
        """Parents come first and truncation runs children first."""
        plan = build_dump_restore_plan(_blog_snapshot())
        assert plan.tables == ["authors", "posts", "comments"]
        assert plan.reverse_tables() == ["comments", "posts", "authors"]
        assert plan.primary_keys["posts"] == ["id"]
        assert plan.dependencies["comments"] == ["posts"]

    def test_truncate_overrides(self) -> None:
        """Per-table truncate flags override the default."""
        plan = build_dump_restore_plan(_blog_snapshot(), truncate_target=False, truncate_overrides={"posts": True})
        assert plan.truncate == {"authors": False, "posts": True, "comments": False}

    def test_target_schema_defaults_to_source(self) -> None:
        """Without a target schema the source schema name is reused."""
        assert build_dump_restore_plan(_blog_snapshot()).target_schema == "public"
        assert build_dump_restore_plan(_blog_snapshot(), target_schema="stage").target_schema == "stage"

    def test_unknown_tables_rejected(self) -> None:
        """Naming a table the snapshot lacks is an invalid plan."""
        with pytest.raises(InvalidPlan, match="nope"):
            build_dump_restore_plan(_blog_snapshot(), tables=["nope"])

    def test_empty_selection_rejected(self) -> None:
        """An empty table selection is an invalid plan."""
        with pytest.raises(InvalidPlan):
            build_dump_restore_plan(_blog_snapshot(), tables=[])

    def test_bad_batch_size_rejected(self) -> None:
        """Batch size must be positive."""
        with pytest.raises(InvalidPlan):
            build_dump_restore_plan(_blog_snapshot(), batch_size=0)

    def test_cycle_columns_deferred(self) -> None:
        """Nullable columns of a cycle-closing foreign key are deferred."""
        snapshot = SchemaSnapshot(
            schema="public",
            tables=[_table("a", "b", nullable_refs=True), _table("b", "a", nullable_refs=True)],
        )
        plan = build_dump_restore_plan(snapshot)
        assert plan.tables == ["b", "a"]
        assert plan.deferred_columns == {"b": ["a_id"]}
        assert len(plan.deferred_constraints) == 1


# ==================================================================
# Execution
# ==================================================================


class TestRunDumpRestore:
    """Copying rows in dependency order."""

    @pytest.mark.asyncio
    async def test_copies_all_rows(self, make_handle) -> None:
        """Every row lands in the target and existing rows are truncated first."""
        source = make_handle("src", _blog_rows())
        target = make_handle("tgt", {"authors": [{"id": 99}], "posts": [], "comments": []})
        plan = build_dump_restore_plan(_blog_snapshot())
        result = await run_dump_restore(source, target, plan)

        assert result.success
        assert result.status == "success"
        assert result.rows_copied == 5
        assert result.tables_processed == 3
        assert target.client.tables["authors"] == [{"id": 1}, {"id": 2}]
        assert target.client.statements("DELETE") == [
            'DELETE FROM "public"."comments"',
            'DELETE FROM "public"."posts"',
            'DELETE FROM "public"."authors"',
        ]

    @pytest.mark.asyncio
    async def test_parents_inserted_before_children(self, make_handle) -> None:
        """With one worker, inserts follow the dependency order."""
        source = make_handle("src", _blog_rows())
        target = make_handle("tgt", {})
        plan = build_dump_restore_plan(_blog_snapshot(), truncate_target=False)
        await run_dump_restore(source, target, plan, worker_limit=1)

        tables = [sql.split('"')[3] for sql in target.client.statements("INSERT")]
        assert tables == ["authors", "authors", "posts", "posts", "comments"]

    @pytest.mark.asyncio
    async def test_pages_by_primary_key(self, make_handle) -> None:
        """Keyed tables are read in LIMIT/OFFSET pages."""
        source = make_handle("src", {"authors": [{"id": i} for i in range(5)]})
        target = make_handle("tgt", {})
        snapshot = SchemaSnapshot(schema="public", tables=[_table("authors")])
        plan = build_dump_restore_plan(snapshot, batch_size=2, truncate_target=False)
        result = await run_dump_restore(source, target, plan)

        assert result.rows_copied == 5
        assert source.client.fetched == [
            'SELECT * FROM "public"."authors" ORDER BY "id" LIMIT 2 OFFSET 0',
            'SELECT * FROM "public"."authors" ORDER BY "id" LIMIT 2 OFFSET 2',
            'SELECT * FROM "public"."authors" ORDER BY "id" LIMIT 2 OFFSET 4',
        ]

    @pytest.mark.asyncio
    async def test_failed_rows_reported(self, make_handle) -> None:
        """Row failures mark the table failed without stopping other tables."""
        def fail(sql, params):
            if sql.startswith('INSERT INTO "public"."posts"') and params.get("p0") == 11:
                return RuntimeError("fk violation")
            return None

        source = make_handle("src", _blog_rows())
        target = make_handle("tgt", {}, fail=fail)
        plan = build_dump_restore_plan(_blog_snapshot(), truncate_target=False)
        result = await run_dump_restore(source, target, plan)

        posts = next(r for r in result.table_results if r.table == "posts")
        assert posts.status == "failed"
        assert posts.rows_copied == 1
        assert posts.rows_failed == 1
        assert "fk violation" in posts.error
        assert not result.success
        assert result.status == "partial"
        assert any(r.table == "comments" and r.status == "completed" for r in result.table_results)

    @pytest.mark.asyncio
    async def test_schema_failure_skips_everything(self, make_handle) -> None:
        """A failing schema statement aborts before any copy."""
        def fail(sql, params):
            return RuntimeError("syntax error") if sql.startswith("CREATE") else None

        source = make_handle("src", _blog_rows())
        target = make_handle("tgt", {}, fail=fail)
        plan = build_dump_restore_plan(_blog_snapshot(), include_schema=True)
        script = MigrationScript(dialect=Dialect.POSTGRES, statements=['CREATE TABLE "public"."authors" ("id" integer)'])
        result = await run_dump_restore(source, target, plan, schema_script=script)

        assert not result.success
        assert result.errors == ["Schema creation failed: syntax error"]
        assert all(r.status == "skipped" for r in result.table_results)
        assert source.client.fetched == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, make_handle) -> None:
        """A cancelled token skips every table."""
        token = CancellationToken()
        token.cancel()
        source = make_handle("src", _blog_rows())
        target = make_handle("tgt", {})
        plan = build_dump_restore_plan(_blog_snapshot())
        result = await run_dump_restore(source, target, plan, cancel=token)

        assert result.skipped_tables == ["authors", "posts", "comments"]
        assert not result.success
        assert target.client.executed == []

    @pytest.mark.asyncio
    async def test_deferred_columns_patched(self, make_handle) -> None:
        """Cycle columns are inserted NULL and filled by a later UPDATE."""
        snapshot = SchemaSnapshot(
            schema="public",
            tables=[_table("a", "b", nullable_refs=True), _table("b", "a", nullable_refs=True)],
        )
        source = make_handle("src", {"a": [{"id": 1, "b_id": 5}], "b": [{"id": 5, "a_id": 1}]})
        target = make_handle("tgt", {})
        plan = build_dump_restore_plan(snapshot, truncate_target=False)
        result = await run_dump_restore(source, target, plan)

        assert result.success
        assert target.client.tables["b"] == [{"id": 5, "a_id": 1}]
        inserts = target.client.executed
        first_b_insert = next(params for sql, params in inserts if sql.startswith('INSERT INTO "public"."b"'))
        assert first_b_insert == {"p0": 5, "p1": None}
        assert target.client.statements("UPDATE") == ['UPDATE "public"."b" SET "a_id" = :p0 WHERE "id" = :w0']
