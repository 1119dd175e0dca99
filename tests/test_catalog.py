"""
Tests for the PostgreSQL partition store with the database layer mocked.
"""

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from partkeeper.config import Settings
from partkeeper.exceptions import BoundaryExists, StorageError
from partkeeper.models.schemas import PartitionBoundary
from partkeeper.services.catalog import PostgresPartitionStore
from partkeeper.services.lifecycle import PartitionLifecycleManager


@pytest.fixture
def pg_store():
    return PostgresPartitionStore("public", "booking_partitioned", "start_date")


def _q1() -> PartitionBoundary:
    return PartitionBoundary(name="2024_Q1", start=date(2024, 1, 1), end=date(2024, 4, 1))


class TestNaming:
    def test_physical_name_is_lower_case(self, pg_store):
        assert pg_store.physical_name("2024_Q1") == "booking_partitioned_2024_q1"

    def test_boundary_name_round_trip(self, pg_store):
        assert pg_store.boundary_name("booking_partitioned_2024_q1") == "2024_Q1"
        assert pg_store.boundary_name("booking_partitioned_default") == "DEFAULT"

    def test_foreign_table_keeps_its_name(self, pg_store):
        assert pg_store.boundary_name("bookings_archive") == "BOOKINGS_ARCHIVE"

    def test_rejects_unsafe_identifiers(self):
        with pytest.raises(ValueError):
            PostgresPartitionStore("public", "booking; DROP TABLE users")
        with pytest.raises(ValueError):
            PostgresPartitionStore("public", "booking").physical_name("2024 Q1")


class TestListPartitions:
    @pytest.mark.asyncio
    async def test_parses_ranges_and_default(self, pg_store):
        rows = [
            {"name": "booking_partitioned_2024_q1", "bound": "FOR VALUES FROM ('2024-01-01') TO ('2024-04-01')"},
            {"name": "booking_partitioned_2023_q4", "bound": "FOR VALUES FROM ('2023-10-01 00:00:00') TO ('2024-01-01 00:00:00')"},
            {"name": "booking_partitioned_default", "bound": "DEFAULT"},
        ]
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.return_value = rows
            snapshot = await pg_store.list_partitions()

        assert [b.name for b in snapshot.boundaries] == ["2023_Q4", "2024_Q1"]
        assert snapshot.boundaries[0].start == date(2023, 10, 1)
        assert snapshot.boundaries[1].table == "booking_partitioned_2024_q1"
        assert snapshot.has_default is True
        assert mock_fetch_all.call_args[0][1] == "public.booking_partitioned"

    @pytest.mark.asyncio
    async def test_skips_unparseable_bounds(self, pg_store):
        rows = [{"name": "booking_partitioned_old", "bound": "FOR VALUES FROM (MINVALUE) TO ('2023-01-01')"}]
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.return_value = rows
            snapshot = await pg_store.list_partitions()

        assert snapshot.boundaries == []
        assert snapshot.has_default is False

    @pytest.mark.asyncio
    async def test_missing_parent_is_storage_error(self, pg_store):
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.side_effect = asyncpg.UndefinedTableError('relation "public.booking_partitioned" does not exist')
            with pytest.raises(StorageError):
                await pg_store.list_partitions()


class TestCreatePartition:
    @pytest.mark.asyncio
    async def test_issues_create_without_if_not_exists(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_execute.return_value = "CREATE TABLE"
            relname = await pg_store.create_partition(_q1())

        assert relname == "booking_partitioned_2024_q1"
        sql = mock_execute.call_args[0][0]
        assert "IF NOT EXISTS" not in sql
        assert "CREATE TABLE public.booking_partitioned_2024_q1 PARTITION OF public.booking_partitioned" in sql
        assert "FOR VALUES FROM ('2024-01-01') TO ('2024-04-01')" in sql

    @pytest.mark.asyncio
    async def test_duplicate_name_raises_boundary_exists(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_execute.side_effect = asyncpg.DuplicateTableError('relation "booking_partitioned_2024_q1" already exists')
            with pytest.raises(BoundaryExists) as exc_info:
                await pg_store.create_partition(_q1())

        assert exc_info.value.name == "2024_Q1"

    @pytest.mark.asyncio
    async def test_other_failures_raise_storage_error(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_execute.side_effect = asyncpg.InsufficientPrivilegeError("permission denied for schema public")
            with pytest.raises(StorageError) as exc_info:
                await pg_store.create_partition(_q1())

        assert not isinstance(exc_info.value, BoundaryExists)
        assert exc_info.value.details["operation"] == "create_partition"

    @pytest.mark.asyncio
    async def test_connection_loss_raises_storage_error(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_execute.side_effect = ConnectionResetError("connection reset by peer")
            with pytest.raises(StorageError):
                await pg_store.create_partition(_q1())

    @pytest.mark.asyncio
    async def test_default_partition(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            await pg_store.create_default_partition()

        sql = mock_execute.call_args[0][0]
        assert sql.endswith("PARTITION OF public.booking_partitioned DEFAULT")
        assert "public.booking_partitioned_default" in sql


class TestRetirement:
    @pytest.mark.asyncio
    async def test_drop_uses_catalog_table_name(self, pg_store):
        boundary = PartitionBoundary(
            name="2023_Q1", start=date(2023, 1, 1), end=date(2023, 4, 1), table="booking_partitioned_2023_q1"
        )
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            await pg_store.drop_partition(boundary)

        mock_execute.assert_called_once_with("DROP TABLE public.booking_partitioned_2023_q1")

    @pytest.mark.asyncio
    async def test_detach_and_archive_in_one_transaction(self, pg_store):
        conn = MagicMock()
        conn.execute = AsyncMock()
        tx = MagicMock()
        tx.__aenter__ = AsyncMock(return_value=conn)
        tx.__aexit__ = AsyncMock(return_value=False)

        with patch("partkeeper.services.catalog.db.Transaction", return_value=tx):
            archived_as = await pg_store.detach_partition(_q1(), "archive")

        statements = [c[0][0] for c in conn.execute.call_args_list]
        assert statements == [
            "ALTER TABLE public.booking_partitioned DETACH PARTITION public.booking_partitioned_2024_q1",
            "ALTER TABLE public.booking_partitioned_2024_q1 SET SCHEMA archive",
        ]
        assert archived_as == "archive.booking_partitioned_2024_q1"

    @pytest.mark.asyncio
    async def test_detach_without_archive_schema(self, pg_store):
        conn = MagicMock()
        conn.execute = AsyncMock()
        tx = MagicMock()
        tx.__aenter__ = AsyncMock(return_value=conn)
        tx.__aexit__ = AsyncMock(return_value=False)

        with patch("partkeeper.services.catalog.db.Transaction", return_value=tx):
            archived_as = await pg_store.detach_partition(_q1())

        assert conn.execute.call_count == 1
        assert archived_as == "public.booking_partitioned_2024_q1"


class TestVerifyParent:
    @pytest.mark.asyncio
    async def test_range_partitioned_on_key(self, pg_store):
        with patch("partkeeper.services.catalog.db.fetch_one", new_callable=AsyncMock) as mock_fetch_one:
            mock_fetch_one.return_value = {"strategy": "r", "key_count": 1, "key_column": "start_date"}
            await pg_store.verify_parent()

    @pytest.mark.asyncio
    async def test_not_partitioned(self, pg_store):
        with patch("partkeeper.services.catalog.db.fetch_one", new_callable=AsyncMock) as mock_fetch_one:
            mock_fetch_one.return_value = None
            with pytest.raises(StorageError):
                await pg_store.verify_parent()

    @pytest.mark.asyncio
    async def test_wrong_key_column(self, pg_store):
        with patch("partkeeper.services.catalog.db.fetch_one", new_callable=AsyncMock) as mock_fetch_one:
            mock_fetch_one.return_value = {"strategy": "r", "key_count": 1, "key_column": "created_at"}
            with pytest.raises(StorageError) as exc_info:
                await pg_store.verify_parent()

        assert "created_at" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_list_partitioned_table_rejected(self, pg_store):
        with patch("partkeeper.services.catalog.db.fetch_one", new_callable=AsyncMock) as mock_fetch_one:
            mock_fetch_one.return_value = {"strategy": "l", "key_count": 1, "key_column": "start_date"}
            with pytest.raises(StorageError):
                await pg_store.verify_parent()


class TestPartitionStats:
    @pytest.mark.asyncio
    async def test_maps_rows(self, pg_store):
        rows = [
            {"name": "booking_partitioned_2024_q1", "total_bytes": 81920, "live_rows": 2500, "seq_scan": 3, "idx_scan": 41},
            {"name": "booking_partitioned_default", "total_bytes": 8192, "live_rows": 0, "seq_scan": 0, "idx_scan": 0},
        ]
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.return_value = rows
            stats = await pg_store.partition_stats()

        assert [s.name for s in stats] == ["2024_Q1", "DEFAULT"]
        assert stats[0].live_rows == 2500
        assert stats[0].idx_scan == 41


class TestDefaultPartitionRows:
    @staticmethod
    def _transaction(conn):
        tx = MagicMock()
        tx.__aenter__ = AsyncMock(return_value=conn)
        tx.__aexit__ = AsyncMock(return_value=False)
        return tx

    @pytest.mark.asyncio
    async def test_listing_records_default_table(self, pg_store):
        rows = [{"name": "booking_partitioned_default", "bound": "DEFAULT"}]
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.return_value = rows
            snapshot = await pg_store.list_partitions()

        assert snapshot.default_table == "booking_partitioned_default"

    @pytest.mark.asyncio
    async def test_rows_move_out_of_default_in_one_transaction(self, pg_store):
        conn = MagicMock()
        conn.execute = AsyncMock(side_effect=["ALTER TABLE", "CREATE TABLE", "INSERT 0 3", "ALTER TABLE"])

        with patch("partkeeper.services.catalog.db.Transaction", return_value=self._transaction(conn)), \
             patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            relname = await pg_store.create_partition(_q1(), "booking_partitioned_default")

        assert relname == "booking_partitioned_2024_q1"
        mock_execute.assert_not_called()
        calls = conn.execute.call_args_list
        assert calls[0][0][0] == (
            "ALTER TABLE public.booking_partitioned DETACH PARTITION public.booking_partitioned_default"
        )
        assert calls[1][0][0].startswith("CREATE TABLE public.booking_partitioned_2024_q1 PARTITION OF")
        move_sql, start, end = calls[2][0]
        assert "DELETE FROM public.booking_partitioned_default WHERE start_date >= $1 AND start_date < $2" in move_sql
        assert "INSERT INTO public.booking_partitioned SELECT * FROM moved" in move_sql
        assert (start, end) == (date(2024, 1, 1), date(2024, 4, 1))
        assert calls[3][0][0] == (
            "ALTER TABLE public.booking_partitioned ATTACH PARTITION public.booking_partitioned_default DEFAULT"
        )

    @pytest.mark.asyncio
    async def test_default_constraint_violation_is_storage_error(self, pg_store):
        with patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_execute.side_effect = asyncpg.CheckViolationError(
                'updated partition constraint for default partition "booking_partitioned_default" would be violated'
            )
            with pytest.raises(StorageError):
                await pg_store.create_partition(_q1())


class TestPartitionPrefix:
    ORIGINAL_ROWS = [
        {"name": f"booking_{year}_q{q}", "bound": f"FOR VALUES FROM ('{year}-{3 * q - 2:02d}-01') TO ('{nxt}')"}
        for year in (2023, 2024, 2025)
        for q, nxt in [
            (1, f"{year}-04-01"),
            (2, f"{year}-07-01"),
            (3, f"{year}-10-01"),
            (4, f"{year + 1}-01-01"),
        ]
    ] + [{"name": "booking_default", "bound": "DEFAULT"}]

    @pytest.fixture
    def booking_store(self):
        return PostgresPartitionStore("public", "booking_partitioned", "start_date", prefix="booking")

    @pytest.mark.asyncio
    async def test_lists_prefixed_children(self, booking_store):
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all:
            mock_fetch_all.return_value = self.ORIGINAL_ROWS
            snapshot = await booking_store.list_partitions()

        assert len(snapshot.boundaries) == 12
        assert snapshot.boundaries[0].name == "2023_Q1"
        assert snapshot.boundaries[-1].name == "2025_Q4"
        assert snapshot.default_table == "booking_default"

    def test_new_children_follow_prefix(self, booking_store):
        assert booking_store.physical_name("2026_Q1") == "booking_2026_q1"
        assert booking_store.physical_name("DEFAULT") == "booking_default"

    @pytest.mark.asyncio
    async def test_retire_by_boundary_name(self, booking_store):
        manager = PartitionLifecycleManager(booking_store)
        with patch("partkeeper.services.catalog.db.fetch_all", new_callable=AsyncMock) as mock_fetch_all, \
             patch("partkeeper.services.catalog.db.execute", new_callable=AsyncMock) as mock_execute:
            mock_fetch_all.return_value = self.ORIGINAL_ROWS
            result = await manager.retire("2023_Q1", "drop", as_of=date(2025, 1, 1))

        assert result.boundary.table == "booking_2023_q1"
        mock_execute.assert_called_once_with("DROP TABLE public.booking_2023_q1")

    def test_from_settings_uses_prefix(self):
        settings = Settings(_env_file=None, PARTITION_PREFIX="booking")
        assert PostgresPartitionStore.from_settings(settings).prefix == "booking"
        assert PostgresPartitionStore.from_settings(Settings(_env_file=None)).prefix == "booking_partitioned"
