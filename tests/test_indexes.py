"""Tests for the per-partition index catalog and provisioner."""
import pytest

from change_history.config import Settings
from change_history.errors import ConfigurationError, ObjectExistsError
from change_history.indexes import (
    GENERIC_INDEX_COLUMNS,
    IndexKind,
    IndexProvisioner,
    IndexSpec,
    build_index_catalog,
)
from change_history.partitions import PartitionLifecycleManager
from change_history.storage.memory import InMemoryHistoryStore


class TestCatalog:

    def test_default_catalog(self):
        catalog = build_index_catalog()
        suffixes = [spec.suffix for spec in catalog]

        assert suffixes[0] == "event_id_key"
        assert catalog[0].unique is True
        for column in GENERIC_INDEX_COLUMNS:
            assert f"{column}_idx" in suffixes
        assert "statement_date_idx" in suffixes
        assert not [spec for spec in catalog if spec.kind is IndexKind.ROW_KEY]

    def test_only_event_id_is_unique(self):
        assert [spec.target for spec in build_index_catalog() if spec.unique] == ["event_id"]

    def test_statement_date_uses_configured_time_zone(self):
        catalog = build_index_catalog(timezone_name="Europe/Berlin")
        date_spec = next(spec for spec in catalog if spec.kind is IndexKind.STATEMENT_DATE)
        assert date_spec.target == "Europe/Berlin"

    def test_hot_row_keys_get_expression_indexes(self):
        catalog = build_index_catalog(["customer_id", "Order-Id"])
        row_specs = [spec for spec in catalog if spec.kind is IndexKind.ROW_KEY]

        assert [(s.suffix, s.target) for s in row_specs] == [
            ("row_customer_id_idx", "customer_id"),
            ("row_order_id_idx", "Order-Id"),
        ]

    @pytest.mark.parametrize("keys", [["--"], ["order_id", "ORDER_ID"]])
    def test_unusable_hot_keys_rejected(self, keys):
        with pytest.raises(ConfigurationError):
            build_index_catalog(keys)

    def test_index_name_is_truncated_to_identifier_limit(self, router):
        spec = IndexSpec("row_" + "k" * 80 + "_idx", IndexKind.ROW_KEY, "k" * 80)
        name = spec.index_name(router.partition_for(2025, 3))

        assert len(name) == 63
        assert name.startswith("logged_actions_202503_row_")

    def test_truncated_names_sharing_a_prefix_stay_distinct(self, router):
        partition = router.partition_for(2025, 3)
        keys = ["customer_reference_" + "x" * 40 + suffix for suffix in ("_a", "_b")]
        specs = [spec for spec in build_index_catalog(keys) if spec.kind is IndexKind.ROW_KEY]

        names = [spec.index_name(partition) for spec in specs]

        assert names[0] != names[1]
        assert all(len(name) <= 63 for name in names)

    def test_short_index_name_is_unchanged(self, router):
        spec = IndexSpec("actor_idx", IndexKind.COLUMN, "actor")
        assert spec.index_name(router.partition_for(2025, 3)) == "logged_actions_202503_actor_idx"


class TestProvisioner:
    """provision_indexes() is create-if-absent across all partitions."""

    def test_creates_catalog_on_every_partition(self, provisioned_store):
        catalog = build_index_catalog(["customer_id"])

        created = IndexProvisioner(provisioned_store, catalog).provision_indexes()

        assert created == 12 * len(catalog)
        for partition in provisioned_store.list_partitions():
            assert provisioned_store.index_names(partition) == {
                spec.index_name(partition) for spec in catalog
            }

    def test_second_run_creates_nothing(self, provisioned_store):
        provisioner = IndexProvisioner(provisioned_store)

        provisioner.provision_indexes()

        assert provisioner.provision_indexes() == 0

    def test_new_partitions_picked_up(self, provisioned_store, router):
        provisioner = IndexProvisioner(provisioned_store)
        provisioner.provision_indexes()

        PartitionLifecycleManager(provisioned_store, router).ensure_partitions(2026)

        assert provisioner.provision_indexes() == 12 * len(provisioner.catalog)

    def test_no_partitions_no_indexes(self, store):
        assert IndexProvisioner(store).provision_indexes() == 0

    def test_concurrent_creation_counts_as_existing(self, router):

        class RacingStore(InMemoryHistoryStore):
            def index_exists(self, partition, spec):
                return False

        racing = RacingStore()
        PartitionLifecycleManager(racing, router).ensure_partitions(2025)
        provisioner = IndexProvisioner(racing)
        provisioner.provision_indexes()

        assert provisioner.provision_indexes() == 0

    def test_from_settings_uses_hot_keys(self, store):
        settings = Settings(hot_row_keys=["customer_id"], partition_timezone="UTC")

        provisioner = IndexProvisioner.from_settings(store, settings)

        assert "row_customer_id_idx" in [spec.suffix for spec in provisioner.catalog]

    def test_store_rejects_duplicate_index(self, provisioned_store, router):
        partition = router.partition_for(2025, 1)
        spec = build_index_catalog()[0]
        provisioned_store.create_index(partition, spec)

        with pytest.raises(ObjectExistsError):
            provisioned_store.create_index(partition, spec)
