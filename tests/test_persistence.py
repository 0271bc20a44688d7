"""
Tests for batch persistence and the SKIP / OVERRIDE / IGNORE duplicate strategies.
"""
from sqlalchemy import func, select

from feedflow.db.models import market_data, products
from feedflow.domain.imports.mapper import MappedRecord
from feedflow.domain.imports.persistence import BatchPersistenceEngine, DuplicateStrategy
from feedflow.domain.imports.relationships import RelationshipHolder
from feedflow.domain.imports.schema import ENTITY_MARKET_DATA, ENTITY_PRODUCT, MARKET_DATA_SCHEMA, PRODUCT_SCHEMA


def _product(product_id, name, price=None):
    values = {"productId": product_id, "productName": name}
    if price is not None:
        values["productPrice"] = price
    return MappedRecord(ENTITY_PRODUCT, values)


def _market(product_id, region):
    return MappedRecord(ENTITY_MARKET_DATA, {"productId": product_id, "region": region})


def _product_rows(engine):
    with engine.connect() as conn:
        return conn.execute(
            select(products.c.product_id, products.c.product_name, products.c.product_price).order_by(products.c.id)
        ).all()


def _count(engine, table):
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar()


def test_skip_strategy_second_run_skips_everything(engine):
    records = [_product(str(i), f"Item {i}") for i in range(1, 6)]
    persistence = BatchPersistenceEngine(engine, batch_size=2)

    first = persistence.save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.SKIP)
    second = persistence.save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    assert (first.saved, first.skipped) == (5, 0)
    assert second.saved == 0
    assert second.skipped == len(records)
    assert second.total == len(records)
    assert _count(engine, products) == 5


def test_skip_strategy_skips_repeats_within_a_batch(engine):
    records = [_product("A", "first"), _product("A", "second"), _product("B", "other")]

    result = BatchPersistenceEngine(engine).save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    assert (result.saved, result.skipped) == (2, 1)
    assert [row.product_name for row in _product_rows(engine)] == ["first", "other"]


def test_override_last_record_wins_over_existing_row(engine):
    persistence = BatchPersistenceEngine(engine)
    persistence.save_batch([_product("42", "original", 1.0)], PRODUCT_SCHEMA, DuplicateStrategy.IGNORE)

    records = [_product("42", "v1", 2.0), _product("42", "v2", 3.0), _product("42", "v3", 4.0)]
    result = persistence.save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.OVERRIDE)

    assert result.updated == 1
    assert result.saved == 0
    assert result.skipped == 0
    rows = _product_rows(engine)
    assert len(rows) == 1
    assert (rows[0].product_name, rows[0].product_price) == ("v3", 4.0)


def test_override_inserts_new_keys(engine):
    persistence = BatchPersistenceEngine(engine)
    persistence.save_batch([_product("1", "one")], PRODUCT_SCHEMA, DuplicateStrategy.IGNORE)

    result = persistence.save_batch(
        [_product("1", "one updated"), _product("2", "two")], PRODUCT_SCHEMA, DuplicateStrategy.OVERRIDE
    )

    assert (result.saved, result.updated) == (1, 1)
    assert [row.product_name for row in _product_rows(engine)] == ["one updated", "two"]


def test_ignore_strategy_inserts_duplicates(engine):
    persistence = BatchPersistenceEngine(engine)
    records = [_product("7", "a"), _product("7", "b")]

    persistence.save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.IGNORE)
    result = persistence.save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.IGNORE)

    assert result.saved == 2
    assert _count(engine, products) == 4


def test_duplicate_keys_are_scoped_per_client(engine):
    BatchPersistenceEngine(engine, client_id=1).save_batch([_product("9", "a")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    result = BatchPersistenceEngine(engine, client_id=2).save_batch(
        [_product("9", "b")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP
    )

    assert result.saved == 1
    assert _count(engine, products) == 2


def test_keyless_schema_treats_skip_as_ignore(engine):
    persistence = BatchPersistenceEngine(engine)
    records = [_market("1", "Москва"), _market("1", "Москва")]

    persistence.save_batch(records, MARKET_DATA_SCHEMA, DuplicateStrategy.SKIP)
    result = persistence.save_batch(records, MARKET_DATA_SCHEMA, DuplicateStrategy.SKIP)

    assert (result.saved, result.skipped) == (2, 0)
    assert _count(engine, market_data) == 4


def test_failing_batch_is_counted_and_later_batches_still_written(engine):
    records = [_product("1", "ok"), _product("2", "ok"), _product("3", "ok")]
    # A value the database cannot bind fails its whole sub-batch.
    records[0].values["productPrice"] = object()

    result = BatchPersistenceEngine(engine, batch_size=1).save_batch(records, PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    assert result.failed == 1
    assert result.saved == 2
    assert result.error_count == 1
    assert result.errors[0].startswith("Batch save failed")
    assert [row.product_id for row in _product_rows(engine)] == ["2", "3"]


def test_file_operation_and_key_ids_are_recorded(engine):
    persistence = BatchPersistenceEngine(engine, file_operation_id="op-1")

    result = persistence.save_batch([_product("A", "a"), _product("B", "b")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    assert set(result.key_ids) == {"A", "B"}
    with engine.connect() as conn:
        operation_ids = conn.execute(select(products.c.file_operation_id)).scalars().all()
    assert operation_ids == ["op-1", "op-1"]


def test_relationship_holder_links_market_rows_to_products(engine):
    persistence = BatchPersistenceEngine(engine)
    product_result = persistence.save_batch([_product("P1", "Lamp")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP)

    holder = RelationshipHolder()
    holder.hold(_market("P1", "Москва"))
    holder.hold(_market("missing", "Казань"))
    assert len(holder) == 2
    assert len(holder.pending_for("P1")) == 1

    released, excluded = holder.release(product_result.key_ids)
    assert excluded == 0
    persistence.save_batch(released, MARKET_DATA_SCHEMA, DuplicateStrategy.IGNORE)

    assert len(holder) == 0
    with engine.connect() as conn:
        refs = dict(conn.execute(select(market_data.c.region, market_data.c.product_ref)).all())
    assert refs == {"Москва": product_result.key_ids["P1"], "Казань": None}


def test_skip_reports_keys_written_by_other_operations(engine):
    BatchPersistenceEngine(engine, file_operation_id="op-1").save_batch(
        [_product("A", "a")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP
    )

    same_run = BatchPersistenceEngine(engine, file_operation_id="op-1").save_batch(
        [_product("A", "a")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP
    )
    other_run = BatchPersistenceEngine(engine, file_operation_id="op-2").save_batch(
        [_product("A", "a"), _product("B", "b"), _product("B", "b")], PRODUCT_SCHEMA, DuplicateStrategy.SKIP
    )

    assert same_run.skipped == 1
    assert same_run.skipped_keys == set()
    assert (other_run.saved, other_run.skipped) == (1, 2)
    assert other_run.skipped_keys == {"A"}


def test_relationship_holder_excludes_skipped_products():
    holder = RelationshipHolder()
    holder.hold(_market("P1", "Москва"))
    holder.hold(_market("P2", "Казань"))
    holder.hold(_market("P1", "Самара"))

    released, excluded = holder.release({"P1": 1, "P2": 2}, exclude_keys={"P1"})

    assert excluded == 2
    assert [(record.values["region"], record.links["product_ref"]) for record in released] == [("Казань", 2)]
    assert len(holder) == 0


def test_override_replaces_related_rows_of_updated_products(engine):
    first = BatchPersistenceEngine(engine, file_operation_id="op-1")
    product_result = first.save_batch([_product("P1", "Lamp")], PRODUCT_SCHEMA, DuplicateStrategy.IGNORE)
    holder = RelationshipHolder()
    holder.hold(_market("P1", "Москва"))
    holder.hold(_market("P1", "Казань"))
    first.save_batch(holder.release(product_result.key_ids)[0], MARKET_DATA_SCHEMA, DuplicateStrategy.IGNORE)

    second = BatchPersistenceEngine(engine, file_operation_id="op-2")
    result = second.save_batch(
        [_product("P1", "Lamp v2")], PRODUCT_SCHEMA, DuplicateStrategy.OVERRIDE, replace_related=MARKET_DATA_SCHEMA
    )

    assert result.updated == 1
    assert result.replaced_related == 2
    assert _count(engine, market_data) == 0

    # Rows written by the updating operation itself are kept.
    holder.hold(_market("P1", "Самара"))
    second.save_batch(holder.release(result.key_ids)[0], MARKET_DATA_SCHEMA, DuplicateStrategy.IGNORE)
    again = second.save_batch(
        [_product("P1", "Lamp v3")], PRODUCT_SCHEMA, DuplicateStrategy.OVERRIDE, replace_related=MARKET_DATA_SCHEMA
    )
    assert again.replaced_related == 0
    assert _count(engine, market_data) == 1
