from sqlalchemy import MetaData, Table, select

from legacy_bridge.migrator.pipeline.reader import CursorReader


def _queues(engine):
    return Table("Queues", MetaData(), autoload_with=engine)


def test_reader_streams_bounded_batches_in_key_order(source_engine, seed):
    seed(source_engine, "Queues", [{"id": i, "queue": f"Q{i}", "tenantId": 2} for i in range(2500, 0, -1)])
    queues = _queues(source_engine)

    with source_engine.connect() as connection:
        reader = CursorReader(connection, select(queues.c.id).order_by(queues.c.id), batch_size=1000)
        assert reader.count() == 2500
        batches = list(reader.batches())

    assert [len(batch) for batch in batches] == [1000, 1000, 500]
    ids = [row["id"] for batch in batches for row in batch]
    assert ids == list(range(1, 2501))
    assert reader.batches_read == 3
    # The exhausted read that ends iteration counts as a read.
    assert reader.reads == 4


def test_reader_on_empty_source_yields_nothing(source_engine):
    queues = _queues(source_engine)
    with source_engine.connect() as connection:
        reader = CursorReader(connection, select(queues.c.id).order_by(queues.c.id), batch_size=10)
        assert reader.count() == 0
        assert list(reader.batches()) == []
        assert reader.reads == 1
