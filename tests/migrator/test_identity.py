from datetime import datetime, timezone

import pytest
from sqlalchemy import MetaData, Table, insert

from legacy_bridge.migrator.errors import SyntheticKeyExhausted
from legacy_bridge.migrator.pipeline.identity import (
    IdentityResolver,
    OldToNewMap,
    SyntheticKeyAllocator,
    generate_check_digit_key,
    is_valid_check_digit_key,
)
from legacy_bridge.migrator.pipeline.transform import TargetPayload
from legacy_bridge.migrator.steps.messages import MessagesStep


def test_generated_keys_are_valid_and_deterministic():
    first = generate_check_digit_key("3", 0)
    assert is_valid_check_digit_key(first)
    assert generate_check_digit_key("3", 0) == first
    assert generate_check_digit_key("3", 1) != first
    assert generate_check_digit_key("4", 0) != first


def test_check_digit_validation():
    assert is_valid_check_digit_key("11.222.333/0001-81")
    assert not is_valid_check_digit_key("11222333000182")
    assert not is_valid_check_digit_key("11111111111111")
    assert not is_valid_check_digit_key("123")
    assert not is_valid_check_digit_key(None)


def test_allocator_keeps_preferred_key_for_its_owner_and_skips_taken_ones():
    allocator = SyntheticKeyAllocator(generate_check_digit_key, max_attempts=5, validator=is_valid_check_digit_key)
    allocator.seed([("11222333000181", 2)])

    assert allocator.allocate("2", "11222333000181") == "11222333000181"
    assert allocator.allocate("3", "11222333000181") == generate_check_digit_key("3", 0)
    assert allocator.allocate("4", "not-a-key") == generate_check_digit_key("4", 0)


def test_allocator_gives_up_after_attempt_cap():
    allocator = SyntheticKeyAllocator(lambda old_id, seed, values: "always-the-same", max_attempts=3)
    allocator.seed([("always-the-same", "99")])
    with pytest.raises(SyntheticKeyExhausted) as excinfo:
        allocator.allocate("7")
    assert excinfo.value.attempts == 3


def test_old_to_new_map_first_writer_wins():
    mapping = OldToNewMap()
    assert mapping.add("a", 1)
    assert not mapping.add("a", 2)
    assert mapping.get("a") == 1
    assert "a" in mapping
    assert len(mapping) == 1


def _message(old_id, message_id, body, minute):
    return TargetPayload(
        old_id=old_id,
        values={
            "ticket_id": 100,
            "message_id": message_id,
            "body": body,
            "from_me": False,
            "created_at": datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc),
        },
    )


def test_resolver_demotes_repeated_natural_keys_to_fallback(destination_engine):
    messages = Table("messages", MetaData(), autoload_with=destination_engine)
    with destination_engine.connect() as connection:
        resolver = IdentityResolver(connection, messages, MessagesStep.mapping)
        resolution = resolver.resolve(
            [
                _message("m1", "A", "hi", 0),
                _message("m2", "A", "again", 1),
                _message("m3", None, None, 2),
            ]
        )

    assert resolution.demoted == 1
    assert [payload.old_id for payload in resolution.candidates] == ["m1", "m2", "m3"]
    assert resolution.candidates[1].values["message_id"] is None
    assert resolution.existing == []


def test_resolver_finds_existing_rows_by_natural_and_fallback_keys(destination_engine):
    messages = Table("messages", MetaData(), autoload_with=destination_engine)
    with destination_engine.begin() as connection:
        connection.execute(
            insert(messages),
            [
                {
                    "id": 1,
                    "ticket_id": 100,
                    "message_id": "A",
                    "body": "hi",
                    "from_me": False,
                    "created_at": datetime(2024, 1, 1, 12, 0),
                },
                {
                    "id": 2,
                    "ticket_id": 100,
                    "message_id": None,
                    "body": None,
                    "from_me": False,
                    "created_at": datetime(2024, 1, 1, 12, 2),
                },
            ],
        )

    with destination_engine.connect() as connection:
        resolver = IdentityResolver(connection, messages, MessagesStep.mapping)
        resolution = resolver.resolve([_message("m1", "A", "hi", 0), _message("m3", None, None, 2)])

    assert sorted((payload.old_id, new_id) for payload, new_id in resolution.existing) == [("m1", 1), ("m3", 2)]
    assert resolution.candidates == []
    assert resolver.claimed_ids == {1, 2}
