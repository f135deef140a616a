import re

from id_gen import IdGenerator, legacy_id, next_id

FROZEN = 1718000000000


def test_legacy_ids_collide_within_one_millisecond():
    ids = [legacy_id("PRESC", clock=lambda: FROZEN) for _ in range(5)]
    assert ids[0] == f"PRESC-{FROZEN}"
    assert len(set(ids)) == 1


def test_legacy_id_without_prefix_is_bare_millis():
    assert legacy_id(clock=lambda: FROZEN) == str(FROZEN)


def test_hardened_ids_are_unique_under_frozen_clock():
    gen = IdGenerator(clock=lambda: FROZEN)
    ids = [gen.next_id("PAT") for _ in range(500)]
    assert len(set(ids)) == 500
    assert all(re.match(rf"^PAT-{FROZEN}-\d{{6}}-[0-9a-f]{{4}}$", i) for i in ids)


def test_counter_is_strictly_increasing():
    gen = IdGenerator(clock=lambda: FROZEN)
    counters = [int(gen.next_id("APT").split("-")[2]) for _ in range(10)]
    assert counters == sorted(counters)
    assert len(set(counters)) == 10


def test_millis_never_step_backwards():
    ticks = iter([FROZEN, FROZEN - 50, FROZEN + 1])
    gen = IdGenerator(clock=lambda: next(ticks))
    millis = [int(gen.next_id().split("-")[0]) for _ in range(3)]
    assert millis == [FROZEN, FROZEN, FROZEN + 1]


def test_module_default_generator():
    ids = {next_id("VISIT") for _ in range(200)}
    assert len(ids) == 200
    assert all(i.startswith("VISIT-") for i in ids)
