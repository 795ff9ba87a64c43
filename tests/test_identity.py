import json, threading, time

from pfsense_mqtt import identity
from pfsense_mqtt.identity import IdentityRegistry


def test_get_or_create_is_stable(registry):
    first = registry.get_or_create("Block-Guest-WAN")
    second = registry.get_or_create("Block-Guest-WAN")
    assert first == second
    assert len(registry) == 1


def test_reverse_lookup_agrees_with_forward(registry):
    ids = {d: registry.get_or_create(d) for d in ("a", "b", "c")}
    assert len(set(ids.values())) == 3
    for descr, rule_uuid in ids.items():
        assert registry.reverse_lookup(rule_uuid) == descr


def test_reverse_lookup_unknown_returns_none(registry):
    assert registry.reverse_lookup("no-such-id") is None


def test_allocation_is_written_as_pairs(tmp_path):
    path = tmp_path / "uuids.json"
    reg = IdentityRegistry(str(path)).load()
    rule_uuid = reg.get_or_create("Block-Guest-WAN")
    assert json.loads(path.read_text()) == [["Block-Guest-WAN", rule_uuid]]


def test_restart_reuses_persisted_id(tmp_path):
    path = tmp_path / "uuids.json"
    path.write_text(json.dumps([["Block-Guest-WAN", "abc-123"]]))

    reg = IdentityRegistry(str(path)).load()
    assert reg.get_or_create("Block-Guest-WAN") == "abc-123"
    assert reg.reverse_lookup("abc-123") == "Block-Guest-WAN"
    # nothing new was allocated
    assert json.loads(path.read_text()) == [["Block-Guest-WAN", "abc-123"]]


def test_malformed_file_means_empty_registry(tmp_path):
    path = tmp_path / "uuids.json"
    path.write_text("{not json")
    reg = IdentityRegistry(str(path)).load()
    assert len(reg) == 0
    assert reg.get_or_create("x")


def test_missing_file_means_empty_registry(tmp_path):
    reg = IdentityRegistry(str(tmp_path / "missing.json")).load()
    assert len(reg) == 0


def test_failed_save_keeps_id_in_memory(tmp_path):
    reg = IdentityRegistry(str(tmp_path / "no-dir" / "uuids.json")).load()
    rule_uuid = reg.get_or_create("Block-Guest-WAN")
    assert reg.save() is False
    assert reg.get_or_create("Block-Guest-WAN") == rule_uuid
    assert reg.reverse_lookup(rule_uuid) == "Block-Guest-WAN"


def test_pairs_that_are_not_lists_mean_empty_registry(tmp_path):
    path = tmp_path / "uuids.json"
    path.write_text(json.dumps(["ab", "cd"]))
    reg = IdentityRegistry(str(path)).load()
    assert len(reg) == 0
    assert reg.reverse_lookup("b") is None


def test_duplicate_uuid_means_empty_registry(tmp_path):
    path = tmp_path / "uuids.json"
    path.write_text(json.dumps([["Block-Guest-WAN", "abc-123"], ["Allow-LAN", "abc-123"]]))
    reg = IdentityRegistry(str(path)).load()
    assert len(reg) == 0


def test_failed_replace_keeps_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "uuids.json"
    path.write_text(json.dumps([["Block-Guest-WAN", "abc-123"]]))
    reg = IdentityRegistry(str(path)).load()

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(identity.os, "replace", broken_replace)
    reg.get_or_create("Allow-LAN")
    assert json.loads(path.read_text()) == [["Block-Guest-WAN", "abc-123"]]


def test_save_leaves_no_temp_file(tmp_path):
    reg = IdentityRegistry(str(tmp_path / "uuids.json")).load()
    reg.get_or_create("Block-Guest-WAN")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["uuids.json"]


def test_concurrent_allocation_yields_one_id(registry, monkeypatch):
    real_uuid4 = identity.uuid.uuid4

    def slow_uuid4():
        time.sleep(0.05)
        return real_uuid4()

    monkeypatch.setattr(identity.uuid, "uuid4", slow_uuid4)
    results = []
    threads = [threading.Thread(target=lambda: results.append(registry.get_or_create("Block-Guest-WAN")))
               for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 1
    assert len(registry.rule_ids) == 1
