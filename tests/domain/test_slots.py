from voice_session.domain.slots import SlotMap


class TestSlotMap:
    def test_insert(self):
        slots = SlotMap()
        slots.insert("a")
        assert len(slots) == 1
        assert slots.values() == ["a"]

    def test_remove(self):
        slots = SlotMap()
        key = slots.insert("a")
        assert slots.remove(key) == "a"
        assert len(slots) == 0
        assert slots.remove(key) is None

    def test_stale_key_after_reuse(self):
        slots = SlotMap()
        old = slots.insert("a")
        slots.remove(old)
        new = slots.insert("b")
        assert new.index == old.index
        assert slots.remove(old) is None
        assert slots.values() == ["b"]
        assert slots.remove(new) == "b"

    def test_drain_sweeps_in_index_order(self):
        slots = SlotMap()
        keys = [slots.insert(v) for v in ("a", "b", "c")]
        slots.remove(keys[1])
        assert slots.drain() == ["a", "c"]
        assert len(slots) == 0
        assert all(slots.remove(key) is None for key in keys)

    def test_drained_keys_stay_stale(self):
        slots = SlotMap()
        key = slots.insert("a")
        slots.drain()
        slots.insert("b")
        assert slots.remove(key) is None
        assert len(slots) == 1
