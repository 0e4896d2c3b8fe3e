from voice_session.domain.turns import ConversationRole, TurnAccumulator


class TestTurnAccumulator:
    def test_input_fragments_join_into_user_entry(self):
        acc = TurnAccumulator()
        acc.append_input("Hel")
        acc.append_input("lo")
        entries = acc.complete_turn()
        assert len(entries) == 1
        assert entries[0].role == ConversationRole.USER
        assert entries[0].text == "Hello"

    def test_empty_turn_yields_nothing(self):
        acc = TurnAccumulator()
        assert acc.complete_turn() == []

    def test_whitespace_only_turn_yields_nothing(self):
        acc = TurnAccumulator()
        acc.append_input("  ")
        acc.append_output("\n")
        assert acc.complete_turn() == []

    def test_user_entry_precedes_model_entry(self):
        acc = TurnAccumulator()
        acc.append_output("Hi ")
        acc.append_input("Hey")
        acc.append_output("there")
        entries = acc.complete_turn()
        assert [e.role for e in entries] == [ConversationRole.USER, ConversationRole.MODEL]
        assert entries[1].text == "Hi there"

    def test_text_is_trimmed(self):
        acc = TurnAccumulator()
        acc.append_output("  answer  ")
        assert acc.complete_turn()[0].text == "answer"

    def test_buffers_clear_after_turn(self):
        acc = TurnAccumulator()
        acc.append_input("first")
        acc.complete_turn()
        acc.append_input("second")
        entries = acc.complete_turn()
        assert entries[0].text == "second"
        assert acc.pending_input == ""

    def test_entry_ids_are_unique(self):
        acc = TurnAccumulator()
        ids = set()
        for i in range(5):
            acc.append_input(f"q{i}")
            acc.append_output(f"a{i}")
            ids.update(e.id for e in acc.complete_turn())
        assert len(ids) == 10

    def test_clear_discards_pending(self):
        acc = TurnAccumulator()
        acc.append_input("partial")
        acc.clear()
        assert acc.complete_turn() == []

    def test_entry_to_dict(self):
        acc = TurnAccumulator()
        acc.append_output("ok")
        entry = acc.complete_turn()[0]
        assert entry.to_dict() == {"id": entry.id, "role": "model", "text": "ok"}
