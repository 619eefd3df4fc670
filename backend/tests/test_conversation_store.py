"""Tests for the DuckDB conversation store."""
import pytest

from marketchat.conversations.store import ConversationStore
from marketchat.errors import Forbidden, InvalidMessage, InvalidParticipants, NotFound, NotParticipant
from marketchat.users.schemas import ProfileUpsert
from marketchat.users.service import UserDirectory


@pytest.fixture
def clocked_store():
    """A private store whose clock returns the values pushed onto ``ticks``."""
    ticks = []
    store = ConversationStore(
        db_path=":memory:",
        directory=UserDirectory(":memory:"),
        max_text_length=20,
        clock=lambda: ticks.pop(0) if ticks else 1000.0,
    )
    yield store, ticks
    store.close()


class TestCreateOrGetConversation:
    def test_idempotent_for_unordered_pair(self, store):
        first = store.create_or_get_conversation("alice", "bob")
        second = store.create_or_get_conversation("bob", "alice")
        third = store.create_or_get_conversation("alice", "bob")

        assert first.id == second.id == third.id
        assert first.participantIds == ["alice", "bob"]
        assert len(store.list_conversations("alice")) == 1

    def test_distinct_pairs_get_distinct_conversations(self, store):
        ab = store.create_or_get_conversation("alice", "bob")
        ac = store.create_or_get_conversation("alice", "carol")
        assert ab.id != ac.id

    def test_same_user_rejected(self, store):
        with pytest.raises(InvalidParticipants):
            store.create_or_get_conversation("alice", "alice")

    @pytest.mark.parametrize("a,b", [("", "bob"), ("alice", ""), ("   ", "bob")])
    def test_blank_user_rejected(self, store, a, b):
        with pytest.raises(InvalidParticipants):
            store.create_or_get_conversation(a, b)

    def test_new_conversation_is_empty(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        assert convo.lastMessage is None
        assert convo.lastMessageSeq == 0
        assert convo.updatedAt == convo.createdAt


class TestAppendMessage:
    def test_append_assigns_id_seq_and_timestamp(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        msg = store.append_message(convo.id, "alice", "  Hello  ")

        assert msg.id
        assert msg.text == "Hello"
        assert msg.senderId == "alice"
        assert msg.conversationId == convo.id
        assert msg.seq >= 1
        assert msg.createdAt > 0

    def test_seq_strictly_increases(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        seqs = [store.append_message(convo.id, "alice", f"m{i}").seq for i in range(5)]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == 5

    def test_updates_conversation_summary_fields(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        msg = store.append_message(convo.id, "bob", "Is the sofa still available?")

        updated = store.get_conversation(convo.id)
        assert updated.lastMessage == "Is the sofa still available?"
        assert updated.lastMessageSeq == msg.seq
        assert updated.updatedAt == msg.createdAt

    def test_empty_text_rejected(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        with pytest.raises(InvalidMessage):
            store.append_message(convo.id, "alice", "   \n\t ")
        assert store.list_messages(convo.id, "alice") == []

    def test_too_long_text_rejected(self, clocked_store):
        store, _ = clocked_store
        convo = store.create_or_get_conversation("alice", "bob")
        with pytest.raises(InvalidMessage):
            store.append_message(convo.id, "alice", "x" * 21)
        # Length is measured after trimming
        assert store.append_message(convo.id, "alice", "  " + "x" * 20 + "  ").text == "x" * 20

    def test_unknown_conversation(self, store):
        with pytest.raises(NotFound):
            store.append_message("does-not-exist", "alice", "Hello")

    def test_send_to_recipient_creates_and_appends(self, store):
        msg = store.send_to_recipient("alice", "bob", "Hello")
        again = store.send_to_recipient("bob", "alice", "Hi")
        assert msg.conversationId == again.conversationId
        assert [m.text for m in store.list_messages(msg.conversationId, "bob")] == ["Hello", "Hi"]

    def test_rejected_send_to_recipient_leaves_no_conversation(self, store):
        with pytest.raises(InvalidMessage):
            store.send_to_recipient("alice", "bob", "   ")
        with pytest.raises(InvalidParticipants):
            store.send_to_recipient("alice", "alice", "Hello")
        assert store.list_conversations("alice") == []

    def test_non_participant_rejected(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        with pytest.raises(NotParticipant) as exc_info:
            store.append_message(convo.id, "mallory", "Hello")

        assert exc_info.value.status_code == 403
        assert isinstance(exc_info.value, Forbidden)
        assert store.list_messages(convo.id, "alice") == []


class TestListMessages:
    def test_ordered_by_created_at_then_seq(self, clocked_store):
        store, ticks = clocked_store
        ticks.extend([5.0])
        convo = store.create_or_get_conversation("alice", "bob")
        ticks.extend([30.0, 10.0, 10.0, 20.0])
        late = store.append_message(convo.id, "alice", "late")
        early_a = store.append_message(convo.id, "bob", "early a")
        early_b = store.append_message(convo.id, "alice", "early b")
        middle = store.append_message(convo.id, "bob", "middle")

        ids = [m.id for m in store.list_messages(convo.id, "alice")]
        assert ids == [early_a.id, early_b.id, middle.id, late.id]

    def test_since_cursor(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        msgs = [store.append_message(convo.id, "alice", f"m{i}") for i in range(4)]

        newer = store.list_messages(convo.id, "bob", since_seq=msgs[1].seq)
        assert [m.id for m in newer] == [msgs[2].id, msgs[3].id]

    def test_non_participant_forbidden(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        store.append_message(convo.id, "alice", "private")
        with pytest.raises(Forbidden):
            store.list_messages(convo.id, "mallory")

    def test_unknown_conversation(self, store):
        with pytest.raises(NotFound):
            store.list_messages("nope", "alice")

    def test_get_message(self, store):
        convo = store.create_or_get_conversation("alice", "bob")
        msg = store.append_message(convo.id, "alice", "hi")
        assert store.get_message(msg.id) == msg
        with pytest.raises(NotFound):
            store.get_message("missing")


class TestListConversations:
    def test_includes_other_participant_profile(self, store):
        store.directory.upsert("bob", ProfileUpsert(name="Bob Seller", email="bob@example.com", role="seller"))
        store.create_or_get_conversation("alice", "bob")
        store.create_or_get_conversation("alice", "carol")

        summaries = {s.otherParticipant.id: s for s in store.list_conversations("alice")}
        assert set(summaries) == {"bob", "carol"}
        assert summaries["bob"].otherParticipant.name == "Bob Seller"
        assert summaries["bob"].otherParticipant.role == "seller"
        # Unknown profiles still list with a bare ID
        assert summaries["carol"].otherParticipant.name == ""

    def test_most_recent_first(self, clocked_store):
        store, ticks = clocked_store
        ticks.extend([1.0, 2.0, 3.0])
        with_bob = store.create_or_get_conversation("alice", "bob")
        with_carol = store.create_or_get_conversation("alice", "carol")
        store.append_message(with_bob.id, "bob", "newest")

        assert [c.id for c in store.list_conversations("alice")] == [with_bob.id, with_carol.id]

    def test_only_own_conversations(self, store):
        store.create_or_get_conversation("alice", "bob")
        store.create_or_get_conversation("carol", "dave")
        assert [s.otherParticipant.id for s in store.list_conversations("bob")] == ["alice"]
        assert store.list_conversations("erin") == []


def test_singleton_lifecycle():
    ConversationStore.reset_instance()
    first = ConversationStore.get_instance(":memory:")
    assert ConversationStore.get_instance() is first
    ConversationStore.reset_instance()
    assert ConversationStore.get_instance(":memory:") is not first
