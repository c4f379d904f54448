from __future__ import annotations

import pytest

from chat_client.errors import ConversationNotFound, InvalidUpdate, MessageNotFound
from chat_client.models import Conversation, Message, Reminder, derive_title


def test_create_and_get(store):
    conv = store.create(title="Hello")
    assert store.get(conv.id) is conv
    assert conv.id in store
    assert len(store) == 1
    assert conv.title == "Hello"


def test_get_unknown_raises(store):
    with pytest.raises(ConversationNotFound):
        store.get("nope")


def test_apply_update_with_patch_and_callable(store):
    conv = store.create()
    store.apply_update(conv.id, {"title": "First"})
    updated = store.apply_update(conv.id, lambda c: {"title": c.title + "!"})
    assert updated.title == "First!"
    assert store.get(conv.id).title == "First!"


def test_snapshots_are_not_mutated(store):
    conv = store.create(messages=[Message.user("hi")])
    before = store.get(conv.id)
    store.apply_update(conv.id, lambda c: {"messages": c.messages + (Message.user("again"),)})
    assert len(before.messages) == 1
    assert len(store.get(conv.id).messages) == 2


def test_unknown_field_rejected(store):
    conv = store.create()
    with pytest.raises(InvalidUpdate):
        store.apply_update(conv.id, {"colour": "red"})
    with pytest.raises(InvalidUpdate):
        store.apply_update(conv.id, {"id": "other"})


def test_failed_update_leaves_state_untouched(store):
    conv = store.create(messages=[Message.placeholder()])
    with pytest.raises(InvalidUpdate):
        store.apply_update(conv.id, lambda c: {"messages": c.messages + (Message.placeholder(),)})
    assert store.get(conv.id) is conv


def test_duplicate_message_ids_rejected(store):
    msg = Message.user("x")
    conv = store.create(messages=[msg])
    with pytest.raises(InvalidUpdate):
        store.apply_update(conv.id, {"messages": [msg, msg]})


def test_finished_message_cannot_stream_again(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    store.update_message(conv.id, placeholder.id, {"is_streaming": False})
    with pytest.raises(InvalidUpdate):
        store.update_message(conv.id, placeholder.id, {"is_streaming": True})


def test_update_message(store, streaming_conversation):
    conv, placeholder = streaming_conversation
    updated = store.update_message(
        conv.id, placeholder.id, lambda m: {"visible_text": m.visible_text + "abc"}
    )
    assert updated.find(placeholder.id).visible_text == "abc"
    with pytest.raises(MessageNotFound):
        store.update_message(conv.id, "missing", {"visible_text": "x"})


def test_pin_unknown_message_rejected(store):
    conv = store.create(messages=[Message.user("hi")])
    with pytest.raises(InvalidUpdate):
        store.apply_update(conv.id, {"pinned_message_id": "nope"})
    pinned = store.apply_update(conv.id, {"pinned_message_id": conv.messages[0].id})
    assert pinned.pinned_message_id == conv.messages[0].id


def test_truncation_clears_pin_and_reminders(store):
    u1, u2 = Message.user("one"), Message.user("two")
    conv = store.create(messages=[u1, u2])
    store.apply_update(
        conv.id,
        {
            "pinned_message_id": u2.id,
            "reminders": {u1.id: Reminder(1.0, "a"), u2.id: Reminder(2.0, "b")},
        },
    )
    truncated = store.apply_update(conv.id, lambda c: {"messages": c.messages[:1]})
    assert truncated.pinned_message_id is None
    assert set(truncated.reminders) == {u1.id}


def test_put_rejects_existing_id(store):
    conv = store.create()
    with pytest.raises(InvalidUpdate):
        store.put(Conversation(id=conv.id))


def test_subscribers_see_updates_in_order(store):
    conv = store.create()
    seen = []
    unsubscribe = store.subscribe(lambda c: seen.append(c.title))
    for title in ("a", "b", "c"):
        store.apply_update(conv.id, {"title": title})
    unsubscribe()
    store.apply_update(conv.id, {"title": "d"})
    assert seen == ["a", "b", "c"]


def test_failing_listener_does_not_block_others(store):
    conv = store.create()
    seen = []

    def boom(_):
        raise RuntimeError("listener bug")

    store.subscribe(boom)
    store.subscribe(lambda c: seen.append(c.title))
    store.apply_update(conv.id, {"title": "ok"})
    assert seen == ["ok"]


def test_delete(store):
    conv = store.create()
    assert store.delete(conv.id) is True
    assert store.delete(conv.id) is False
    assert conv.id not in store


def test_conversation_dict_layout(store):
    msg = Message.user("hi")
    conv = store.create(title="T", messages=[msg])
    conv = store.apply_update(conv.id, {"pinned_message_id": msg.id})
    d = conv.to_dict()
    assert d["messages"][0]["visible_text"] == "hi"
    assert d["pinned_message_id"] == msg.id
    assert Conversation.from_dict(d) == conv


def test_message_role_validated():
    with pytest.raises(ValueError):
        Message(id="m1", role="system")


@pytest.mark.parametrize(
    "text,title",
    [
        ("Short question", "Short question"),
        ("x" * 30, "x" * 30),
        ("y" * 31, "y" * 27 + "..."),
        ("   ", "New Chat"),
    ],
)
def test_derive_title(text, title):
    assert derive_title(text) == title
