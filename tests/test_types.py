"""Tests for Peik shared types."""

from peik.types import (
    DEFAULT_CHAT_TITLE,
    Chat,
    ImageData,
    Message,
    Role,
)


class TestMessage:
    def test_placeholder(self):
        assert Message(role=Role.MODEL).is_placeholder
        assert not Message(role=Role.MODEL, content="x").is_placeholder
        assert not Message(role=Role.USER).is_placeholder

    def test_ids_are_unique(self):
        assert Message(role=Role.USER).id != Message(role=Role.USER).id

    def test_dict_keys(self):
        msg = Message(role=Role.USER, content="Hi",
                      image=ImageData(data="abc", mime_type="image/jpeg"))
        raw = msg.to_dict()

        assert raw["role"] == "user"
        assert raw["image"] == {"data": "abc", "mimeType": "image/jpeg"}
        assert Message.from_dict(raw) == msg

    def test_no_image_key_when_absent(self):
        assert "image" not in Message(role=Role.MODEL, content="x").to_dict()


class TestImageData:
    def test_well_formed(self):
        assert ImageData(data="abc", mime_type="image/png").is_well_formed()
        assert not ImageData(data="", mime_type="image/png").is_well_formed()
        assert not ImageData(data="abc", mime_type="").is_well_formed()


class TestChat:
    def test_defaults(self):
        chat = Chat()
        assert chat.title == DEFAULT_CHAT_TITLE
        assert chat.messages == []
        assert chat.is_loaded
        assert chat.id.startswith("chat_")

    def test_updated_at_clamped_to_created_at(self):
        chat = Chat(created_at=5000, updated_at=10)
        assert chat.updated_at == 5000

    def test_touch_strictly_increases(self):
        chat = Chat(created_at=1, updated_at=10**15)
        before = chat.updated_at
        chat.touch()
        chat.touch()
        assert chat.updated_at == before + 2

    def test_user_message_count(self):
        chat = Chat(messages=[
            Message(role=Role.USER, content="a"),
            Message(role=Role.MODEL, content="b"),
            Message(role=Role.USER, content="c"),
        ])
        assert chat.user_message_count == 2
        assert Chat(messages=None).user_message_count == 0

    def test_summary_drops_messages(self):
        chat = Chat(title="T", provider="openai", model="gpt-4o",
                    messages=[Message(role=Role.USER, content="a")])
        summary = chat.summary()

        assert summary.messages is None
        assert not summary.is_loaded
        assert (summary.id, summary.title, summary.updated_at) == (
            chat.id, chat.title, chat.updated_at)
        assert chat.messages

    def test_dict_keys(self):
        chat = Chat(title="T", created_at=1, updated_at=2,
                    provider="gemini", model="gemini-pro")
        raw = chat.to_dict()

        assert set(raw) == {"id", "title", "createdAt", "updatedAt",
                            "provider", "modelName", "messages"}
        assert "messages" not in chat.summary().to_dict()
        assert Chat.from_dict(raw) == chat

    def test_copy_is_deep(self):
        chat = Chat(messages=[Message(role=Role.USER, content="a")])
        clone = chat.copy()
        clone.messages[0].content = "changed"
        assert chat.messages[0].content == "a"
