import unittest

from chatsync.errors import ValidationError
from chatsync.messages import Message, OutboundDraft, build_outbound


class TestMessage(unittest.TestCase):
    def test_dict_shape(self):
        message = Message(msg_id="m1", sender="bob", recipient="alice", ts_ms=5, payload="ZW52")

        data = message.to_dict()

        self.assertEqual(data, {"msg_id": "m1", "from": "bob", "to": "alice", "ts": 5, "payload": "ZW52"})
        self.assertEqual(Message.from_dict(data), message)

    def test_from_dict_rejects_malformed_records(self):
        base = {"msg_id": "m1", "from": "bob", "to": "alice", "ts": 5, "payload": "x"}
        for key, value in [("msg_id", ""), ("ts", "5"), ("ts", True), ("from", None), ("payload", 3)]:
            with self.subTest(key=key, value=value):
                with self.assertRaises(ValueError):
                    Message.from_dict({**base, key: value})

    def test_sort_key_breaks_ties_by_id(self):
        early = Message(msg_id="b", sender="x", recipient="y", ts_ms=1, payload="")
        late = Message(msg_id="a", sender="x", recipient="y", ts_ms=1, payload="")

        self.assertLess(late.sort_key, early.sort_key)


class TestBuildOutbound(unittest.TestCase):
    def test_bytes_payload_is_base64_encoded(self):
        body = build_outbound(OutboundDraft(recipient=" bob ", payload=b"hi"), 1024)

        self.assertEqual(body, {"to": "bob", "payload": "aGk=", "kind": "text"})

    def test_invalid_drafts_carry_the_draft(self):
        drafts = [
            OutboundDraft(recipient="", payload="x"),
            OutboundDraft(recipient="bob", payload="   "),
            OutboundDraft(recipient="bob", payload="x", kind=""),
            OutboundDraft(recipient="bob", payload="x" * 11),
        ]
        for draft in drafts:
            with self.subTest(draft=draft):
                with self.assertRaises(ValidationError) as ctx:
                    build_outbound(draft, 10)
                self.assertIs(ctx.exception.draft, draft)


if __name__ == "__main__":
    unittest.main()
