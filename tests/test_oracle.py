import unittest
from unittest import mock

import httpx

from actorgraph.errors import OracleParseError, OracleUnavailable
from actorgraph.oracle import ActorType, ExtractionOracle
from actorgraph.oracle.extractor import MAX_PROMPT_CHARS, build_prompt
from actorgraph.oracle.llm import ChatMessage, OllamaChatClient, build_backends
from actorgraph.oracle.parse import first_json_object, parse_extraction
from actorgraph.oracle.types import clamp_confidence, norm_relation_type


GOOD_ANSWER = """Sure, here is the extraction:
```json
{
  "entities": [
    {"name": "Jan van der Berg", "type": "Person", "role": "Developer", "team": "Backend team", "confidence": 0.95},
    {"name": "Matcher API", "type": "system", "confidence": 0.9}
  ],
  "relationships": [
    {"source": "Jan van der Berg", "target": "Matcher API", "type": "Works On", "context": "standup"}
  ]
}
```
Let me know if you need more."""


class FakeBackend:
    def __init__(self, name, answer=None, exc=None):
        self.name = name
        self.answer = answer
        self.exc = exc
        self.calls = 0

    def chat(self, messages):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        return self.answer


class TestParse(unittest.TestCase):
    def test_parses_fenced_json_with_prose(self):
        ext = parse_extraction(GOOD_ANSWER)
        self.assertEqual(ext.source, "llm")
        self.assertEqual([e.name for e in ext.entities], ["Jan van der Berg", "Matcher API"])
        self.assertEqual(ext.entities[0].type, ActorType.PERSON)
        self.assertEqual(ext.entities[0].team, "Backend team")
        self.assertEqual(ext.relationships[0].type, "works_on")
        # Missing relationship confidence falls back to the default.
        self.assertAlmostEqual(ext.relationships[0].confidence, 0.7)

    def test_first_object_in_plain_prose(self):
        obj = first_json_object('noise {not json} then {"entities": [], "relationships": []} trailing')
        self.assertEqual(obj, {"entities": [], "relationships": []})

    def test_garbage_raises_parse_error(self):
        for text in ["", "no json here", "[1, 2, 3]", "{broken"]:
            with self.assertRaises(OracleParseError):
                parse_extraction(text)

    def test_non_list_entities_rejected(self):
        with self.assertRaises(OracleParseError):
            parse_extraction('{"entities": "Jan", "relationships": []}')

    def test_null_lists_are_empty(self):
        ext = parse_extraction('{"entities": null, "relationships": null}')
        self.assertTrue(ext.is_empty())

    def test_malformed_items_are_skipped(self):
        ext = parse_extraction(
            '{"entities": [{"name": ""}, "Jan", {"name": "Clara", "type": "spaceship", "confidence": 7}],'
            ' "relationships": [{"source": "Clara"}, {"source": "Clara", "target": "Jan", "type": ""}]}'
        )
        self.assertEqual(len(ext.entities), 1)
        self.assertEqual(ext.entities[0].type, ActorType.UNKNOWN)
        self.assertEqual(ext.entities[0].confidence, 1.0)
        self.assertEqual(len(ext.relationships), 1)
        self.assertEqual(ext.relationships[0].type, "related_to")


class TestTypes(unittest.TestCase):
    def test_type_mapping_is_total(self):
        self.assertEqual(ActorType.from_label("Company"), ActorType.ORGANIZATION)
        self.assertEqual(ActorType.from_label(" TEAM "), ActorType.TEAM)
        self.assertEqual(ActorType.from_label("spaceship"), ActorType.UNKNOWN)
        self.assertEqual(ActorType.from_label(None), ActorType.UNKNOWN)
        self.assertEqual(ActorType.from_label(42), ActorType.UNKNOWN)

    def test_clamp_confidence(self):
        self.assertEqual(clamp_confidence(1.7, 0.5), 1.0)
        self.assertEqual(clamp_confidence(-2, 0.5), 0.0)
        self.assertEqual(clamp_confidence("abc", 0.5), 0.5)
        self.assertEqual(clamp_confidence(float("nan"), 0.5), 0.5)
        self.assertEqual(clamp_confidence("0.25", 0.5), 0.25)

    def test_norm_relation_type(self):
        self.assertEqual(norm_relation_type("Works With"), "works_with")
        self.assertEqual(norm_relation_type("reports-to"), "reports_to")
        self.assertEqual(norm_relation_type("  "), "related_to")
        self.assertEqual(norm_relation_type(None), "related_to")


class TestOracle(unittest.TestCase):
    def test_backends_tried_in_order_until_usable(self):
        down = FakeBackend("down", exc=OracleUnavailable("connection refused"))
        garbage = FakeBackend("garbage", answer="I cannot help with that.")
        empty = FakeBackend("empty", answer='{"entities": [], "relationships": []}')
        good = FakeBackend("good", answer=GOOD_ANSWER)
        never = FakeBackend("never", answer=GOOD_ANSWER)

        ext = ExtractionOracle([down, garbage, empty, good, never]).extract("# Standup\nJan van der Berg works on the Matcher API.")

        self.assertEqual(ext.backend, "good")
        self.assertEqual(ext.source, "llm")
        self.assertEqual(never.calls, 0)
        self.assertEqual([s.title for s in ext.sections], ["Standup"])

    def test_falls_back_to_patterns_and_never_raises(self):
        crashing = FakeBackend("crash", exc=KeyError("boom"))
        ext = ExtractionOracle([crashing]).extract("Jan works with the Backend team on the Matcher API.")
        self.assertEqual(ext.source, "pattern")
        self.assertIsNone(ext.backend)
        self.assertTrue(ext.entities)
        for e in ext.entities:
            self.assertLessEqual(e.confidence, 0.7)
        for r in ext.relationships:
            self.assertLessEqual(r.confidence, 0.7)

    def test_no_backends_uses_patterns(self):
        ext = ExtractionOracle().extract("Clara reports to Pieter de Vries.")
        self.assertEqual(ext.source, "pattern")
        self.assertIn("reports_to", {r.type for r in ext.relationships})

    def test_empty_text(self):
        backend = FakeBackend("good", answer=GOOD_ANSWER)
        ext = ExtractionOracle([backend]).extract("   ")
        self.assertTrue(ext.is_empty())
        self.assertEqual(backend.calls, 0)

    def test_skip_llm(self):
        backend = FakeBackend("good", answer=GOOD_ANSWER)
        ext = ExtractionOracle([backend]).extract("Jan works with Clara.", skip_llm=True)
        self.assertEqual(backend.calls, 0)
        self.assertEqual(ext.source, "pattern")

    def test_overall_confidence_is_mean(self):
        ext = parse_extraction(GOOD_ANSWER)
        self.assertAlmostEqual(ext.confidence, (0.95 + 0.9) / 2)

    def test_prompt_truncates_long_input(self):
        prompt = build_prompt("x" * (MAX_PROMPT_CHARS + 5000))
        self.assertIn("[truncated]", prompt)
        self.assertLess(prompt.count("x"), MAX_PROMPT_CHARS + 100)


class TestOllamaClient(unittest.TestCase):
    def _client(self):
        return OllamaChatClient(base_url="http://ollama.test/", model="mistral", options={"temperature": 0.1})

    def test_chat_returns_message_content(self):
        resp = httpx.Response(200, json={"message": {"role": "assistant", "content": "hello"}})
        with mock.patch.object(httpx.Client, "post", return_value=resp) as post:
            out = self._client().chat([ChatMessage(role="user", content="hi")])
        self.assertEqual(out, "hello")
        _, kwargs = post.call_args
        self.assertEqual(kwargs["json"]["model"], "mistral")
        self.assertFalse(kwargs["json"]["stream"])

    def test_connection_error_is_unavailable(self):
        with mock.patch.object(httpx.Client, "post", side_effect=httpx.ConnectError("refused")):
            with self.assertRaises(OracleUnavailable):
                self._client().chat([ChatMessage(role="user", content="hi")])

    def test_non_200_is_unavailable(self):
        resp = httpx.Response(404, text="model not found")
        with mock.patch.object(httpx.Client, "post", return_value=resp):
            with self.assertRaises(OracleUnavailable):
                self._client().chat([ChatMessage(role="user", content="hi")])

    def test_build_backends_keeps_priority(self):
        backends = build_backends(base_url="http://ollama.test", models=("mistral", "llama3.2"))
        self.assertEqual([b.name for b in backends], ["ollama:mistral", "ollama:llama3.2"])


if __name__ == "__main__":
    unittest.main()
